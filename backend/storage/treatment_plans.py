from __future__ import annotations

import json
from typing import Any

from .database import SQLiteScheduleDB
from .time_utils import to_iso, utc_now


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class TreatmentPlanStore:
    def __init__(self, db: SQLiteScheduleDB) -> None:
        self._db = db

    def get_plan(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, plan_json, updated_at FROM treatment_plans WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        plan = json.loads(row["plan_json"])
        plan["id"] = row["id"]
        plan["user_id"] = user_id
        return plan

    def upsert_plan(self, user_id: str, plan_payload: dict[str, Any]) -> dict[str, Any]:
        now = to_iso(utc_now())
        record_id = f"plan_{user_id}"
        payload = {key: value for key, value in plan_payload.items() if key not in {"id", "user_id"}}
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO treatment_plans (id, user_id, plan_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  plan_json = excluded.plan_json,
                  updated_at = excluded.updated_at
                """,
                (record_id, user_id, _json_dumps(payload), now, now),
            )
        return payload | {"id": record_id, "user_id": user_id, "updated_at": now}
