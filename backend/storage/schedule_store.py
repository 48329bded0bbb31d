from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from careplan_core.errors import NotFoundError, ValidationError
from careplan_core.merge import merge_activity
from careplan_core.models import ActivityDetails, DailySchedule, ScheduleActivity
from careplan_core.reorder import order_by_ids, recompute_times

from .database import SQLiteScheduleDB
from .time_utils import parse_schedule_date, to_iso, utc_now

logger = logging.getLogger(__name__)

DetailsGenerator = Callable[[ScheduleActivity, dict[str, Any]], ActivityDetails]
PlanLookup = Callable[[str], dict[str, Any] | None]


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _require_date(value: str) -> str:
    parsed = parse_schedule_date(value)
    if parsed is None:
        raise ValidationError("date must be formatted as YYYY-MM-DD")
    return parsed.isoformat()


def _schedule_from_row(row: sqlite3.Row) -> DailySchedule:
    return DailySchedule(
        id=row["id"],
        user_id=row["user_id"],
        date=row["date"],
        activities=[ScheduleActivity.from_dict(item) for item in json.loads(row["activities_json"])],
    )


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class ScheduleStore:
    def __init__(
        self,
        db: SQLiteScheduleDB,
        *,
        details_generator: DetailsGenerator,
        plan_lookup: PlanLookup | None = None,
    ) -> None:
        self._db = db
        self._generate_details = details_generator
        self._plan_lookup = plan_lookup
        self._locks: dict[int, _LockEntry] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.Lock()

    @contextmanager
    def _schedule_lock(self, schedule_id: int) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(schedule_id)
            if entry is None:
                entry = self._locks[schedule_id] = _LockEntry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[schedule_id]

    def backfill_details(self, activity: ScheduleActivity, treatment_plan: dict[str, Any]) -> bool:
        """Fill in details or benefits missing from a stored activity.

        Stored variant fields are kept; only what is absent is generated.
        """
        if activity.details is not None and activity.details.benefits is not None:
            return False
        generated = self._generate_details(activity, treatment_plan)
        if activity.details is None:
            activity.details = generated
        else:
            activity.details.benefits = generated.benefits
        return True

    def _load(self, conn: sqlite3.Connection, schedule_id: int) -> DailySchedule:
        row = conn.execute(
            "SELECT id, user_id, date, activities_json FROM daily_schedules WHERE id = ?",
            (schedule_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Schedule not found", schedule_id=schedule_id)
        return _schedule_from_row(row)

    def _save(self, conn: sqlite3.Connection, schedule_id: int, activities: list[ScheduleActivity]) -> None:
        conn.execute(
            "UPDATE daily_schedules SET activities_json = ?, updated_at = ? WHERE id = ?",
            (_json_dumps([activity.to_dict() for activity in activities]), to_iso(utc_now()), schedule_id),
        )

    def get_schedule(self, user_id: str, date: str) -> DailySchedule:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, date, activities_json
                FROM daily_schedules
                WHERE user_id = ? AND date = ?
                """,
                (user_id, _require_date(date)),
            ).fetchone()
        if not row:
            raise NotFoundError("Schedule not found", user_id=user_id, date=date)
        return _schedule_from_row(row)

    def get_schedule_by_id(self, schedule_id: int) -> DailySchedule:
        with self._db.connection() as conn:
            return self._load(conn, schedule_id)

    def create_schedule(self, user_id: str, date: str, activities: list[ScheduleActivity]) -> DailySchedule:
        schedule_date = _require_date(date)
        ids = [activity.id for activity in activities]
        if len(ids) != len(set(ids)):
            raise ValidationError("Activity ids must be unique within a schedule")
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO daily_schedules (user_id, date, activities_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, date) DO NOTHING
                """,
                (user_id, schedule_date, _json_dumps([activity.to_dict() for activity in activities]), now, now),
            )
        return self.get_schedule(user_id, schedule_date)

    def get_or_create_schedule(
        self,
        user_id: str,
        date: str,
        activities_factory: Callable[[], list[ScheduleActivity]],
    ) -> DailySchedule:
        try:
            return self.get_schedule(user_id, date)
        except NotFoundError:
            pass
        with self._create_lock:
            try:
                return self.get_schedule(user_id, date)
            except NotFoundError:
                schedule = self.create_schedule(user_id, date, activities_factory())
                logger.info("created schedule %s for user=%s date=%s", schedule.id, user_id, schedule.date)
                return schedule

    def list_schedules(self, user_id: str, start_date: str, end_date: str) -> list[DailySchedule]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, date, activities_json
                FROM daily_schedules
                WHERE user_id = ?
                  AND date BETWEEN ? AND ?
                ORDER BY date ASC
                """,
                (user_id, _require_date(start_date), _require_date(end_date)),
            ).fetchall()
        return [_schedule_from_row(row) for row in rows]

    def add_activity(
        self,
        schedule_id: int,
        draft: dict[str, Any],
        treatment_plan: dict[str, Any],
    ) -> ScheduleActivity:
        with self._schedule_lock(schedule_id), self._db.connection() as conn:
            schedule = self._load(conn, schedule_id)
            new_id = max([0, *(activity.id for activity in schedule.activities)]) + 1
            fields = {key: value for key, value in draft.items() if key not in {"id", "details", "activityLog"}}
            activity = ScheduleActivity.from_dict(fields, activity_id=new_id)
            activity.details = self._generate_details(activity, treatment_plan)
            activities = [*schedule.activities, activity]
            activities.sort(key=lambda item: item.time)
            self._save(conn, schedule_id, activities)
            logger.info("added activity %s (%s) to schedule %s", new_id, activity.type, schedule_id)
            return activity.copy()

    def update_activity(self, schedule_id: int, activity_id: int, update: dict[str, Any]) -> ScheduleActivity:
        with self._schedule_lock(schedule_id), self._db.connection() as conn:
            schedule = self._load(conn, schedule_id)
            existing = schedule.find(activity_id)
            if existing is None:
                raise NotFoundError("Activity not found", schedule_id=schedule_id, activity_id=activity_id)
            if "details" in update and self._plan_lookup is not None:
                # Merge onto what readers were shown, not onto an empty variant.
                plan = self._plan_lookup(schedule.user_id)
                if plan is not None:
                    self.backfill_details(existing, plan)
            updated = merge_activity(existing, update)
            activities = [updated if activity.id == activity_id else activity for activity in schedule.activities]
            self._save(conn, schedule_id, activities)
            return updated.copy()

    def delete_activity(self, schedule_id: int, activity_id: int) -> None:
        with self._schedule_lock(schedule_id), self._db.connection() as conn:
            schedule = self._load(conn, schedule_id)
            remaining = [activity for activity in schedule.activities if activity.id != activity_id]
            if len(remaining) == len(schedule.activities):
                raise NotFoundError("Activity not found", schedule_id=schedule_id, activity_id=activity_id)
            self._save(conn, schedule_id, remaining)
            logger.info("deleted activity %s from schedule %s", activity_id, schedule_id)

    def reorder_activities(self, schedule_id: int, ordered_ids: list[int]) -> list[ScheduleActivity]:
        with self._schedule_lock(schedule_id), self._db.connection() as conn:
            schedule = self._load(conn, schedule_id)
            current_ids = {activity.id for activity in schedule.activities}
            if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != current_ids:
                raise ValidationError("Activity mismatch", schedule_id=schedule_id)
            reordered = recompute_times(order_by_ids(schedule.activities, ordered_ids))
            self._save(conn, schedule_id, reordered)
            return [activity.copy() for activity in reordered]
