from __future__ import annotations

import copy
import logging
import uuid
from typing import Any

import httpx

from careplan_core.clock import to_iso, utc_now
from careplan_core.errors import CarePlanError, ConflictError, NotFoundError, UpstreamFailure, ValidationError
from careplan_core.merge import merge_activity
from careplan_core.models import CompletionReport, ScheduleActivity
from careplan_core.orchestrator import report_to_update

logger = logging.getLogger(__name__)

_ERRORS_BY_STATUS: dict[int, type[CarePlanError]] = {
    400: ValidationError,
    404: NotFoundError,
    409: ConflictError,
}


def _raise_for_status(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if response.status_code < 400:
        return payload if isinstance(payload, dict) else {}
    message = ""
    if isinstance(payload, dict):
        message = str(payload.get("error") or payload.get("detail") or "")
    error_cls = _ERRORS_BY_STATUS.get(response.status_code, UpstreamFailure)
    raise error_cls(message or f"HTTP {response.status_code}", status=response.status_code)


class ScheduleClient:
    """Client-side view of one daily schedule plus one completion session.

    Mutations are applied to the cached schedule first and rolled back to the
    previous snapshot when the backend rejects them or cannot be reached.
    """

    def __init__(
        self,
        http: httpx.Client,
        *,
        headers: dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._http = http
        self._headers = dict(headers or {})
        self.session_id = session_id or f"activity-log-{uuid.uuid4().hex[:16]}"
        self.schedule: dict[str, Any] | None = None
        self.report: CompletionReport | None = None
        self._report_at: str | None = None
        self._session_activity_id: int | None = None

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("schedule backend unreachable %s %s: %s", method, path, exc)
            raise UpstreamFailure("Schedule backend unreachable") from exc
        return _raise_for_status(response)

    def _require_schedule(self) -> dict[str, Any]:
        if self.schedule is None:
            raise ValidationError("No schedule loaded")
        return self.schedule

    def _index_of(self, activity_id: int) -> int:
        for index, activity in enumerate(self._require_schedule()["activities"]):
            if activity["id"] == activity_id:
                return index
        raise NotFoundError("Activity not found", activity_id=activity_id)

    def activity(self, activity_id: int) -> dict[str, Any]:
        return copy.deepcopy(self._require_schedule()["activities"][self._index_of(activity_id)])

    def load(self, date: str, *, user_id: str | None = None) -> dict[str, Any]:
        params = {"date": date}
        if user_id:
            params["userId"] = user_id
        self.schedule = self._request("GET", "/daily-schedule", params=params)
        return copy.deepcopy(self.schedule)

    def update_activity(self, activity_id: int, updates: dict[str, Any]) -> dict[str, Any]:
        schedule = self._require_schedule()
        index = self._index_of(activity_id)
        snapshot = copy.deepcopy(schedule["activities"][index])
        optimistic = merge_activity(ScheduleActivity.from_dict(snapshot), updates)
        schedule["activities"][index] = optimistic.to_dict()
        try:
            payload = self._request(
                "PATCH",
                "/daily-schedule",
                json={"scheduleId": schedule["id"], "activityId": activity_id, "updates": updates},
            )
        except CarePlanError:
            schedule["activities"][index] = snapshot
            logger.info("rolled back optimistic update activity=%s", activity_id)
            raise
        schedule["activities"][index] = payload["activity"]
        return copy.deepcopy(payload["activity"])

    def reorder(self, ordered_ids: list[int]) -> list[dict[str, Any]]:
        schedule = self._require_schedule()
        snapshot = copy.deepcopy(schedule["activities"])
        by_id = {activity["id"]: activity for activity in snapshot}
        if sorted(ordered_ids) != sorted(by_id):
            raise ValidationError("Activity mismatch")
        schedule["activities"] = [copy.deepcopy(by_id[activity_id]) for activity_id in ordered_ids]
        try:
            payload = self._request(
                "PATCH",
                "/daily-schedule",
                json={"scheduleId": schedule["id"], "reorder": True, "activities": ordered_ids},
            )
        except CarePlanError:
            schedule["activities"] = snapshot
            logger.info("rolled back optimistic reorder schedule=%s", schedule["id"])
            raise
        schedule["activities"] = payload["activities"]
        return copy.deepcopy(payload["activities"])

    def add_activity(self, draft: dict[str, Any]) -> dict[str, Any]:
        schedule = self._require_schedule()
        payload = self._request("POST", "/daily-schedule", json={"scheduleId": schedule["id"], "activity": draft})
        schedule["activities"].append(payload["activity"])
        schedule["activities"].sort(key=lambda item: item["time"])
        return copy.deepcopy(payload["activity"])

    def delete_activity(self, activity_id: int) -> None:
        schedule = self._require_schedule()
        index = self._index_of(activity_id)
        removed = schedule["activities"].pop(index)
        try:
            self._request(
                "DELETE",
                "/daily-schedule",
                json={"scheduleId": schedule["id"], "activityId": activity_id},
            )
        except CarePlanError:
            schedule["activities"].insert(index, removed)
            raise

    def _activity_log(self, body: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/activity-log", json=body, headers={"X-Session-ID": self.session_id})

    def start_completion(self, activity_id: int, activity_type: str) -> str:
        payload = self._activity_log({"action": "start", "activityId": activity_id, "activityType": activity_type})
        self._session_activity_id = activity_id
        self.report = None
        self._report_at = None
        return payload["message"]

    def send(self, message: str) -> dict[str, Any]:
        payload = self._activity_log({"action": "chat", "message": message})
        if payload.get("isComplete") and payload.get("report") and self.report is None:
            self.report = CompletionReport.from_dict(payload["report"])
            self._report_at = to_iso(utc_now())
        return payload

    def end_completion(self) -> None:
        self._activity_log({"action": "end"})
        self._session_activity_id = None

    def finish_completion(self) -> dict[str, Any]:
        """Write the session's report onto the activity, then end the session.

        When the write fails the session stays open and the call can be
        retried; the update is absolute, so a retry is a no-op once applied.
        """
        if self.report is None or self._report_at is None or self._session_activity_id is None:
            raise ValidationError("No completion report to apply")
        activity = self.update_activity(self._session_activity_id, report_to_update(self.report, self._report_at))
        self.end_completion()
        return activity
