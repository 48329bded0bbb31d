from __future__ import annotations

import logging
from typing import Any, Protocol

from .completion import CompletionSessionEngine
from .errors import ValidationError
from .models import CompletionReport, ScheduleActivity

logger = logging.getLogger(__name__)


class ActivityWriter(Protocol):
    def update_activity(self, schedule_id: int, activity_id: int, update: dict[str, Any]) -> ScheduleActivity: ...


def report_to_update(report: CompletionReport, completed_at: str) -> dict[str, Any]:
    return {
        "completed": True,
        "activityLog": {
            "notes": report.summary,
            "insights": list(report.insights),
            "effectiveness": report.effectiveness,
            "recommendations": list(report.recommendations),
            "completedAt": completed_at,
        },
    }


class CompletionOrchestrator:
    """Applies a finished session's report to the schedule, then ends the session.

    The two steps are not atomic. The update only sets absolute values, so a
    failed persist can be retried as often as needed; the session stays open
    until the write succeeds.
    """

    def __init__(self, *, engine: CompletionSessionEngine, store: ActivityWriter) -> None:
        self.engine = engine
        self.store = store

    def apply_completion(self, *, key: str, schedule_id: int, activity_id: int) -> ScheduleActivity:
        session = self.engine.completion_report(key)
        if session.activity_id != activity_id:
            raise ValidationError(
                "Session belongs to a different activity",
                session_key=key,
                activity_id=activity_id,
            )
        update = report_to_update(session.report, session.report_at)
        activity = self.store.update_activity(schedule_id, activity_id, update)
        self.engine.end(key, session.generation)
        logger.info("activity completed schedule=%s activity=%s session=%s", schedule_id, activity_id, key)
        return activity
