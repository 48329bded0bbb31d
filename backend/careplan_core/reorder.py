from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from .models import ScheduleActivity

logger = logging.getLogger(__name__)

BUFFER_MINUTES = 15
REFERENCE_DATE = date(2000, 1, 1)


def _at_reference(hhmm: str) -> datetime:
    hours, minutes = hhmm.split(":")
    return datetime(REFERENCE_DATE.year, REFERENCE_DATE.month, REFERENCE_DATE.day, int(hours), int(minutes))


def recompute_times(activities: list[ScheduleActivity], buffer_minutes: int = BUFFER_MINUTES) -> list[ScheduleActivity]:
    """Push activities later so each starts after its predecessor plus a buffer.

    The list order is the caller's; nothing is sorted. The first activity keeps
    its time and later ones only move forward, never back. Returns copies.
    """
    result = [activity.copy() for activity in activities]
    previous_start: datetime | None = None
    previous_duration = 0
    for index, activity in enumerate(result):
        start = _at_reference(activity.time)
        if previous_start is not None:
            min_start = previous_start + timedelta(minutes=previous_duration + buffer_minutes)
            if start < min_start:
                start = min_start
                activity.time = start.strftime("%H:%M")
                if start.date() != REFERENCE_DATE:
                    # TODO: decide with product whether to clamp or move to the next day.
                    logger.warning(
                        "reorder pushed activity %s past midnight (index %s, wall clock %s)",
                        activity.id,
                        index,
                        activity.time,
                    )
        previous_start = start
        previous_duration = activity.duration
    return result


def order_by_ids(activities: list[ScheduleActivity], ordered_ids: list[int]) -> list[ScheduleActivity]:
    by_id = {activity.id: activity for activity in activities}
    return [by_id[activity_id] for activity_id in ordered_ids]
