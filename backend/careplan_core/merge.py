"""Partial updates for schedule activities.

Per-field policy, applied only to keys present in the update:

    title, time, duration, description, completed   overwrite
    type                                            must equal the current type
    id                                              must equal the current id
    details                                         merge, one key at a time
    details.benefits                                merge, one list at a time
    details.nutrients (meal)                        merge, one macro at a time
    any list value                                  overwrite, never append
    activityLog                                     merge, one key at a time

Keys missing from the update are never touched.
"""
from __future__ import annotations

from typing import Any, Callable

from .errors import ValidationError
from .models import (
    DETAIL_VARIANTS,
    ActivityBenefits,
    ActivityDetails,
    ActivityLog,
    ScheduleActivity,
    _text,
    validate_duration,
    validate_time,
)

OVERWRITE = "overwrite"
MERGE = "merge"
IMMUTABLE = "immutable"

ACTIVITY_POLICY: dict[str, str] = {
    "id": IMMUTABLE,
    "type": IMMUTABLE,
    "title": OVERWRITE,
    "time": OVERWRITE,
    "duration": OVERWRITE,
    "description": OVERWRITE,
    "completed": OVERWRITE,
    "details": MERGE,
    "activityLog": MERGE,
}


def _completed(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError("completed must be a boolean")
    return value


_SCALARS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "title": ("title", lambda value: _text(value, "title")),
    "time": ("time", validate_time),
    "duration": ("duration", validate_duration),
    "description": ("description", lambda value: _text(value, "description")),
    "completed": ("completed", _completed),
}


def merge_benefits(details: ActivityDetails, update: Any) -> None:
    if not isinstance(update, dict):
        raise ValidationError("details.benefits must be an object")
    if details.benefits is None:
        details.benefits = ActivityBenefits()
    for key, value in update.items():
        details.benefits.assign(key, value)


def merge_details(activity_type: str, existing: ActivityDetails | None, update: Any) -> ActivityDetails:
    if not isinstance(update, dict):
        raise ValidationError("details must be an object")
    details = existing if existing is not None else DETAIL_VARIANTS[activity_type]()
    for key, value in update.items():
        if key == "benefits":
            merge_benefits(details, value)
        else:
            details.assign(key, value)
    return details


def merge_activity_log(existing: ActivityLog | None, update: Any) -> ActivityLog:
    if not isinstance(update, dict):
        raise ValidationError("activityLog must be an object")
    log = existing if existing is not None else ActivityLog()
    for key, value in update.items():
        log.assign(key, value)
    return log


def merge_activity(existing: ScheduleActivity, update: dict[str, Any]) -> ScheduleActivity:
    """Return ``existing`` with ``update`` applied; ``existing`` is left as is."""
    if not isinstance(update, dict):
        raise ValidationError("updates must be an object")
    unknown = sorted(set(update) - set(ACTIVITY_POLICY))
    if unknown:
        raise ValidationError(f"Unknown activity fields: {', '.join(unknown)}")
    if "type" in update and update["type"] != existing.type:
        raise ValidationError("Activity type cannot be changed")
    if "id" in update and update["id"] != existing.id:
        raise ValidationError("Activity id cannot be changed")

    merged = existing.copy()
    for key, (attr, coerce) in _SCALARS.items():
        if key in update:
            setattr(merged, attr, coerce(update[key]))
    if "details" in update:
        merged.details = merge_details(merged.type, merged.details, update["details"])
    if "activityLog" in update:
        merged.activity_log = merge_activity_log(merged.activity_log, update["activityLog"])
    return merged
