from __future__ import annotations

import json
import logging
from typing import Any, Callable

from careplan_core.errors import UpstreamFailure, ValidationError
from careplan_core.models import ScheduleActivity

from . import llm

logger = logging.getLogger(__name__)

_EDITABLE_KEYS = {"title", "time", "duration", "description", "details"}

SYSTEM_PROMPT = (
    "You edit one activity in a patient's daily care schedule. Apply the practitioner's "
    "request and reply with JSON only: an object holding just the fields that change."
)


def _edit_prompt(activity: ScheduleActivity, prompt: str) -> str:
    return (
        f"Current activity:\n{json.dumps(activity.to_dict(), indent=2)}\n\n"
        f"Requested change: {prompt}\n\n"
        "Return a JSON object with only the changed fields among title, time (HH:MM), "
        "duration (minutes), description and details. Never change the activity type."
    )


def suggest_activity_changes(
    activity: dict[str, Any],
    prompt: str,
    *,
    completion: Callable[..., str | None] | None = None,
) -> dict[str, Any]:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("prompt is required")
    current = ScheduleActivity.from_dict(activity)

    text = (completion or llm.complete)(
        system_prompt=SYSTEM_PROMPT,
        messages=[{"role": "user", "content": _edit_prompt(current, prompt.strip())}],
        temperature=0.2,
    )
    if text is None:
        raise UpstreamFailure("No conversational provider configured")
    changes = llm.extract_json_object(text)
    if changes is None:
        logger.warning("ai edit reply was not JSON activity=%s", current.id)
        raise UpstreamFailure("Failed to process AI edit")

    if "type" in changes and changes["type"] != current.type:
        raise ValidationError("Activity type cannot be changed")
    return {key: value for key, value in changes.items() if key in _EDITABLE_KEYS}
