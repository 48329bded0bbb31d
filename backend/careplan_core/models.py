from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .errors import ValidationError


ACTIVITY_TYPES = ("medication", "workout", "meditation", "yoga", "meal", "biohacking", "treatment")
MIN_DURATION = 5
MAX_DURATION = 240

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def validate_time(value: Any) -> str:
    if not isinstance(value, str) or not _TIME_RE.fullmatch(value.strip()):
        raise ValidationError("time must be formatted as HH:MM")
    return value.strip()


def validate_duration(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError("duration must be a whole number of minutes")
    minutes = int(value)
    if not (MIN_DURATION <= minutes <= MAX_DURATION):
        raise ValidationError(f"duration must be between {MIN_DURATION} and {MAX_DURATION} minutes")
    return minutes


def validate_activity_type(value: Any) -> str:
    if value not in ACTIVITY_TYPES:
        raise ValidationError(f"Unsupported activity type: {value}")
    return value


def _text(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    return value


def _str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ValidationError(f"{field_name} must be a list of strings")
    return list(value)


def _number(value: Any, field_name: str) -> float | int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number")
    return value


@dataclass
class KeyMetric:
    name: str
    target: float | int
    unit: str
    current_value: float | int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> KeyMetric:
        if not isinstance(data, dict):
            raise ValidationError("keyMetrics entries must be objects")
        # Plan biomarkers carry "current"; stored metrics carry "currentValue".
        current = data.get("currentValue", data.get("current"))
        return cls(
            name=_text(data.get("name", ""), "keyMetrics.name"),
            target=_number(data.get("target", 0), "keyMetrics.target"),
            unit=_text(data.get("unit", ""), "keyMetrics.unit"),
            current_value=_number(current, "keyMetrics.currentValue") if current is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "target": self.target, "unit": self.unit}
        if self.current_value is not None:
            payload["currentValue"] = self.current_value
        return payload


@dataclass
class ActivityBenefits:
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "treatmentGoals": "treatment_goals",
        "conditionSpecific": "condition_specific",
        "personalizedTips": "personalized_tips",
        "keyMetrics": "key_metrics",
    }

    treatment_goals: list[str] = field(default_factory=list)
    condition_specific: list[str] = field(default_factory=list)
    personalized_tips: list[str] = field(default_factory=list)
    key_metrics: list[KeyMetric] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ActivityBenefits:
        if not isinstance(data, dict):
            raise ValidationError("benefits must be an object")
        benefits = cls()
        for key, value in data.items():
            benefits.assign(key, value)
        return benefits

    def assign(self, wire_key: str, value: Any) -> None:
        attr = self.WIRE_FIELDS.get(wire_key)
        if attr is None:
            raise ValidationError(f"Unknown benefits field: {wire_key}")
        if wire_key == "keyMetrics":
            if value is None:
                value = []
            if not isinstance(value, list):
                raise ValidationError("keyMetrics must be a list")
            self.key_metrics = [KeyMetric.from_dict(item) for item in value]
            return
        setattr(self, attr, _str_list(value, wire_key))

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatmentGoals": list(self.treatment_goals),
            "conditionSpecific": list(self.condition_specific),
            "personalizedTips": list(self.personalized_tips),
            "keyMetrics": [metric.to_dict() for metric in self.key_metrics],
        }


@dataclass
class ActivityDetails:
    """Common part of every detail variant.

    Subclasses declare their wire fields; ``assign`` is the single entry point
    used both for parsing and for partial updates, so a variant never accepts a
    key that belongs to another activity type.
    """

    kind: ClassVar[str] = "activity"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {}
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset()
    CHOICES: ClassVar[dict[str, tuple[str, ...]]] = {}

    benefits: ActivityBenefits | None = field(default_factory=ActivityBenefits)

    @classmethod
    def from_dict(cls, data: Any) -> ActivityDetails:
        if not isinstance(data, dict):
            raise ValidationError("details must be an object")
        details = cls()
        for key, value in data.items():
            details.assign(key, value)
        return details

    def assign(self, wire_key: str, value: Any) -> None:
        if wire_key == "benefits":
            self.benefits = ActivityBenefits.from_dict(value)
            return
        attr = self.WIRE_FIELDS.get(wire_key)
        if attr is None:
            raise ValidationError(f"Unknown {self.kind} detail field: {wire_key}")
        setattr(self, attr, self._coerce(wire_key, value))

    def _coerce(self, wire_key: str, value: Any) -> Any:
        if wire_key in self.LIST_FIELDS:
            return _str_list(value, wire_key)
        choices = self.CHOICES.get(wire_key)
        if choices and value not in choices:
            raise ValidationError(f"{wire_key} must be one of: {', '.join(choices)}")
        return _text(value, wire_key)

    def to_dict(self) -> dict[str, Any]:
        payload = {wire: copy.deepcopy(getattr(self, attr)) for wire, attr in self.WIRE_FIELDS.items()}
        if self.benefits is not None:
            payload["benefits"] = self.benefits.to_dict()
        return payload


@dataclass
class MedicationDetails(ActivityDetails):
    kind: ClassVar[str] = "medication"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "timing": "timing",
        "sideEffects": "side_effects",
        "interactions": "interactions",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"sideEffects", "interactions"})
    CHOICES: ClassVar[dict[str, tuple[str, ...]]] = {"timing": ("before_meal", "after_meal", "empty_stomach")}

    timing: str = "before_meal"
    side_effects: list[str] = field(default_factory=list)
    interactions: list[str] = field(default_factory=list)


@dataclass
class WorkoutDetails(ActivityDetails):
    kind: ClassVar[str] = "workout"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "intensity": "intensity",
        "targetMuscleGroups": "target_muscle_groups",
        "modifications": "modifications",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"targetMuscleGroups", "modifications"})
    CHOICES: ClassVar[dict[str, tuple[str, ...]]] = {"intensity": ("low", "moderate", "high")}

    intensity: str = "moderate"
    target_muscle_groups: list[str] = field(default_factory=list)
    modifications: list[str] = field(default_factory=list)


@dataclass
class MeditationYogaDetails(ActivityDetails):
    kind: ClassVar[str] = "meditation/yoga"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "technique": "technique",
        "posture": "posture",
        "breathingPattern": "breathing_pattern",
        "modifications": "modifications",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"modifications"})

    technique: str = ""
    posture: str = ""
    breathing_pattern: str = ""
    modifications: list[str] = field(default_factory=list)


@dataclass
class MealDetails(ActivityDetails):
    kind: ClassVar[str] = "meal"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "nutrients": "nutrients",
        "portions": "portions",
        "foodCombinations": "food_combinations",
        "hydrationTips": "hydration_tips",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"foodCombinations"})

    nutrients: dict[str, float | int] = field(default_factory=lambda: {"protein": 0, "carbs": 0, "fats": 0})
    portions: str = ""
    food_combinations: list[str] = field(default_factory=list)
    hydration_tips: str = ""

    def _coerce(self, wire_key: str, value: Any) -> Any:
        if wire_key != "nutrients":
            return super()._coerce(wire_key, value)
        if not isinstance(value, dict):
            raise ValidationError("nutrients must be an object")
        merged = dict(self.nutrients)
        for macro, amount in value.items():
            if macro not in {"protein", "carbs", "fats"}:
                raise ValidationError(f"Unknown nutrient: {macro}")
            merged[macro] = _number(amount, f"nutrients.{macro}")
        return merged


@dataclass
class BiohackingDetails(ActivityDetails):
    kind: ClassVar[str] = "biohacking"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "protocol": "protocol",
        "timing": "timing",
        "scientificBasis": "scientific_basis",
        "precautions": "precautions",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"precautions"})

    protocol: str = ""
    timing: str = ""
    scientific_basis: str = ""
    precautions: list[str] = field(default_factory=list)


@dataclass
class TreatmentDetails(ActivityDetails):
    kind: ClassVar[str] = "treatment"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "protocol": "protocol",
        "dosage": "dosage",
        "instructions": "instructions",
        "precautions": "precautions",
    }
    LIST_FIELDS: ClassVar[frozenset[str]] = frozenset({"instructions", "precautions"})

    protocol: str = ""
    dosage: str = ""
    instructions: list[str] = field(default_factory=list)
    precautions: list[str] = field(default_factory=list)


DETAIL_VARIANTS: dict[str, type[ActivityDetails]] = {
    "medication": MedicationDetails,
    "workout": WorkoutDetails,
    "meditation": MeditationYogaDetails,
    "yoga": MeditationYogaDetails,
    "meal": MealDetails,
    "biohacking": BiohackingDetails,
    "treatment": TreatmentDetails,
}


def details_from_dict(activity_type: str, data: Any) -> ActivityDetails | None:
    if not isinstance(data, dict):
        return None
    details = DETAIL_VARIANTS[validate_activity_type(activity_type)].from_dict(data)
    if "benefits" not in data:
        # Stored without benefits; filled in from the treatment plan later.
        details.benefits = None
    return details


@dataclass
class ActivityLog:
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "notes": "notes",
        "metrics": "metrics",
        "insights": "insights",
        "effectiveness": "effectiveness",
        "recommendations": "recommendations",
        "completedAt": "completed_at",
    }

    notes: str | None = None
    metrics: dict[str, Any] | None = None
    insights: list[str] | None = None
    effectiveness: int | None = None
    recommendations: list[str] | None = None
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ActivityLog:
        if not isinstance(data, dict):
            raise ValidationError("activityLog must be an object")
        log = cls()
        for key, value in data.items():
            log.assign(key, value)
        return log

    def assign(self, wire_key: str, value: Any) -> None:
        attr = self.WIRE_FIELDS.get(wire_key)
        if attr is None:
            raise ValidationError(f"Unknown activityLog field: {wire_key}")
        if value is None:
            setattr(self, attr, None)
            return
        if wire_key in {"insights", "recommendations"}:
            value = _str_list(value, wire_key)
        elif wire_key == "effectiveness":
            value = int(_number(value, wire_key))
            if not (0 <= value <= 100):
                raise ValidationError("effectiveness must be between 0 and 100")
        elif wire_key == "metrics":
            if not isinstance(value, dict):
                raise ValidationError("metrics must be an object")
            value = dict(value)
        else:
            value = _text(value, wire_key)
        setattr(self, attr, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            wire: copy.deepcopy(getattr(self, attr))
            for wire, attr in self.WIRE_FIELDS.items()
            if getattr(self, attr) is not None
        }


@dataclass
class ScheduleActivity:
    id: int
    type: str
    title: str
    time: str
    duration: int
    description: str = ""
    completed: bool = False
    details: ActivityDetails | None = None
    activity_log: ActivityLog | None = None

    @classmethod
    def from_dict(cls, data: Any, *, activity_id: int | None = None) -> ScheduleActivity:
        if not isinstance(data, dict):
            raise ValidationError("activity must be an object")
        missing = [key for key in ("type", "title", "time", "duration") if data.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"Missing activity fields: {', '.join(missing)}")
        resolved_id = activity_id if activity_id is not None else data.get("id")
        if isinstance(resolved_id, bool) or not isinstance(resolved_id, int):
            raise ValidationError("activity id must be an integer")
        activity_type = validate_activity_type(data["type"])
        completed = data.get("completed", False)
        if not isinstance(completed, bool):
            raise ValidationError("completed must be a boolean")
        raw_log = data.get("activityLog")
        return cls(
            id=resolved_id,
            type=activity_type,
            title=_text(data["title"], "title"),
            time=validate_time(data["time"]),
            duration=validate_duration(data["duration"]),
            description=_text(data.get("description") or "", "description"),
            completed=completed,
            details=details_from_dict(activity_type, data.get("details")),
            activity_log=ActivityLog.from_dict(raw_log) if raw_log else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "time": self.time,
            "duration": self.duration,
            "description": self.description,
            "completed": self.completed,
            "details": self.details.to_dict() if self.details else None,
        }
        if self.activity_log is not None:
            payload["activityLog"] = self.activity_log.to_dict()
        return payload

    def copy(self) -> ScheduleActivity:
        return copy.deepcopy(self)


@dataclass
class DailySchedule:
    id: int
    user_id: str
    date: str
    activities: list[ScheduleActivity] = field(default_factory=list)

    def find(self, activity_id: int) -> ScheduleActivity | None:
        for activity in self.activities:
            if activity.id == activity_id:
                return activity
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": self.date,
            "activities": [activity.to_dict() for activity in self.activities],
        }


@dataclass
class CompletionReport:
    summary: str
    insights: list[str] = field(default_factory=list)
    effectiveness: int = 50
    recommendations: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> CompletionReport:
        if not isinstance(data, dict) or not isinstance(data.get("summary"), str):
            raise ValidationError("report requires a summary")
        try:
            effectiveness = int(data.get("effectiveness", 50))
        except (TypeError, ValueError):
            effectiveness = 50
        return cls(
            summary=data["summary"].strip(),
            insights=[str(item) for item in data.get("insights") or [] if str(item).strip()],
            effectiveness=max(0, min(100, effectiveness)),
            recommendations=[str(item) for item in data.get("recommendations") or [] if str(item).strip()],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "insights": list(self.insights),
            "effectiveness": self.effectiveness,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class TranscriptTurn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}
