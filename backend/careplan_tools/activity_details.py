from __future__ import annotations

from typing import Any, Callable

from careplan_core.models import (
    ActivityBenefits,
    ActivityDetails,
    BiohackingDetails,
    KeyMetric,
    MealDetails,
    MedicationDetails,
    MeditationYogaDetails,
    ScheduleActivity,
    TreatmentDetails,
    WorkoutDetails,
)
from careplan_core.errors import ValidationError


def _dig(payload: Any, *path: str, default: Any = None) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
    return default if current is None else current


def _first(items: Any) -> dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _biomarker_metrics(plan: dict[str, Any], names: set[str] | None = None) -> list[KeyMetric]:
    metrics: list[KeyMetric] = []
    for biomarker in _dig(plan, "problemOverview", "keyBiomarkers", default=[]):
        if not isinstance(biomarker, dict) or not biomarker.get("name"):
            continue
        if names is not None and biomarker["name"] not in names:
            continue
        metrics.append(KeyMetric.from_dict(biomarker))
    return metrics


def _goal_descriptions(plan: dict[str, Any], horizon: str, prefix: str) -> list[str]:
    return [
        f"{prefix}: {goal['description']}"
        for goal in _dig(plan, "goals", horizon, default=[])
        if isinstance(goal, dict) and goal.get("description")
    ]


def _medication_details(activity: ScheduleActivity, plan: dict[str, Any]) -> MedicationDetails:
    condition = _dig(plan, "problemOverview", "currentStatus", "primaryCondition", default="your condition")
    symptoms = [str(item) for item in _dig(plan, "problemOverview", "currentStatus", "symptoms", default=[])]
    digestive = "Digestive issues" in symptoms
    return MedicationDetails(
        timing="after_meal" if digestive else "before_meal",
        side_effects=["Mild drowsiness initially", "May cause temporary dryness", "Digestive adjustment period"],
        interactions=[
            "Take separately from other medications",
            "Avoid caffeine within 2 hours",
            "Best absorbed with water",
        ],
        benefits=ActivityBenefits(
            treatment_goals=_goal_descriptions(plan, "shortTerm", "Supports"),
            condition_specific=[
                f"Targeted support for {condition}",
                f"Helps manage {', '.join(symptoms) or 'current symptoms'}",
                "Supports overall treatment plan adherence",
            ],
            personalized_tips=[
                "Take with a full glass of water",
                f"Best timing based on your {'digestive patterns' if digestive else 'daily routine'}",
                "Track any side effects in notes",
            ],
            key_metrics=_biomarker_metrics(plan),
        ),
    )


def _workout_details(activity: ScheduleActivity, plan: dict[str, Any]) -> WorkoutDetails:
    exercise = _dig(plan, "treatmentStrategy", "modern", "exercise", default={})
    severity = _dig(plan, "problemOverview", "currentStatus", "severity", default="moderate")
    condition = _dig(plan, "problemOverview", "currentStatus", "primaryCondition", default="your condition")
    intensity = {"severe": "low", "moderate": "moderate"}.get(severity, "high")
    return WorkoutDetails(
        intensity=intensity,
        target_muscle_groups=["Core stabilizers", "Lower body", "Upper body resistance"],
        modifications=[
            f"Adjusted for {severity} condition level",
            "Focus on controlled movements",
            "Regular rest intervals",
        ],
        benefits=ActivityBenefits(
            treatment_goals=[
                f"Building towards {exercise.get('frequency', 'regular')} consistency",
                "Improving overall strength",
                "Enhancing metabolic health",
            ],
            condition_specific=[
                f"Safe exercise protocol for {condition}",
                "Addresses physical deconditioning",
                "Supports stress management",
            ],
            personalized_tips=[
                f"Maintain {exercise.get('intensity', 'moderate')} intensity",
                "Listen to body signals",
                "Stay hydrated throughout",
            ],
            key_metrics=[
                KeyMetric(name="Heart Rate", target=120 if severity == "severe" else 140, unit="bpm"),
                KeyMetric(name="Perceived Exertion", target=5 if severity == "severe" else 7, unit="RPE"),
            ],
        ),
    )


def _meditation_yoga_details(activity: ScheduleActivity, plan: dict[str, Any]) -> MeditationYogaDetails:
    asanas = _dig(plan, "treatmentStrategy", "ayurvedic", "yoga", default=[])
    return MeditationYogaDetails(
        technique="Gentle flow with breathing focus" if activity.type == "yoga" else "Mindfulness meditation",
        posture="Comfortable seated position, spine aligned",
        breathing_pattern="Deep diaphragmatic breathing",
        modifications=["Use props for support", "Modified poses available", "Focus on comfort"],
        benefits=ActivityBenefits(
            treatment_goals=_goal_descriptions(plan, "longTerm", "Supporting"),
            condition_specific=[
                "Reduces stress response",
                "Improves mind-body awareness",
                "Enhances emotional regulation",
            ],
            personalized_tips=[str(item["notes"]) for item in asanas if isinstance(item, dict) and item.get("notes")],
            key_metrics=[
                KeyMetric(name="Session Duration", target=20, unit="minutes"),
                KeyMetric(name="Weekly Frequency", target=5, unit="sessions"),
            ],
        ),
    )


def _meal_details(activity: ScheduleActivity, plan: dict[str, Any]) -> MealDetails:
    diet = _first(_dig(plan, "treatmentStrategy", "ayurvedic", "diet", default=[]))
    restrictions = [str(item) for item in diet.get("restrictions") or []]
    return MealDetails(
        nutrients={"protein": 25, "carbs": 50, "fats": 25},
        portions="Balanced plate method",
        food_combinations=["Protein + complex carbs", "Healthy fats with vegetables", "Seasonal whole foods"],
        hydration_tips="Sip warm water between bites",
        benefits=ActivityBenefits(
            treatment_goals=[
                diet.get("recommendation") or "Balanced whole-food diet",
                "Supporting metabolic health",
                "Optimizing nutrient intake",
            ],
            condition_specific=[
                diet.get("reason") or "Steady energy across the day",
                "Addresses nutritional needs",
                "Supports treatment efficacy",
            ],
            personalized_tips=["Eat mindfully", "Chew thoroughly", *(f"Avoid: {item}" for item in restrictions)],
            key_metrics=_biomarker_metrics(plan, {"Glucose", "Cholesterol"}),
        ),
    )


def _biohacking_details(activity: ScheduleActivity, plan: dict[str, Any]) -> BiohackingDetails:
    biohack = _first(_dig(plan, "treatmentStrategy", "modern", "biohacking", default=[]))
    protocol = biohack.get("protocol") or "Evening wind-down"
    frequency = biohack.get("frequency") or "daily"
    return BiohackingDetails(
        protocol=protocol,
        timing=frequency,
        scientific_basis="Research-backed intervention for optimization",
        precautions=["Monitor response", "Adjust based on results", "Maintain consistency"],
        benefits=ActivityBenefits(
            treatment_goals=[
                f"Optimizing: {biohack.get('intervention') or activity.title}",
                "Enhancing recovery",
                "Supporting adaptation",
            ],
            condition_specific=[
                "Targeted biological optimization",
                "Supports cellular health",
                "Enhances natural healing",
            ],
            personalized_tips=[
                f"Follow {protocol} protocol",
                f"Maintain {frequency} frequency",
                "Track response in notes",
            ],
            key_metrics=_biomarker_metrics(plan),
        ),
    )


def _treatment_details(activity: ScheduleActivity, plan: dict[str, Any]) -> TreatmentDetails:
    herb = _first(_dig(plan, "treatmentStrategy", "ayurvedic", "herbs", default=[]))
    condition = _dig(plan, "problemOverview", "currentStatus", "primaryCondition", default="your condition")
    risk_factors = [str(item) for item in _dig(plan, "problemOverview", "riskFactors", default=[])]
    name = herb.get("name") or activity.title
    return TreatmentDetails(
        protocol=name,
        dosage=herb.get("dosage") or "As prescribed",
        instructions=[
            f"Take {herb['timing']}" if herb.get("timing") else "Follow the prescribed timing",
            f"Continue for {herb['duration']}" if herb.get("duration") else "Continue until reviewed",
        ],
        precautions=[f"Discuss with practitioner if {item.lower()} changes" for item in risk_factors[:3]],
        benefits=ActivityBenefits(
            treatment_goals=_goal_descriptions(plan, "shortTerm", "Supports"),
            condition_specific=[f"Part of the treatment protocol for {condition}"],
            personalized_tips=[str(item) for item in _dig(plan, "treatmentStrategy", "lifestyle", default=[])][:3],
            key_metrics=_biomarker_metrics(plan),
        ),
    )


_GENERATORS: dict[str, Callable[[ScheduleActivity, dict[str, Any]], ActivityDetails]] = {
    "medication": _medication_details,
    "workout": _workout_details,
    "meditation": _meditation_yoga_details,
    "yoga": _meditation_yoga_details,
    "meal": _meal_details,
    "biohacking": _biohacking_details,
    "treatment": _treatment_details,
}


def generate_activity_details(activity: ScheduleActivity, plan: dict[str, Any]) -> ActivityDetails:
    generator = _GENERATORS.get(activity.type)
    if generator is None:
        raise ValidationError(f"Unsupported activity type: {activity.type}")
    return generator(activity, plan)


DEFAULT_DAY_TEMPLATE: list[dict[str, Any]] = [
    {"type": "medication", "title": "Morning Medication", "time": "07:00", "duration": 5,
     "description": "Take morning medicines with water"},
    {"type": "meal", "title": "Breakfast", "time": "08:00", "duration": 30,
     "description": "High protein breakfast with fruits"},
    {"type": "workout", "title": "Morning Exercise", "time": "09:00", "duration": 60,
     "description": "Cardio and strength training"},
    {"type": "meditation", "title": "Mindfulness Session", "time": "10:30", "duration": 20,
     "description": "Guided meditation for stress relief"},
    {"type": "meal", "title": "Lunch", "time": "13:00", "duration": 45,
     "description": "Balanced meal with vegetables"},
    {"type": "yoga", "title": "Yoga Practice", "time": "16:00", "duration": 45,
     "description": "Focus on flexibility and balance"},
    {"type": "medication", "title": "Evening Medication", "time": "18:00", "duration": 5,
     "description": "Take evening medicines with water"},
    {"type": "meal", "title": "Dinner", "time": "19:30", "duration": 45,
     "description": "Light dinner with protein"},
    {"type": "biohacking", "title": "Evening Routine", "time": "21:00", "duration": 30,
     "description": "Blue light blocking, temperature optimization for sleep"},
]


def default_day_activities(plan: dict[str, Any], *, completed: bool = False) -> list[ScheduleActivity]:
    activities: list[ScheduleActivity] = []
    for index, template in enumerate(DEFAULT_DAY_TEMPLATE, start=1):
        activity = ScheduleActivity.from_dict({**template, "completed": completed}, activity_id=index)
        activity.details = generate_activity_details(activity, plan)
        activities.append(activity)
    return activities
