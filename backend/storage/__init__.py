from .database import SQLiteScheduleDB
from .schedule_store import ScheduleStore
from .treatment_plans import TreatmentPlanStore

__all__ = [
    "SQLiteScheduleDB",
    "ScheduleStore",
    "TreatmentPlanStore",
]
