from .activity_details import DEFAULT_DAY_TEMPLATE, default_day_activities, generate_activity_details
from .activity_logger import ActivityLoggerTool
from .ai_edit import suggest_activity_changes
from .schedule_client import ScheduleClient

__all__ = [
    "ActivityLoggerTool",
    "DEFAULT_DAY_TEMPLATE",
    "ScheduleClient",
    "default_day_activities",
    "generate_activity_details",
    "suggest_activity_changes",
]
