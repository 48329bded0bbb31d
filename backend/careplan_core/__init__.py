from .completion import ActivityContext, ChatOutcome, CompletionSessionEngine, ConversationalTool, ToolTurn
from .errors import CarePlanError, ConflictError, NotFoundError, UnauthorizedError, UpstreamFailure, ValidationError
from .merge import merge_activity
from .models import (
    ACTIVITY_TYPES,
    ActivityBenefits,
    ActivityDetails,
    ActivityLog,
    CompletionReport,
    DailySchedule,
    ScheduleActivity,
    TranscriptTurn,
)
from .orchestrator import CompletionOrchestrator, report_to_update
from .reorder import recompute_times
from .sessions import SessionStore

__all__ = [
    "ACTIVITY_TYPES",
    "ActivityBenefits",
    "ActivityContext",
    "ActivityDetails",
    "ActivityLog",
    "CarePlanError",
    "ChatOutcome",
    "CompletionOrchestrator",
    "CompletionReport",
    "CompletionSessionEngine",
    "ConflictError",
    "ConversationalTool",
    "DailySchedule",
    "NotFoundError",
    "ScheduleActivity",
    "SessionStore",
    "ToolTurn",
    "UnauthorizedError",
    "TranscriptTurn",
    "UpstreamFailure",
    "ValidationError",
    "merge_activity",
    "recompute_times",
    "report_to_update",
]
