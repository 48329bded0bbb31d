from __future__ import annotations

import hashlib
import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from careplan_core import (
    CarePlanError,
    CompletionOrchestrator,
    CompletionSessionEngine,
    DailySchedule,
    NotFoundError,
    SessionStore,
    UnauthorizedError,
    ValidationError,
)
from careplan_tools import (
    ActivityLoggerTool,
    default_day_activities,
    generate_activity_details,
    suggest_activity_changes,
)
from storage import ScheduleStore, SQLiteScheduleDB, TreatmentPlanStore
from storage.time_utils import parse_schedule_date, today_utc

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()


def _configure_logging() -> None:
    level_name = (os.getenv("CAREPLAN_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


_configure_logging()
logger = logging.getLogger("careplan.api")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _session_ttl_seconds() -> float | None:
    raw = (os.getenv("CAREPLAN_SESSION_TTL_SECONDS") or "").strip()
    if not raw:
        return None
    try:
        ttl = float(raw)
    except ValueError:
        logger.warning("ignoring invalid CAREPLAN_SESSION_TTL_SECONDS=%r", raw)
        return None
    return ttl if ttl > 0 else None


class ActivityLogRequest(BaseModel):
    action: str
    activityId: int | None = None
    activityType: str | None = None
    message: Any = None
    scheduleId: int | None = None


class AddActivityRequest(BaseModel):
    scheduleId: int
    activity: dict[str, Any]


class UpdateScheduleRequest(BaseModel):
    scheduleId: int | None = None
    reorder: bool = False
    activities: list[Any] | None = None
    activityId: int | None = None
    updates: dict[str, Any] | None = None


class DeleteActivityRequest(BaseModel):
    scheduleId: int
    activityId: int


class TreatmentPlanPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    userId: str | None = None
    problemOverview: dict[str, Any] = Field(default_factory=dict)
    treatmentStrategy: dict[str, Any] = Field(default_factory=dict)
    goals: dict[str, Any] = Field(default_factory=dict)


class AIEditRequest(BaseModel):
    activity: dict[str, Any]
    prompt: str


class CarePlanApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "CAREPLAN_DB_PATH",
            str((Path(__file__).resolve().parent / "careplan.sqlite")),
        )
        self.db = SQLiteScheduleDB(db_path)
        self.plans = TreatmentPlanStore(self.db)
        self.store = ScheduleStore(
            self.db,
            details_generator=generate_activity_details,
            plan_lookup=self.plans.get_plan,
        )
        self.sessions = SessionStore(ttl_seconds=_session_ttl_seconds())
        self.tool = ActivityLoggerTool()
        self.engine = CompletionSessionEngine(sessions=self.sessions, tool=self.tool)
        self.orchestrator = CompletionOrchestrator(engine=self.engine, store=self.store)
        self.lazy_schedules = _env_flag("CAREPLAN_LAZY_SCHEDULES", True)

    def close(self) -> None:
        self.sessions.close()


container = CarePlanApp()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    container.close()


app = FastAPI(title="CarePlan Schedule Backend", lifespan=lifespan)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CarePlanError)
async def careplan_error_handler(request: Request, exc: CarePlanError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s failed path=%s context=%s: %s", exc.code, request.url.path, exc.context, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "; ".join(problems) or "Invalid request", "code": "validation_error", "success": False},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled error path=%s session=%s",
        request.url.path,
        request.headers.get("x-session-id"),
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "internal_error", "success": False},
    )


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate:
        raise ValidationError("Invalid X-User-Id")
    if not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise ValidationError("Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    if not auth_header:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise UnauthorizedError("Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise UnauthorizedError("Missing Authorization")
    # Bearer tokens are opaque here; identity verification happens upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _session_key(user_id: str, session_id: str | None) -> tuple[str, str]:
    candidate = (session_id or "").strip()
    if not candidate:
        raise ValidationError("Session ID is required")
    return f"{user_id}:{candidate}", candidate


def _require_date(value: str | None) -> str:
    parsed = parse_schedule_date(value)
    if parsed is None:
        raise ValidationError("date must be formatted as YYYY-MM-DD")
    return parsed.isoformat()


def _require_plan(user_id: str) -> dict[str, Any]:
    plan = container.plans.get_plan(user_id)
    if plan is None:
        raise NotFoundError("No treatment plan found", user_id=user_id)
    return plan


def _with_details(schedule: DailySchedule, plan: dict[str, Any] | None) -> dict[str, Any]:
    # Backfilled details are returned but not written back.
    if plan is not None:
        for activity in schedule.activities:
            container.store.backfill_details(activity, plan)
    return schedule.to_dict()


def _reorder_ids(items: list[Any]) -> list[int]:
    ids: list[int] = []
    for item in items:
        activity_id = item.get("id") if isinstance(item, dict) else item
        if isinstance(activity_id, bool) or not isinstance(activity_id, int):
            raise ValidationError("activities must be activity ids or objects with an id")
        ids.append(activity_id)
    return ids


@app.post("/activity-log")
def activity_log(
    payload: ActivityLogRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    key, session_id = _session_key(user_id, x_session_id)

    if payload.action == "start":
        if payload.activityId is None or not payload.activityType:
            raise ValidationError("activityId and activityType are required")
        message = container.engine.start(key, payload.activityId, payload.activityType)
        return {"message": message, "isComplete": False, "success": True, "sessionId": session_id}

    if payload.action == "chat":
        outcome = container.engine.chat(key, payload.message)
        return {**outcome.as_payload(), "success": True}

    if payload.action == "end":
        container.engine.end(key)
        return {"success": True, "message": "Session ended"}

    if payload.action == "complete":
        if payload.scheduleId is None or payload.activityId is None:
            raise ValidationError("scheduleId and activityId are required")
        activity = container.orchestrator.apply_completion(
            key=key,
            schedule_id=payload.scheduleId,
            activity_id=payload.activityId,
        )
        return {"success": True, "activity": activity.to_dict()}

    raise ValidationError("Invalid action", action=payload.action)


@app.get("/daily-schedule")
def get_daily_schedule(
    userId: str | None = None,
    date: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    caller = resolve_user_id(authorization, x_user_id)
    user_id = userId or caller
    schedule_date = _require_date(date) if date else today_utc().isoformat()
    plan = _require_plan(user_id)
    if container.lazy_schedules:
        past = schedule_date < today_utc().isoformat()
        schedule = container.store.get_or_create_schedule(
            user_id,
            schedule_date,
            lambda: default_day_activities(plan, completed=past),
        )
    else:
        schedule = container.store.get_schedule(user_id, schedule_date)
    return _with_details(schedule, plan)


@app.get("/daily-schedule/range")
def get_daily_schedule_range(
    startDate: str,
    endDate: str,
    userId: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    caller = resolve_user_id(authorization, x_user_id)
    user_id = userId or caller
    start, end = _require_date(startDate), _require_date(endDate)
    if start > end:
        raise ValidationError("startDate must not be after endDate")
    plan = container.plans.get_plan(user_id)
    schedules = container.store.list_schedules(user_id, start, end)
    return {"schedules": [_with_details(schedule, plan) for schedule in schedules]}


@app.post("/daily-schedule")
def add_schedule_activity(
    payload: AddActivityRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    schedule = container.store.get_schedule_by_id(payload.scheduleId)
    plan = _require_plan(schedule.user_id)
    activity = container.store.add_activity(payload.scheduleId, payload.activity, plan)
    return {"activity": activity.to_dict()}


@app.patch("/daily-schedule")
def update_daily_schedule(
    payload: UpdateScheduleRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    if payload.reorder:
        if payload.scheduleId is None or payload.activities is None:
            raise ValidationError("Missing required fields")
        activities = container.store.reorder_activities(payload.scheduleId, _reorder_ids(payload.activities))
        return {"success": True, "activities": [activity.to_dict() for activity in activities]}

    if payload.scheduleId is None or payload.activityId is None or payload.updates is None:
        raise ValidationError("Missing required fields")
    activity = container.store.update_activity(payload.scheduleId, payload.activityId, payload.updates)
    return {"success": True, "activity": activity.to_dict()}


@app.delete("/daily-schedule")
def delete_schedule_activity(
    payload: DeleteActivityRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    container.store.delete_activity(payload.scheduleId, payload.activityId)
    return {"success": True}


@app.post("/treatment-plans")
def upsert_treatment_plan(
    payload: TreatmentPlanPayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    caller = resolve_user_id(authorization, x_user_id)
    user_id = payload.userId or caller
    plan = container.plans.upsert_plan(user_id, payload.model_dump(exclude={"userId"}))
    return {"success": True, "plan": plan}


@app.get("/treatment-plans")
def get_treatment_plan(
    userId: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    caller = resolve_user_id(authorization, x_user_id)
    return {"plan": _require_plan(userId or caller)}


@app.post("/activity/ai-edit")
def ai_edit_activity(
    payload: AIEditRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    changes = suggest_activity_changes(payload.activity, payload.prompt)
    return {"success": True, "changes": changes}
