from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .errors import NotFoundError, ValidationError
from .models import ACTIVITY_TYPES, CompletionReport, TranscriptTurn
from .sessions import CompletionSession, SessionStore

logger = logging.getLogger(__name__)

COMPLETION_MESSAGE = "Thanks for sharing! I've prepared a summary of your activity."


@dataclass(frozen=True)
class ActivityContext:
    activity_id: int
    activity_type: str


@dataclass(frozen=True)
class ToolTurn:
    message: str
    is_complete: bool = False
    report: CompletionReport | None = None


@dataclass(frozen=True)
class ChatOutcome:
    message: str
    is_complete: bool
    report: CompletionReport | None = None

    def as_payload(self) -> dict:
        payload = {"message": self.message, "isComplete": self.is_complete}
        if self.report is not None:
            payload["report"] = self.report.to_dict()
        return payload


class ConversationalTool(Protocol):
    def opening_message(self, context: ActivityContext) -> str: ...

    def next_turn(self, transcript: list[TranscriptTurn], context: ActivityContext) -> ToolTurn: ...


class CompletionSessionEngine:
    def __init__(self, *, sessions: SessionStore, tool: ConversationalTool) -> None:
        self.sessions = sessions
        self.tool = tool

    def has_active_session(self, key: str) -> bool:
        session = self.sessions.get(key)
        return bool(session and session.is_active)

    def start(self, key: str, activity_id: int, activity_type: str) -> str:
        if activity_type not in ACTIVITY_TYPES:
            raise ValidationError(f"Unsupported activity type: {activity_type}")
        self.sessions.reap_expired()
        session = self.sessions.reserve(key, activity_id=activity_id, activity_type=activity_type)
        try:
            opening = self.tool.opening_message(ActivityContext(activity_id, activity_type))
        except Exception:
            self.sessions.remove(key, session.generation)
            logger.exception("opening message failed session=%s activity=%s", key, activity_id)
            raise
        self.sessions.activate(key, session.generation, opening)
        logger.info("completion session started session=%s activity=%s type=%s", key, activity_id, activity_type)
        return opening

    def chat(self, key: str, message: str) -> ChatOutcome:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Invalid message format")
        with self.sessions.turn_lock(key):
            session = self.sessions.require_active(key)
            if session.report is not None:
                return ChatOutcome(COMPLETION_MESSAGE, True, session.report)

            generation = session.generation
            context = ActivityContext(session.activity_id, session.activity_type)
            transcript = self.sessions.append_turn(key, generation, "user", message.strip())
            try:
                turn = self.tool.next_turn(transcript, context)
            except Exception:
                self.sessions.truncate(key, generation, len(transcript) - 1)
                logger.exception("conversational tool failed session=%s activity=%s", key, session.activity_id)
                raise

            # Raises NotFoundError when the session ended while the tool was running.
            self.sessions.append_turn(key, generation, "assistant", turn.message)
            if turn.is_complete and turn.report is not None:
                self.sessions.record_report(key, generation, turn.report)
                logger.info(
                    "completion report ready session=%s activity=%s effectiveness=%s",
                    key,
                    session.activity_id,
                    turn.report.effectiveness,
                )
                return ChatOutcome(turn.message, True, turn.report)
            return ChatOutcome(turn.message, False)

    def completion_report(self, key: str) -> CompletionSession:
        session = self.sessions.get(key)
        if session is None or session.report is None or session.report_at is None:
            raise NotFoundError("No completed session found", session_key=key)
        return session

    def end(self, key: str, generation: int | None = None) -> bool:
        existed = self.sessions.remove(key, generation)
        logger.info("completion session ended session=%s existed=%s", key, existed)
        return existed
