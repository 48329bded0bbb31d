from __future__ import annotations

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator

from .clock import to_iso, utc_now
from .errors import ConflictError, NotFoundError
from .models import CompletionReport, TranscriptTurn

logger = logging.getLogger(__name__)

STARTING = "starting"
ACTIVE = "active"


@dataclass
class CompletionSession:
    key: str
    generation: int
    activity_id: int
    activity_type: str
    state: str
    created_at: datetime
    last_activity_at: datetime
    transcript: list[TranscriptTurn] = field(default_factory=list)
    report: CompletionReport | None = None
    report_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE


@dataclass
class _KeySlot:
    state_lock: threading.Lock = field(default_factory=threading.Lock)
    turn_lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SessionStore:
    """Registry of completion sessions keyed by session key.

    Every operation takes the key's state lock, so read-modify-write sequences
    on one key are serialized while different keys never contend. ``turn_lock``
    is a second per-key lock that callers hold across a whole chat turn.

    Each reserved session gets a fresh ``generation``. Writes made on behalf of
    a chat turn carry the generation the turn started with, so a turn that
    outlives its session can never touch a newer session on the same key.
    A key's locks are dropped once nothing holds them and no session remains.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock
        self._sessions: dict[str, CompletionSession] = {}
        self._slots: dict[str, _KeySlot] = {}
        self._registry_lock = threading.Lock()
        self._generations = itertools.count(1)

    @contextmanager
    def _pinned(self, key: str) -> Iterator[_KeySlot]:
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _KeySlot()
            slot.holders += 1
        try:
            yield slot
        finally:
            with self._registry_lock:
                slot.holders -= 1
                if slot.holders == 0 and key not in self._sessions and self._slots.get(key) is slot:
                    del self._slots[key]

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._pinned(key) as slot, slot.state_lock:
            yield

    @contextmanager
    def turn_lock(self, key: str) -> Iterator[None]:
        with self._pinned(key) as slot, slot.turn_lock:
            yield

    def _current(self, key: str, generation: int) -> CompletionSession:
        session = self._sessions.get(key)
        if session is None or session.generation != generation or not session.is_active:
            raise NotFoundError("No active session found", session_key=key)
        return session

    def reserve(self, key: str, *, activity_id: int, activity_type: str) -> CompletionSession:
        with self._locked(key):
            if key in self._sessions:
                raise ConflictError("Session already exists", session_key=key)
            now = self._clock()
            session = CompletionSession(
                key=key,
                generation=next(self._generations),
                activity_id=activity_id,
                activity_type=activity_type,
                state=STARTING,
                created_at=now,
                last_activity_at=now,
            )
            self._sessions[key] = session
            return copy.deepcopy(session)

    def activate(self, key: str, generation: int, opening_message: str) -> CompletionSession:
        with self._locked(key):
            session = self._sessions.get(key)
            if session is None or session.generation != generation or session.state != STARTING:
                raise NotFoundError("No starting session found", session_key=key)
            session.state = ACTIVE
            session.transcript.append(TranscriptTurn("assistant", opening_message))
            session.last_activity_at = self._clock()
            return copy.deepcopy(session)

    def get(self, key: str) -> CompletionSession | None:
        with self._locked(key):
            session = self._sessions.get(key)
            return copy.deepcopy(session) if session else None

    def require_active(self, key: str) -> CompletionSession:
        session = self.get(key)
        if session is None or not session.is_active:
            raise NotFoundError("No active session found", session_key=key)
        return session

    def append_turn(self, key: str, generation: int, role: str, content: str) -> list[TranscriptTurn]:
        with self._locked(key):
            session = self._current(key, generation)
            session.transcript.append(TranscriptTurn(role, content))
            session.last_activity_at = self._clock()
            return list(session.transcript)

    def truncate(self, key: str, generation: int, length: int) -> None:
        with self._locked(key):
            session = self._sessions.get(key)
            if session is not None and session.generation == generation:
                del session.transcript[length:]

    def record_report(self, key: str, generation: int, report: CompletionReport) -> str:
        with self._locked(key):
            session = self._current(key, generation)
            if session.report is None:
                session.report = report
                session.report_at = to_iso(self._clock())
            return session.report_at

    def remove(self, key: str, generation: int | None = None) -> bool:
        with self._locked(key):
            session = self._sessions.get(key)
            if session is None or (generation is not None and session.generation != generation):
                return False
            del self._sessions[key]
            return True

    def reap_expired(self) -> list[str]:
        if self._ttl is None:
            return []
        cutoff = self._clock() - self._ttl
        with self._registry_lock:
            candidates = list(self._sessions.keys())
        reaped: list[str] = []
        for key in candidates:
            with self._locked(key):
                session = self._sessions.get(key)
                if session is not None and session.last_activity_at < cutoff:
                    del self._sessions[key]
                    reaped.append(key)
        if reaped:
            logger.info("reaped %s idle completion sessions", len(reaped))
        return reaped

    def close(self) -> None:
        with self._registry_lock:
            self._sessions.clear()
            self._slots.clear()
