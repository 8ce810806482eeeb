"""Scope-to-session registry with resume policy and debounced persistence."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from agent_relay.config import SessionSettings
from agent_relay.sessions.models import (
    AgentSession,
    ResumeMode,
    ResumePlan,
    Scope,
    UnknownSessionError,
)
from agent_relay.sessions.repository import SessionStateRepository
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

SessionLookup = Callable[[str], bool]


class SessionRegistry:
    """In-memory session map backed by a durable store.

    Memory misses fall back to the store, so scopes evicted for idleness (or
    lost to a restart) still resume where they left off.
    """

    def __init__(
        self,
        settings: SessionSettings,
        repository: SessionStateRepository | None = None,
        *,
        session_lookup: SessionLookup | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.session_lookup = session_lookup
        self._clock = clock
        self._sessions: dict[Scope, AgentSession] = {}
        self._save_handle: asyncio.TimerHandle | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[AgentSession]:
        return list(self._sessions.values())

    def get(self, scope: Scope) -> AgentSession | None:
        session = self._sessions.get(scope)
        if session is not None:
            return session
        if self.repository is None:
            return None
        stored = self.repository.load(scope)
        if stored is None:
            return None
        if stored.last_activity < self._clock() - timedelta(days=self.settings.retention_days):
            return None
        self._sessions[scope] = stored
        logger.debug("Restored session binding for %s from store", scope.key)
        return stored

    def get_or_create(self, scope: Scope) -> AgentSession:
        session = self.get(scope)
        if session is None:
            session = AgentSession(scope=scope, session_id=None, last_activity=self._clock())
            self._sessions[scope] = session
        return session

    def resolve_resume(
        self,
        scope: Scope,
        *,
        resume_session_id: str | None = None,
        continue_last: bool = False,
    ) -> ResumePlan:
        """Pick how the next turn attaches to history; first match wins.

        1. explicit session id from the caller
        2. explicit continue-most-recent flag
        3. session id bound to the scope (resuming at the last marker)
        4. fresh session
        """

        if resume_session_id:
            self._validate(resume_session_id)
            return ResumePlan(mode=ResumeMode.EXPLICIT, session_id=resume_session_id)
        if continue_last:
            return ResumePlan(mode=ResumeMode.CONTINUE_LATEST)
        session = self.get(scope)
        if session is not None and session.session_id:
            self._validate(session.session_id)
            return ResumePlan(
                mode=ResumeMode.SCOPE,
                session_id=session.session_id,
                resume_at=session.last_marker,
            )
        return ResumePlan.fresh()

    def _validate(self, session_id: str) -> None:
        if self.session_lookup is not None and not self.session_lookup(session_id):
            raise UnknownSessionError(session_id)

    def bind_session_id(self, scope: Scope, session_id: str) -> None:
        """Bind the engine-assigned id observed in the init event."""

        session = self.get_or_create(scope)
        if session.session_id and session.session_id != session_id:
            logger.info(
                "Engine replaced session for %s: %s -> %s",
                scope.key,
                session.session_id,
                session_id,
            )
            session.last_marker = None
        session.session_id = session_id
        session.last_activity = self._clock()
        self.schedule_save()

    def clear_binding(self, scope: Scope) -> None:
        """Forget the bound id (keeping the scope entry) after it went stale."""

        session = self._sessions.get(scope)
        if session is None:
            return
        session.session_id = None
        session.last_marker = None
        if self.repository is not None:
            self.repository.delete(scope)

    def record_marker(self, scope: Scope, marker: str) -> None:
        if not marker:
            return
        session = self.get_or_create(scope)
        session.last_marker = marker
        session.last_activity = self._clock()
        self.schedule_save()

    def set_working_directory(self, scope: Scope, working_directory: Path | None) -> None:
        session = self.get_or_create(scope)
        session.working_directory = working_directory
        self.schedule_save()

    def mark_active(self, scope: Scope) -> None:
        session = self.get_or_create(scope)
        session.is_active = True
        session.last_activity = self._clock()

    def mark_idle(self, scope: Scope) -> None:
        session = self._sessions.get(scope)
        if session is None:
            return
        session.is_active = False
        session.last_activity = self._clock()

    def touch(self, scope: Scope) -> None:
        session = self._sessions.get(scope)
        if session is not None:
            session.last_activity = self._clock()

    def remove(self, scope: Scope) -> bool:
        """Drop the scope from memory and the durable store, then flush."""

        removed = self._sessions.pop(scope, None) is not None
        if self.repository is not None:
            removed = self.repository.delete(scope) or removed
        self.flush()
        return removed

    def evict_idle(self, now: datetime | None = None) -> int:
        """Evict inactive in-memory entries idle past the window; store is untouched."""

        cutoff = (now or self._clock()) - timedelta(hours=self.settings.idle_eviction_hours)
        stale = [
            key
            for key, session in self._sessions.items()
            if not session.is_active and session.last_activity < cutoff
        ]
        if stale:
            self.flush()
        for key in stale:
            del self._sessions[key]
        if stale:
            logger.info("Evicted %d idle sessions from memory", len(stale))
        return len(stale)

    def load(self) -> int:
        """Populate memory from the store, skipping records past retention."""

        if self.repository is None:
            return 0
        loaded = self.repository.load_all(
            retention_days=self.settings.retention_days,
            now=self._clock(),
        )
        for session in loaded:
            self._sessions[session.scope] = session
        logger.info("Loaded %d session bindings", len(loaded))
        return len(loaded)

    def schedule_save(self) -> None:
        """Arm a coalesced save; calls while armed are absorbed."""

        if self.repository is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._save_handle is not None:
            return
        self._save_handle = loop.call_later(
            self.settings.save_debounce_seconds,
            self._debounced_flush,
        )

    @property
    def save_pending(self) -> bool:
        return self._save_handle is not None

    def _debounced_flush(self) -> None:
        self._save_handle = None
        try:
            self.flush()
        except Exception:
            logger.exception("Debounced session save failed")

    def flush(self) -> None:
        """Write now, cancelling any pending debounced save."""

        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self.repository is None:
            return
        self.repository.save_all(
            self._sessions.values(),
            retention_days=self.settings.retention_days,
            now=self._clock(),
        )
