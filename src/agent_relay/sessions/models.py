"""Typed models for scope-bound engine sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_relay.engine.launcher import ResumeMode, ResumePlan
from agent_relay.storage.sqlmodel_models import DIRECT_THREAD_KEY

__all__ = [
    "AgentSession",
    "EngineSessionEntry",
    "ResumeMode",
    "ResumePlan",
    "Scope",
    "UnknownSessionError",
]


class UnknownSessionError(ValueError):
    """Resume was requested for a session id the engine does not know."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown engine session: {session_id}")
        self.session_id = session_id
        self.transient = False


@dataclass(frozen=True, slots=True)
class Scope:
    """Conversational context a session is bound to.

    An empty thread id and the reserved ``direct`` thread key both mean the
    conversation itself, so they normalize to ``thread_id=None``.
    """

    principal_id: str
    conversation_id: str
    thread_id: str | None = None

    def __post_init__(self) -> None:
        if self.thread_id in ("", DIRECT_THREAD_KEY):
            object.__setattr__(self, "thread_id", None)

    @property
    def thread_key(self) -> str:
        return self.thread_id or DIRECT_THREAD_KEY

    @property
    def key(self) -> str:
        """Display and correlation key; ``-`` inside a part is escaped as ``%2D``."""

        parts = (self.principal_id, self.conversation_id, self.thread_key)
        return "-".join(_escape_key_part(part) for part in parts)


def _escape_key_part(part: str) -> str:
    return part.replace("%", "%25").replace("-", "%2D")


@dataclass(slots=True)
class AgentSession:
    """Mutable per-scope session record."""

    scope: Scope
    session_id: str | None
    last_activity: datetime
    last_marker: str | None = None
    is_active: bool = False
    working_directory: Path | None = None


@dataclass(frozen=True, slots=True)
class EngineSessionEntry:
    """One session known to the engine's per-project index."""

    session_id: str
    project_path: str
    first_prompt: str = ""
    summary: str = ""
    git_branch: str = ""
    created: datetime | None = None
    modified: datetime | None = None
    message_count: int = 0
    is_sidechain: bool = False
