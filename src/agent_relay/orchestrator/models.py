"""Domain models for turn orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_relay.sessions.models import Scope


class TurnState(str, Enum):
    """Explicit per-scope turn lifecycle."""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {TurnState.COMPLETED, TurnState.PAUSED, TurnState.CANCELLED, TurnState.FAILED},
)

_ALLOWED_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.DISPATCHED}),
    TurnState.DISPATCHED: frozenset({TurnState.STREAMING, *TERMINAL_STATES}),
    TurnState.STREAMING: frozenset({TurnState.AWAITING_APPROVAL, *TERMINAL_STATES}),
    TurnState.AWAITING_APPROVAL: frozenset({TurnState.STREAMING, *TERMINAL_STATES}),
    TurnState.COMPLETED: frozenset({TurnState.IDLE}),
    TurnState.PAUSED: frozenset({TurnState.IDLE}),
    TurnState.CANCELLED: frozenset({TurnState.IDLE}),
    TurnState.FAILED: frozenset({TurnState.IDLE}),
}


def can_transition(current: TurnState, target: TurnState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class InvalidTransitionError(RuntimeError):
    """Illegal turn state change."""

    def __init__(self, current: TurnState, target: TurnState) -> None:
        super().__init__(f"Invalid turn transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class FailureKind(str, Enum):
    """Why a turn failed; drives what the front-end is offered."""

    TRANSPORT = "transport"
    CAPACITY = "capacity"
    SESSION_NOT_FOUND = "session_not_found"
    ENGINE = "engine"
    INTERNAL = "internal"


@dataclass(slots=True)
class TurnRequest:
    """One prompt to run in a scope, with per-turn overrides."""

    scope: Scope
    prompt: str
    resume_session_id: str | None = None
    continue_last: bool = False
    force_fresh: bool = False
    model: str | None = None
    max_budget_usd: float | None = None
    permission_mode: str | None = None
    working_directory: Path | None = None
    append_system_prompt: str | None = None
    origin: str = "user"


@dataclass(slots=True)
class TurnCost:
    """Usage summary of the last finished turn in a scope."""

    total_cost_usd: float
    duration_ms: int
    session_id: str
    model: str | None = None


@dataclass(slots=True)
class TurnOutcome:
    """Terminal result of one turn."""

    scope: Scope
    state: TurnState
    session_id: str | None = None
    text: str = ""
    failure_kind: FailureKind | None = None
    error: str | None = None
    cost: TurnCost | None = None
    denied_tools: tuple[str, ...] = ()
    retry_token: str | None = None
    messages: list[str] = field(default_factory=list)
