"""Per-scope orchestrator state and turn handles."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_relay.engine.stream import StreamEventSource
from agent_relay.orchestrator.models import (
    InvalidTransitionError,
    TurnCost,
    TurnOutcome,
    TurnRequest,
    TurnState,
    can_transition,
)
from agent_relay.sessions.models import Scope

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScopeSettings:
    """Settings a scope keeps across turns until changed or reset."""

    model: str | None = None
    max_budget_usd: float | None = None
    permission_mode: str | None = None
    working_directory: Path | None = None
    approved_tools: set[str] = field(default_factory=set)


@dataclass(slots=True)
class Turn:
    """Handle for one dispatched turn."""

    request: TurnRequest
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    task: asyncio.Task[TurnOutcome] | None = None
    source: StreamEventSource | None = None
    cancel_requested: bool = False

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> TurnOutcome:
        assert self.task is not None
        return await self.task


@dataclass(slots=True)
class ScopeState:
    """Turn lifecycle and settings of one scope."""

    scope: Scope
    state: TurnState = TurnState.IDLE
    settings: ScopeSettings = field(default_factory=ScopeSettings)
    active_turn: Turn | None = None
    last_cost: TurnCost | None = None
    idle_since: datetime | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def transition(self, target: TurnState) -> None:
        if not can_transition(self.state, target):
            raise InvalidTransitionError(self.state, target)
        logger.debug("Scope %s: %s -> %s", self.scope.key, self.state.value, target.value)
        self.state = target

    def settle(self, turn: Turn, *, now: datetime | None = None) -> None:
        """Return to IDLE after ``turn`` whatever state closing it left behind."""

        if self.state is not TurnState.IDLE:
            if can_transition(self.state, TurnState.IDLE):
                self.transition(TurnState.IDLE)
            else:
                logger.warning("Scope %s: forcing %s -> idle", self.scope.key, self.state.value)
                self.state = TurnState.IDLE
        if self.active_turn is turn:
            self.active_turn = None
        self.idle_since = now


class ScopeStore:
    """In-memory map of scope to ``ScopeState``."""

    def __init__(self) -> None:
        self._states: dict[Scope, ScopeState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def get(self, scope: Scope) -> ScopeState | None:
        return self._states.get(scope)

    def get_or_create(self, scope: Scope) -> ScopeState:
        state = self._states.get(scope)
        if state is None:
            state = ScopeState(scope=scope)
            self._states[scope] = state
        return state

    def discard(self, scope: Scope) -> None:
        self._states.pop(scope, None)

    def prune_idle(self, cutoff: datetime) -> int:
        """Drop idle scopes on default settings whose last turn ended before ``cutoff``."""

        stale = [
            scope
            for scope, state in self._states.items()
            if state.state is TurnState.IDLE
            and state.active_turn is None
            and not state.lock.locked()
            and state.settings == ScopeSettings()
            and (state.idle_since is None or state.idle_since < cutoff)
        ]
        for scope in stale:
            del self._states[scope]
        return len(stale)

    def active_turns(self) -> list[Turn]:
        return [
            state.active_turn
            for state in self._states.values()
            if state.active_turn is not None and not state.active_turn.done
        ]
