"""Token-keyed registry of computations parked on a human decision.

A caller registers a single-use continuation and gets back an opaque token to
embed in whatever the front-end renders (a button value, a CLI prompt). The
continuation runs exactly once: either when the decision arrives through
``resolve`` or, after the TTL, through ``expire`` with the kind's expired
outcome. Whichever comes second finds nothing and returns False.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from agent_relay.config import InteractionSettings
from agent_relay.interactions.models import InteractionKind
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

Continuation = Callable[[T], Awaitable[None] | None]


@dataclass(slots=True)
class PendingInteraction(Generic[T]):
    """One parked decision."""

    token: str
    kind: InteractionKind
    continuation: Continuation[T]
    expired_outcome: T
    created_at: datetime
    ttl_seconds: float
    scope_key: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    expiry_handle: asyncio.TimerHandle | None = None


class PendingInteractionRegistry:
    """Register, resolve and expire parked interactions."""

    def __init__(
        self,
        settings: InteractionSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or InteractionSettings()
        self._clock = clock
        self._pending: dict[str, PendingInteraction[Any]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, token: object) -> bool:
        return token in self._pending

    def default_ttl_seconds(self, kind: InteractionKind) -> float:
        minutes = {
            InteractionKind.TOOL_APPROVAL: self.settings.approval_ttl_minutes,
            InteractionKind.PLAN_GATE: self.settings.plan_gate_ttl_minutes,
            InteractionKind.RETRY_OFFER: self.settings.retry_offer_ttl_minutes,
            InteractionKind.SESSION_PICK: self.settings.session_pick_ttl_minutes,
        }[kind]
        return minutes * 60.0

    def register(  # noqa: PLR0913
        self,
        continuation: Continuation[T],
        *,
        kind: InteractionKind,
        expired_outcome: T,
        ttl_seconds: float | None = None,
        scope_key: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Park ``continuation`` and return its token.

        The expiry timer needs a running event loop; registering outside one
        leaves the interaction pending until resolved or closed.
        """

        token = uuid.uuid4().hex
        ttl = self.default_ttl_seconds(kind) if ttl_seconds is None else ttl_seconds
        interaction: PendingInteraction[T] = PendingInteraction(
            token=token,
            kind=kind,
            continuation=continuation,
            expired_outcome=expired_outcome,
            created_at=self._clock(),
            ttl_seconds=ttl,
            scope_key=scope_key,
            payload=dict(payload or {}),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; interaction %s has no expiry timer", token)
        else:
            interaction.expiry_handle = loop.call_later(ttl, self.expire, token)
        self._pending[token] = interaction
        logger.debug(
            "Registered %s interaction %s (ttl=%.0fs scope=%s)",
            kind.value,
            token,
            ttl,
            scope_key,
        )
        return token

    def ask(
        self,
        *,
        kind: InteractionKind,
        expired_outcome: T,
        ttl_seconds: float | None = None,
        scope_key: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[str, asyncio.Future[T]]:
        """Register an interaction whose outcome lands in a future."""

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

        def _deliver(outcome: T) -> None:
            if not future.done():
                future.set_result(outcome)

        token = self.register(
            _deliver,
            kind=kind,
            expired_outcome=expired_outcome,
            ttl_seconds=ttl_seconds,
            scope_key=scope_key,
            payload=payload,
        )
        return token, future

    def resolve(self, token: str, outcome: Any) -> bool:
        """Deliver a decision; False when the token is unknown or already done."""

        interaction = self._pending.pop(token, None)
        if interaction is None:
            logger.info("Interaction %s not found (expired or already resolved)", token)
            return False
        self._cancel_timer(interaction)
        logger.debug("Resolved %s interaction %s: %s", interaction.kind.value, token, outcome)
        self._invoke(interaction, outcome)
        return True

    def expire(self, token: str) -> bool:
        """Complete a still-pending interaction with its expired outcome."""

        interaction = self._pending.pop(token, None)
        if interaction is None:
            return False
        self._cancel_timer(interaction)
        logger.info("Interaction %s (%s) expired", token, interaction.kind.value)
        self._invoke(interaction, interaction.expired_outcome)
        return True

    def get(self, token: str) -> PendingInteraction[Any] | None:
        return self._pending.get(token)

    def pending(self, kind: InteractionKind | None = None) -> list[PendingInteraction[Any]]:
        """Parked interactions, oldest first."""

        items = [item for item in self._pending.values() if kind is None or item.kind is kind]
        return sorted(items, key=lambda item: item.created_at)

    def expire_scope(self, scope_key: str, kind: InteractionKind | None = None) -> int:
        tokens = [
            item.token
            for item in self.pending(kind)
            if item.scope_key == scope_key
        ]
        return sum(1 for token in tokens if self.expire(token))

    def close(self) -> None:
        """Expire everything still pending."""

        for token in list(self._pending):
            self.expire(token)

    async def drain(self) -> None:
        """Wait for coroutine continuations that are still running."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _invoke(self, interaction: PendingInteraction[Any], outcome: Any) -> None:
        try:
            result = interaction.continuation(outcome)
        except Exception:
            logger.exception(
                "Continuation for %s interaction %s failed",
                interaction.kind.value,
                interaction.token,
            )
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Interaction continuation task failed", exc_info=error)

    @staticmethod
    def _cancel_timer(interaction: PendingInteraction[Any]) -> None:
        if interaction.expiry_handle is not None:
            interaction.expiry_handle.cancel()
            interaction.expiry_handle = None
