"""Retry offers and timers for turns that hit an engine capacity limit."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any

from agent_relay.interactions.models import InteractionKind, RetryDecision
from agent_relay.interactions.pending import PendingInteractionRegistry
from agent_relay.ratelimit.classifier import RateLimitClassification
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


class RetryState(str, Enum):
    OFFERED = "offered"
    SCHEDULED = "scheduled"
    DECLINED = "declined"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class RetrySchedule:
    """One capacity-limited turn waiting for the limit to reset.

    Two timers may be linked: the reminder (armed on offer, dropped on accept)
    and the resubmission (armed on accept). Both go away together.
    """

    token: str
    scope_key: str
    payload: Any
    fire_at: datetime
    classification: RateLimitClassification
    offer_token: str | None = None
    state: RetryState = RetryState.OFFERED
    reminder_handle: asyncio.TimerHandle | None = field(default=None, repr=False)
    resubmit_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def has_timers(self) -> bool:
        return self.reminder_handle is not None or self.resubmit_handle is not None


ScheduleCallback = Callable[[RetrySchedule], Awaitable[None]]


class RateLimitRetryController:
    """Offer, arm and cancel retries; at most one live schedule per scope."""

    def __init__(
        self,
        pending: PendingInteractionRegistry,
        *,
        on_reminder: ScheduleCallback,
        on_resubmit: ScheduleCallback,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pending = pending
        self._on_reminder = on_reminder
        self._on_resubmit = on_resubmit
        self._clock = clock
        self._schedules: dict[str, RetrySchedule] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._schedules)

    def get(self, token: str) -> RetrySchedule | None:
        return self._schedules.get(token)

    def for_scope(self, scope_key: str) -> RetrySchedule | None:
        return next(
            (item for item in self._schedules.values() if item.scope_key == scope_key),
            None,
        )

    def schedules(self) -> list[RetrySchedule]:
        return sorted(self._schedules.values(), key=lambda item: item.fire_at)

    def offer(
        self,
        scope_key: str,
        payload: Any,
        classification: RateLimitClassification,
    ) -> RetrySchedule:
        """Arm the reminder and park a retry offer for the scope.

        A newer offer for the same scope replaces the previous one.
        """

        previous = self.for_scope(scope_key)
        if previous is not None:
            logger.info("Superseding retry %s for %s", previous.token, scope_key)
            self.cancel(previous.token)

        loop = asyncio.get_running_loop()
        schedule = RetrySchedule(
            token=uuid.uuid4().hex,
            scope_key=scope_key,
            payload=payload,
            fire_at=classification.fire_at,
            classification=classification,
        )
        schedule.reminder_handle = loop.call_later(
            self._delay(schedule.fire_at),
            self._fire_reminder,
            schedule.token,
        )
        self._schedules[schedule.token] = schedule
        schedule.offer_token = self.pending.register(
            partial(self._on_decision, schedule.token),
            kind=InteractionKind.RETRY_OFFER,
            expired_outcome=RetryDecision.EXPIRED,
            scope_key=scope_key,
            payload={"retry_token": schedule.token, "fire_at": schedule.fire_at.isoformat()},
        )
        logger.info(
            "Offered retry %s for %s at %s (rule=%s)",
            schedule.token,
            scope_key,
            schedule.fire_at.isoformat(),
            classification.matched_rule,
        )
        return schedule

    def cancel(self, token: str) -> bool:
        """Remove the schedule and both timers; settle a still-open offer."""

        schedule = self._schedules.pop(token, None)
        if schedule is None:
            return False
        self._cancel_timers(schedule)
        schedule.state = RetryState.CANCELLED
        if schedule.offer_token is not None:
            self.pending.resolve(schedule.offer_token, RetryDecision.CANCELLED)
        logger.info("Cancelled retry %s for %s", token, schedule.scope_key)
        return True

    def cancel_scope(self, scope_key: str) -> bool:
        schedule = self.for_scope(scope_key)
        if schedule is None:
            return False
        return self.cancel(schedule.token)

    def close(self) -> None:
        for token in list(self._schedules):
            self.cancel(token)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_decision(self, token: str, decision: RetryDecision) -> None:
        schedule = self._schedules.get(token)
        if schedule is None:
            return
        schedule.offer_token = None
        if decision is RetryDecision.ACCEPT:
            if schedule.reminder_handle is not None:
                schedule.reminder_handle.cancel()
                schedule.reminder_handle = None
            loop = asyncio.get_running_loop()
            schedule.resubmit_handle = loop.call_later(
                self._delay(schedule.fire_at),
                self._fire_resubmit,
                token,
            )
            schedule.state = RetryState.SCHEDULED
            logger.info(
                "Retry %s accepted; resubmitting at %s",
                token,
                schedule.fire_at.isoformat(),
            )
        elif decision in {RetryDecision.DECLINE, RetryDecision.EXPIRED}:
            schedule.state = RetryState.DECLINED
            logger.info("Retry %s %s; reminder stays armed", token, decision.value)

    def _fire_reminder(self, token: str) -> None:
        schedule = self._schedules.pop(token, None)
        if schedule is None:
            return
        schedule.reminder_handle = None
        schedule.state = RetryState.FIRED
        if schedule.offer_token is not None:
            # The limit is over; an unanswered offer has nothing left to schedule.
            offer_token, schedule.offer_token = schedule.offer_token, None
            self.pending.resolve(offer_token, RetryDecision.EXPIRED)
        self._spawn(self._on_reminder(schedule), f"retry-reminder-{token}")

    def _fire_resubmit(self, token: str) -> None:
        schedule = self._schedules.pop(token, None)
        if schedule is None:
            return
        schedule.resubmit_handle = None
        schedule.state = RetryState.FIRED
        self._spawn(self._on_resubmit(schedule), f"retry-resubmit-{token}")

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Retry callback %s failed", task.get_name(), exc_info=error)

    def _delay(self, fire_at: datetime) -> float:
        return max(0.0, (fire_at - self._clock()).total_seconds())

    @staticmethod
    def _cancel_timers(schedule: RetrySchedule) -> None:
        if schedule.reminder_handle is not None:
            schedule.reminder_handle.cancel()
            schedule.reminder_handle = None
        if schedule.resubmit_handle is not None:
            schedule.resubmit_handle.cancel()
            schedule.resubmit_handle = None
