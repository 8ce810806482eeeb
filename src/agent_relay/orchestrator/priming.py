"""Scheduled priming turns that start the engine's usage window on time.

Times are ``HH:MM`` wall-clock values persisted as JSON. Each one arms a
timer for its next occurrence plus a random jitter; when it fires a short
fresh-session turn is dispatched and the timer re-arms for the next day.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agent_relay.config import PrimingSettings
from agent_relay.orchestrator.models import TurnRequest
from agent_relay.sessions.models import Scope

logger = logging.getLogger(__name__)

PRIMING_THREAD_ID = "priming"
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def normalize_time(value: str) -> str | None:
    """``H:MM``/``HH:MM`` to ``HH:MM``; ``None`` when not a valid time of day."""

    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def next_fire_time(value: str, now: datetime) -> datetime:
    """Next strictly-future occurrence of ``HH:MM`` in ``now``'s time zone."""

    hour, minute = (int(part) for part in value.split(":"))
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass(slots=True)
class PrimingConfig:
    """Persisted schedule: sorted times and the scope priming turns run in."""

    times: list[str] = field(default_factory=list)
    principal_id: str = "local"
    conversation_id: str = "console"

    @property
    def scope(self) -> Scope:
        return Scope(
            principal_id=self.principal_id,
            conversation_id=self.conversation_id,
            thread_id=PRIMING_THREAD_ID,
        )


def _local_now() -> datetime:
    return datetime.now().astimezone()


class PrimingScheduler:
    """Own the schedule file and the timers derived from it."""

    def __init__(
        self,
        settings: PrimingSettings,
        dispatch: Callable[[TurnRequest], Awaitable[Any]],
        *,
        clock: Callable[[], datetime] = _local_now,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self._dispatch = dispatch
        self._clock = clock
        self._rng = rng or random.Random()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.config = self._load()

    @property
    def armed_times(self) -> list[str]:
        return sorted(self._timers)

    def _load(self) -> PrimingConfig:
        path = self.settings.config_path
        if not path.exists():
            return PrimingConfig()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.error("Failed to load priming schedule %s: %s", path, error)
            return PrimingConfig()
        normalized = (normalize_time(str(item)) for item in raw.get("times") or ())
        times = sorted({t for t in normalized if t})
        return PrimingConfig(
            times=times,
            principal_id=str(raw.get("principal_id") or "local"),
            conversation_id=str(raw.get("conversation_id") or "console"),
        )

    def save(self) -> None:
        path: Path = self.settings.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self.config), indent=2), encoding="utf-8")

    def add_time(self, value: str, *, scope: Scope | None = None) -> str | None:
        normalized = normalize_time(value)
        if normalized is None:
            return None
        if normalized not in self.config.times:
            self.config.times.append(normalized)
            self.config.times.sort()
        if scope is not None:
            self.config.principal_id = scope.principal_id
            self.config.conversation_id = scope.conversation_id
        self.save()
        return normalized

    def remove_time(self, value: str) -> str | None:
        normalized = normalize_time(value)
        if normalized is None or normalized not in self.config.times:
            return None
        self.config.times.remove(normalized)
        self._cancel(normalized)
        self.save()
        return normalized

    def clear(self) -> None:
        self.cancel_all()
        self.config.times = []
        self.save()

    def next_fire_times(self) -> list[tuple[str, datetime]]:
        now = self._clock()
        return [(value, next_fire_time(value, now)) for value in self.config.times]

    def jitter_seconds(self) -> float:
        return self._rng.uniform(self.settings.jitter_min_seconds, self.settings.jitter_max_seconds)

    def schedule_all(self) -> None:
        """(Re)arm one timer per configured time."""

        self.cancel_all()
        for value in self.config.times:
            self._arm(value)

    def cancel_all(self) -> None:
        for value in list(self._timers):
            self._cancel(value)

    async def close(self) -> None:
        self.cancel_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _arm(self, value: str) -> None:
        now = self._clock()
        fire_at = next_fire_time(value, now)
        delay = (fire_at - now).total_seconds() + self.jitter_seconds()
        loop = asyncio.get_running_loop()
        self._timers[value] = loop.call_later(delay, self._fire, value)
        logger.info("Priming at %s armed for %s (+%.0fs)", value, fire_at.isoformat(), delay)

    def _cancel(self, value: str) -> None:
        handle = self._timers.pop(value, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, value: str) -> None:
        self._timers.pop(value, None)
        logger.info("Firing priming turn for %s", value)
        request = TurnRequest(
            scope=self.config.scope,
            prompt=self.settings.prompt,
            model=self.settings.model,
            force_fresh=True,
            origin="priming",
        )
        task = asyncio.ensure_future(self._dispatch(request))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        if value in self.config.times:
            self._arm(value)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Priming turn failed", exc_info=error)
