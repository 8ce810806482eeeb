"""Per-turn ordered delivery of assistant output to the front-end."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from agent_relay.sessions.models import Scope

if TYPE_CHECKING:
    from agent_relay.orchestrator.frontend import Frontend

logger = logging.getLogger(__name__)


class OutboundQueue:
    """FIFO of messages posted by a single worker task.

    ``join`` returns once every message queued so far has been acknowledged
    by the front-end, which is what lets an approval prompt land after the
    text that led up to it.
    """

    def __init__(self, frontend: Frontend, scope: Scope) -> None:
        self.frontend = frontend
        self.scope = scope
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(
                self._run(),
                name=f"outbound-{self.scope.key}",
            )

    async def put(self, text: str) -> None:
        if not text:
            return
        self.start()
        await self._queue.put(text)

    async def join(self) -> None:
        if self._worker is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        """Deliver what is queued, then stop the worker."""

        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _run(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self.frontend.post_message(self.scope, text)
                self.delivered += 1
            except Exception:
                self.failed += 1
                logger.exception("Posting message to %s failed", self.scope.key)
            finally:
                self._queue.task_done()
