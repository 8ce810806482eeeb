"""Pull-based event stream over one running engine process."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import AsyncIterator
from typing import Any

from agent_relay.engine.events import (
    RESULT_ORIGIN_EXIT_CODE,
    RESULT_ORIGIN_IO,
    RESULT_ORIGIN_MISSING,
    RESULT_ORIGIN_SPAWN,
    EventDecoder,
    ResultEvent,
    StreamEvent,
    synthesize_error_result,
)

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_END = object()


class LineDecoder:
    """Split a byte stream into JSON records.

    Bytes are buffered until a newline arrives, so a record split across any
    number of chunks (even inside a multi-byte character) decodes the same as
    one delivered whole.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.dropped_lines = 0

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer.extend(chunk)
        *lines, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)
        return self._decode_lines(lines)

    def finish(self) -> list[dict[str, Any]]:
        """Decode whatever trails the last newline at end of stream."""

        rest = bytes(self._buffer)
        self._buffer.clear()
        return self._decode_lines([rest])

    def _decode_lines(self, lines: list[bytes] | list[bytearray]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for raw in lines:
            if not raw.strip():
                continue
            try:
                record = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                self.dropped_lines += 1
                logger.debug("Dropping undecodable engine line: %r", bytes(raw[:200]))
                continue
            if not isinstance(record, dict):
                self.dropped_lines += 1
                logger.debug("Dropping non-object engine line: %r", bytes(raw[:200]))
                continue
            records.append(record)
        return records


class StreamEventSource:
    """Ordered, lazily consumed events from one engine subprocess.

    Iteration never raises: every way the process can end (clean exit,
    non-zero exit, signal, spawn or pipe error) produces exactly one terminal
    ``ResultEvent`` before the iterator completes.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process | None,
        *,
        stderr_tail_chars: int = 8_000,
        platform_name: str | None = None,
    ) -> None:
        self._process = process
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._line_decoder = LineDecoder()
        self._event_decoder = EventDecoder()
        self._stderr_chunks: list[str] = []
        self._stderr_chars = 0
        self._stderr_tail_chars = stderr_tail_chars
        self._terminal_seen = False
        self._finished = False
        self._platform_name = platform_name or os.name
        self._pump_task: asyncio.Task[None] | None = None
        if process is not None:
            self._pump_task = asyncio.get_running_loop().create_task(
                self._pump(),
                name=f"engine-stream-{process.pid}",
            )

    @classmethod
    def from_spawn_error(cls, error: BaseException) -> StreamEventSource:
        """Source for a process that never started."""

        source = cls(None)
        source._emit_terminal(
            synthesize_error_result(
                f"Engine failed to start: {error}",
                origin=RESULT_ORIGIN_SPAWN,
            ),
        )
        source._close()
        return source

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def dropped_lines(self) -> int:
        return self._line_decoder.dropped_lines

    @property
    def stderr_text(self) -> str:
        return "".join(self._stderr_chunks)

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is _END:
            # Keep the sentinel so repeated iteration also terminates.
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    def interrupt(self) -> None:
        """Ask the engine to wind down cooperatively (session stays resumable)."""

        if self._process is None or self._process.returncode is not None:
            return
        if self._platform_name == "nt":
            self.kill()
            return
        try:
            self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return

    def kill(self) -> None:
        """Forcibly terminate the engine."""

        if self._process is None or self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            return

    async def stop(self, grace_seconds: float) -> None:
        """Graceful interrupt, then hard kill if the engine outlives the grace period."""

        if self._process is None:
            return
        self.interrupt()
        try:
            await asyncio.wait_for(asyncio.shield(self._wait_pump()), timeout=grace_seconds)
        except TimeoutError:
            logger.info("Engine pid=%s ignored interrupt; killing", self.pid)
            self.kill()
            await self._wait_pump()

    async def _wait_pump(self) -> None:
        if self._pump_task is not None:
            await self._pump_task

    async def _pump(self) -> None:
        process = self._process
        assert process is not None
        stderr_task = asyncio.create_task(self._capture_stderr(process))
        io_error: BaseException | None = None
        try:
            if process.stdout is not None:
                while True:
                    chunk = await process.stdout.read(_READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    self._push_records(self._line_decoder.feed(chunk))
            self._push_records(self._line_decoder.finish())
        except (OSError, ValueError) as error:
            io_error = error
            logger.warning("Engine pid=%s stdout read failed: %s", process.pid, error)
        try:
            returncode = await process.wait()
            await stderr_task
        except OSError as error:
            io_error = io_error or error
            returncode = process.returncode
        except asyncio.CancelledError:
            stderr_task.cancel()
            self._emit_terminal(
                synthesize_error_result("Engine stream was cancelled.", origin=RESULT_ORIGIN_IO),
            )
            self._close()
            raise

        logger.debug("Engine pid=%s exited code=%s", process.pid, returncode)
        if not self._terminal_seen:
            if io_error is not None:
                self._emit_terminal(
                    synthesize_error_result(
                        self.stderr_text or f"Engine stream failed: {io_error}",
                        origin=RESULT_ORIGIN_IO,
                        exit_code=returncode,
                    ),
                )
            elif returncode != 0:
                self._emit_terminal(
                    synthesize_error_result(
                        self.stderr_text or f"Engine process exited with code {returncode}",
                        origin=RESULT_ORIGIN_EXIT_CODE,
                        exit_code=returncode,
                    ),
                )
            else:
                self._emit_terminal(
                    synthesize_error_result(
                        self.stderr_text or "Engine exited without a result record.",
                        origin=RESULT_ORIGIN_MISSING,
                        exit_code=returncode,
                    ),
                )
        self._close()

    async def _capture_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        try:
            while True:
                chunk = await process.stderr.read(_READ_CHUNK_BYTES)
                if not chunk:
                    return
                text = chunk.decode("utf-8", errors="replace")
                logger.debug("Engine stderr: %s", text[:500])
                self._append_stderr(text)
        except (OSError, ValueError) as error:
            logger.debug("Engine stderr read failed: %s", error)

    def _append_stderr(self, text: str) -> None:
        self._stderr_chunks.append(text)
        self._stderr_chars += len(text)
        while self._stderr_chars > self._stderr_tail_chars and len(self._stderr_chunks) > 1:
            self._stderr_chars -= len(self._stderr_chunks.pop(0))

    def _push_records(self, records: list[dict[str, Any]]) -> None:
        for record in records:
            event = self._event_decoder.decode(record)
            if event is None:
                continue
            if isinstance(event, ResultEvent):
                if self._terminal_seen:
                    logger.warning("Dropping duplicate engine result record: %s", event.subtype)
                    continue
                self._terminal_seen = True
            self._queue.put_nowait(event)

    def _emit_terminal(self, event: ResultEvent) -> None:
        if self._terminal_seen:
            return
        self._terminal_seen = True
        self._queue.put_nowait(event)

    def _close(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END)
