"""Spawn the engine CLI for one turn and wrap it in a ``StreamEventSource``."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_relay.config import SUPPORTED_PERMISSION_MODES, EngineSettings
from agent_relay.engine.stream import StreamEventSource

logger = logging.getLogger(__name__)

_PROMPT_LOG_CHARS = 200


class EngineLaunchError(RuntimeError):
    """Engine invocation error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ResumeMode(str, Enum):
    """How a turn attaches to engine conversation history."""

    EXPLICIT = "explicit"
    CONTINUE_LATEST = "continue_latest"
    SCOPE = "scope"
    FRESH = "fresh"


@dataclass(frozen=True, slots=True)
class ResumePlan:
    """Resolved resume selector for one engine invocation."""

    mode: ResumeMode
    session_id: str | None = None
    resume_at: str | None = None

    @classmethod
    def fresh(cls) -> ResumePlan:
        return cls(mode=ResumeMode.FRESH)


@dataclass(slots=True)
class EngineLaunchRequest:
    """Inputs required to start one engine turn."""

    prompt: str
    working_directory: Path | None = None
    permission_mode: str = "default"
    resume: ResumePlan = field(default_factory=ResumePlan.fresh)
    model: str | None = None
    max_budget_usd: float = 0.0
    allowed_tools: tuple[str, ...] = ()
    append_system_prompt: str | None = None
    env: dict[str, str] = field(default_factory=dict)


def build_engine_argv(
    *,
    request: EngineLaunchRequest,
    settings: EngineSettings,
) -> list[str]:
    """Render engine CLI arguments for one turn."""

    head = settings.argv_head()
    if not head:
        raise EngineLaunchError("Engine command is empty.", transient=False)
    if request.permission_mode not in SUPPORTED_PERMISSION_MODES:
        raise EngineLaunchError(
            f"Unsupported permission mode: {request.permission_mode!r}",
            transient=False,
        )

    argv = [*head, "-p", "--output-format", "stream-json", "--verbose"]

    if request.permission_mode == "trust":
        argv.append("--dangerously-skip-permissions")
    elif request.permission_mode == "plan":
        argv.extend(["--permission-mode", "plan"])
    else:
        # safe is enforced by the relay; the engine runs in its default mode.
        argv.extend(["--permission-mode", "default"])

    if request.allowed_tools and request.permission_mode != "trust":
        argv.extend(["--allowedTools", *request.allowed_tools])

    model = request.model or settings.default_model
    if model:
        argv.extend(["--model", model])

    budget = request.max_budget_usd or settings.max_budget_usd
    if budget > 0:
        argv.extend(["--max-budget-usd", f"{budget:g}"])

    resume = request.resume
    if resume.mode in {ResumeMode.EXPLICIT, ResumeMode.SCOPE} and resume.session_id:
        argv.extend(["--resume", resume.session_id])
        if resume.resume_at:
            argv.extend(["--resume-session-at", resume.resume_at])
    elif resume.mode is ResumeMode.CONTINUE_LATEST:
        argv.append("--continue")

    if settings.mcp_config_path is not None:
        argv.extend(["--mcp-config", str(settings.mcp_config_path)])

    if request.append_system_prompt:
        argv.extend(["--append-system-prompt", request.append_system_prompt])

    # The prompt goes through stdin: --allowedTools is variadic and would
    # swallow a positional prompt.
    return argv


class EngineLauncher:
    """Start one engine subprocess per turn."""

    def __init__(self, settings: EngineSettings) -> None:
        self.settings = settings

    async def launch(self, request: EngineLaunchRequest) -> StreamEventSource:
        """Spawn the engine; spawn failures come back as a failed event source."""

        argv = build_engine_argv(request=request, settings=self.settings)
        env = os.environ.copy()
        env["CLAUDECODE"] = ""
        env.update(request.env)
        cwd = str(request.working_directory) if request.working_directory else None

        logger.info(
            "Spawning engine: prompt=%r mode=%s resume=%s session=%s model=%s cwd=%s",
            _preview(request.prompt),
            request.permission_mode,
            request.resume.mode.value,
            request.resume.session_id,
            request.model or self.settings.default_model,
            cwd,
        )

        try:
            if os.name == "nt":
                process = await asyncio.create_subprocess_shell(
                    subprocess.list2cmdline(argv),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except FileNotFoundError as error:
            logger.error("Engine command not found: %s", argv[0])
            return StreamEventSource.from_spawn_error(error)
        except OSError as error:
            logger.error("Engine failed to start: %s", error)
            return StreamEventSource.from_spawn_error(error)

        source = StreamEventSource(
            process,
            stderr_tail_chars=self.settings.stderr_tail_chars,
        )
        await _write_prompt(process, request.prompt)
        return source


async def _write_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(prompt.encode("utf-8"))
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as error:
        # The exit code reaches the consumer through the event source.
        logger.warning("Engine pid=%s closed stdin early: %s", process.pid, error)
    finally:
        process.stdin.close()


def _preview(text: str) -> str:
    if len(text) <= _PROMPT_LOG_CHARS:
        return text
    return text[:_PROMPT_LOG_CHARS] + "..."
