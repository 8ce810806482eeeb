"""Controllers for relay CLI commands."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from agent_relay.config import Settings
from agent_relay.orchestrator.commands import (
    CommandKind,
    ControlCommand,
    ResumeCommand,
    parse_control_command,
    parse_resume_command,
)
from agent_relay.orchestrator.frontend import ConsoleFrontend
from agent_relay.orchestrator.models import TurnOutcome, TurnRequest, TurnState
from agent_relay.orchestrator.priming import PrimingScheduler
from agent_relay.orchestrator.service import Orchestrator
from agent_relay.sessions.index import SessionIndex
from agent_relay.sessions.models import Scope
from agent_relay.sessions.registry import SessionRegistry
from agent_relay.sessions.repository import SessionStateRepository

logger = logging.getLogger(__name__)

CONSOLE_CONVERSATION_ID = "console"


def console_scope(thread: str | None = None) -> Scope:
    """Scope used for turns started from this terminal."""

    return Scope(
        principal_id=os.getenv("USER") or os.getenv("USERNAME") or "local",
        conversation_id=CONSOLE_CONVERSATION_ID,
        thread_id=thread or None,
    )


@dataclass(slots=True)
class RunTurnCommand:
    """CLI input for a single turn."""

    db_path: Path | None
    prompt: str
    thread: str | None
    resume_session_id: str | None
    continue_last: bool
    model: str | None
    max_budget_usd: float | None
    permission_mode: str | None
    working_directory: Path | None
    auto_approve: bool


@dataclass(slots=True)
class RunTurnResult:
    """Turn summary to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class ChatCommand:
    """CLI input for an interactive session."""

    db_path: Path | None
    thread: str | None
    auto_approve: bool
    priming: bool


@dataclass(slots=True)
class SessionsCommand:
    """CLI input for engine session listing."""

    limit: int
    project_path: Path | None


@dataclass(slots=True)
class BindingsCommand:
    """CLI input for persisted scope bindings listing."""

    db_path: Path | None


@dataclass(slots=True)
class ResetCommand:
    """CLI input for dropping a terminal scope binding."""

    db_path: Path | None
    thread: str | None


@dataclass(slots=True)
class ScheduleCommand:
    """CLI input for priming schedule management."""

    add: tuple[str, ...]
    remove: tuple[str, ...]
    clear: bool


class RelayCliController:
    """Wire settings, storage and the orchestrator for CLI commands."""

    def run_turn(self, command: RunTurnCommand) -> RunTurnResult:
        settings = _settings(command.db_path)
        return asyncio.run(self._run_turn(settings, command))

    async def _run_turn(self, settings: Settings, command: RunTurnCommand) -> RunTurnResult:
        frontend = ConsoleFrontend(auto_approve=command.auto_approve)
        async with _orchestrator(settings, frontend) as orchestrator:
            outcome = await orchestrator.run(
                TurnRequest(
                    scope=console_scope(command.thread),
                    prompt=command.prompt,
                    resume_session_id=command.resume_session_id,
                    continue_last=command.continue_last,
                    model=command.model,
                    max_budget_usd=command.max_budget_usd,
                    permission_mode=command.permission_mode,
                    working_directory=command.working_directory,
                ),
            )
        return RunTurnResult(
            lines=render_outcome_lines(outcome),
            success=outcome.state is TurnState.COMPLETED,
        )

    def chat(self, command: ChatCommand) -> list[str]:
        settings = _settings(command.db_path)
        return asyncio.run(self._chat(settings, command))

    async def _chat(self, settings: Settings, command: ChatCommand) -> list[str]:
        scope = console_scope(command.thread)
        frontend = ConsoleFrontend(auto_approve=command.auto_approve)
        turns = 0
        pending_resume: ResumeCommand | None = None
        async with _orchestrator(settings, frontend) as orchestrator:
            scheduler = PrimingScheduler(settings.priming, orchestrator.dispatch)
            if command.priming:
                scheduler.schedule_all()
            try:
                while True:
                    try:
                        text = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
                    except (EOFError, click.Abort):
                        break
                    if text.strip() in {"-exit", "-quit"}:
                        break
                    control = parse_control_command(text)
                    if control is not None:
                        for line in await _apply_control(orchestrator, scheduler, scope, control):
                            click.echo(line)
                        continue
                    resume = parse_resume_command(text)
                    if resume is not None:
                        pending_resume = resume
                        if resume.prompt is None:
                            click.echo("Next message resumes the requested session.")
                            continue
                        text = resume.prompt
                    request = TurnRequest(scope=scope, prompt=text)
                    if pending_resume is not None:
                        request.resume_session_id = pending_resume.resume_session_id
                        request.continue_last = pending_resume.continue_last
                        pending_resume = None
                    outcome = await orchestrator.run(request)
                    turns += 1
                    for line in render_outcome_lines(outcome):
                        click.echo(line)
            finally:
                await scheduler.close()
        return [f"Chat ended after {turns} turns."]

    def list_sessions(self, command: SessionsCommand) -> list[str]:
        settings = Settings.from_env()
        index = SessionIndex(
            settings.engine.projects_dir,
            prompt_chars=settings.orchestrator.index_prompt_chars,
        )
        entries = index.list_recent(command.limit, project_path=command.project_path)
        if not entries:
            return ["No engine sessions found."]
        lines = [f"Recent sessions ({len(entries)}):"]
        for entry in entries:
            when = entry.modified.astimezone().strftime("%Y-%m-%d %H:%M") if entry.modified else "?"
            title = entry.summary or entry.first_prompt or "(no preview)"
            branch = f" [{entry.git_branch}]" if entry.git_branch else ""
            lines.append(f"- {entry.session_id} {when}{branch} {entry.project_path}")
            lines.append(f"    {title}")
        return lines

    def list_bindings(self, command: BindingsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            bindings = repository.list_bindings()
        if not bindings:
            return ["No session bindings stored."]
        lines = [f"Session bindings ({len(bindings)}):"]
        for item in bindings:
            lines.append(
                f"- {item.scope.key} -> {item.session_id} "
                f"saved={item.last_activity.isoformat()} marker={item.last_marker or '-'}",
            )
        return lines

    def reset(self, command: ResetCommand) -> list[str]:
        settings = _settings(command.db_path)
        scope = console_scope(command.thread)
        with _repository(settings) as repository:
            registry = SessionRegistry(settings.sessions, repository)
            removed = registry.remove(scope)
        if removed:
            return [f"Session binding for {scope.key} removed."]
        return [f"No session binding for {scope.key}."]

    def schedule(self, command: ScheduleCommand) -> list[str]:
        settings = Settings.from_env()

        async def _noop(_request: TurnRequest) -> None:
            return None

        scheduler = PrimingScheduler(settings.priming, _noop)
        lines: list[str] = []
        if command.clear:
            scheduler.clear()
            lines.append("Priming schedule cleared.")
        for value in command.add:
            normalized = scheduler.add_time(value, scope=console_scope())
            lines.append(f"Added {normalized}." if normalized else f"Invalid time: {value!r}")
        for value in command.remove:
            normalized = scheduler.remove_time(value)
            lines.append(f"Removed {normalized}." if normalized else f"Not scheduled: {value!r}")
        lines.extend(render_schedule_lines(scheduler))
        return lines


async def _apply_control(  # noqa: C901, PLR0911, PLR0912
    orchestrator: Orchestrator,
    scheduler: PrimingScheduler,
    scope: Scope,
    command: ControlCommand,
) -> list[str]:
    state = orchestrator.scopes.get_or_create(scope)
    if command.kind is CommandKind.RESET:
        removed = await orchestrator.reset(scope)
        return ["Session reset." if removed else "Nothing to reset; next message starts fresh."]
    if command.kind is CommandKind.STOP:
        stopped = await orchestrator.cancel(scope)
        return ["Turn cancelled." if stopped else "No turn is running."]
    if command.kind is CommandKind.COST:
        cost = orchestrator.last_cost(scope)
        if cost is None:
            return ["No finished turn yet."]
        return [
            f"Last turn: ${cost.total_cost_usd:.4f} in {cost.duration_ms} ms "
            f"(session {cost.session_id}, model {cost.model or 'default'})",
        ]
    if command.kind is CommandKind.SESSIONS:
        await orchestrator.offer_session_pick(scope)
        return []
    if command.kind is CommandKind.MODE:
        orchestrator.set_permission_mode(scope, command.argument or "default")
        return [f"Permission mode: {state.settings.permission_mode}"]
    if command.kind is CommandKind.MODEL:
        if command.argument is None:
            return [f"Model: {state.settings.model or 'default'}"]
        orchestrator.set_model(scope, command.argument)
        return [f"Model set to {command.argument}."]
    if command.kind is CommandKind.BUDGET:
        if command.value is None:
            cap = state.settings.max_budget_usd
            return [f"Spend cap: ${cap:.2f}" if cap else "Spend cap: off"]
        orchestrator.set_budget(scope, command.value)
        return [f"Spend cap set to ${command.value:.2f}." if command.value else "Spend cap off."]
    if command.kind is CommandKind.CWD:
        if command.argument is None:
            return [f"Working directory: {state.settings.working_directory or Path.cwd()}"]
        try:
            orchestrator.set_working_directory(scope, Path(command.argument).expanduser())
        except ValueError as error:
            return [str(error)]
        return [f"Working directory: {state.settings.working_directory}"]
    if command.kind is CommandKind.SCHEDULE:
        action, _, value = (command.argument or "").partition(" ")
        if action == "add":
            normalized = scheduler.add_time(value, scope=scope)
            if normalized:
                scheduler.schedule_all()
            return [f"Added {normalized}." if normalized else f"Invalid time: {value!r}"]
        if action == "remove":
            normalized = scheduler.remove_time(value)
            return [f"Removed {normalized}." if normalized else f"Not scheduled: {value!r}"]
        if action == "clear":
            scheduler.clear()
            return ["Priming schedule cleared."]
        return render_schedule_lines(scheduler)
    return []


def render_outcome_lines(outcome: TurnOutcome) -> list[str]:
    lines = [f"Turn {outcome.state.value}: session={outcome.session_id or '-'}"]
    if outcome.cost is not None:
        lines.append(
            f"Cost: ${outcome.cost.total_cost_usd:.4f} duration={outcome.cost.duration_ms}ms",
        )
    if outcome.failure_kind is not None:
        lines.append(f"Failure: {outcome.failure_kind.value}: {outcome.error or ''}".rstrip())
    elif outcome.error:
        lines.append(outcome.error)
    return lines


def render_schedule_lines(scheduler: PrimingScheduler) -> list[str]:
    upcoming = scheduler.next_fire_times()
    if not upcoming:
        return ["No priming times scheduled."]
    return [
        f"- {value} next at {fire_at.strftime('%Y-%m-%d %H:%M')}" for value, fire_at in upcoming
    ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[SessionStateRepository]:
    repository = SessionStateRepository(
        settings.db_path,
        busy_timeout_ms=settings.sessions.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@asynccontextmanager
async def _orchestrator(
    settings: Settings,
    frontend: ConsoleFrontend,
) -> AsyncIterator[Orchestrator]:
    with _repository(settings) as repository:
        index = SessionIndex(
            settings.engine.projects_dir,
            prompt_chars=settings.orchestrator.index_prompt_chars,
        )
        registry = SessionRegistry(settings.sessions, repository, session_lookup=index.exists)
        orchestrator = Orchestrator(
            settings,
            frontend=frontend,
            registry=registry,
            session_index=index,
        )
        frontend.bind(orchestrator.resolve_interaction)
        await orchestrator.start()
        try:
            yield orchestrator
        finally:
            await orchestrator.shutdown()

