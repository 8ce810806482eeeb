"""CLI entrypoint for agent-relay."""

import logging
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.config import SUPPORTED_PERMISSION_MODES, env_bool
from agent_relay.orchestrator.controllers import (
    BindingsCommand,
    ChatCommand,
    RelayCliController,
    ResetCommand,
    RunTurnCommand,
    ScheduleCommand,
    SessionsCommand,
)

click.rich_click.USE_MARKDOWN = True
RELAY_CONTROLLER = RelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging to stderr.")
def agent_relay(verbose: bool) -> None:
    """Relay prompts to a local agent engine with resumable sessions."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.command("run")
@click.argument("prompt")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--thread", default=None, help="Thread id inside the terminal conversation.")
@click.option("--resume", "resume_session_id", default=None, help="Resume this engine session id.")
@click.option(
    "--continue",
    "continue_last",
    is_flag=True,
    default=False,
    help="Continue the engine's most recent session.",
)
@click.option("--model", default=None, help="Engine model for this turn.")
@click.option(
    "--max-budget-usd",
    type=click.FloatRange(min=0),
    default=None,
    help="Spend cap for this turn (0 disables).",
)
@click.option(
    "--permission-mode",
    type=click.Choice(list(SUPPORTED_PERMISSION_MODES), case_sensitive=False),
    default=None,
    help="Tool permission level; defaults to AGENT_RELAY_PERMISSION_MODE.",
)
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=None,
    help="Working directory for the engine.",
)
@click.option(
    "--yes",
    "auto_approve",
    is_flag=True,
    default=False,
    help="Approve tool requests without asking (default from AGENT_RELAY_AUTO_APPROVE).",
)
def run(  # noqa: PLR0913
    prompt: str,
    db_path: Path | None,
    thread: str | None,
    resume_session_id: str | None,
    continue_last: bool,
    model: str | None,
    max_budget_usd: float | None,
    permission_mode: str | None,
    working_directory: Path | None,
    auto_approve: bool,
) -> None:
    """Run one turn in the terminal scope and print the reply."""

    if resume_session_id and continue_last:
        raise click.UsageError("--resume and --continue are mutually exclusive.")
    result = RELAY_CONTROLLER.run_turn(
        RunTurnCommand(
            db_path=db_path,
            prompt=prompt,
            thread=thread,
            resume_session_id=resume_session_id,
            continue_last=continue_last,
            model=model,
            max_budget_usd=max_budget_usd,
            permission_mode=permission_mode.lower() if permission_mode else None,
            working_directory=working_directory,
            auto_approve=_auto_approve(auto_approve),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Turn did not complete.")


@agent_relay.command("chat")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--thread", default=None, help="Thread id inside the terminal conversation.")
@click.option(
    "--yes",
    "auto_approve",
    is_flag=True,
    default=False,
    help="Approve tool requests without asking (default from AGENT_RELAY_AUTO_APPROVE).",
)
@click.option(
    "--priming/--no-priming",
    default=False,
    show_default=True,
    help="Arm the priming schedule while the chat is open.",
)
def chat(db_path: Path | None, thread: str | None, auto_approve: bool, priming: bool) -> None:
    """Interactive conversation; dash commands (-reset, -model, -plan, ...) control the scope."""

    _emit_lines(
        RELAY_CONTROLLER.chat(
            ChatCommand(
                db_path=db_path,
                thread=thread,
                auto_approve=_auto_approve(auto_approve),
                priming=priming,
            ),
        ),
    )


@agent_relay.command("sessions")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=10,
    show_default=True,
    help="Max sessions to print.",
)
@click.option(
    "--project",
    "project_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Only sessions of this project directory.",
)
def sessions(limit: int, project_path: Path | None) -> None:
    """List recent engine sessions from the engine's own index."""

    _emit_lines(
        RELAY_CONTROLLER.list_sessions(
            SessionsCommand(limit=limit, project_path=project_path),
        ),
    )


@agent_relay.command("bindings")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def bindings(db_path: Path | None) -> None:
    """List persisted scope-to-session bindings."""

    _emit_lines(RELAY_CONTROLLER.list_bindings(BindingsCommand(db_path=db_path)))


@agent_relay.command("reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--thread", default=None, help="Thread id inside the terminal conversation.")
def reset(db_path: Path | None, thread: str | None) -> None:
    """Forget the terminal scope's session so the next turn starts fresh."""

    _emit_lines(RELAY_CONTROLLER.reset(ResetCommand(db_path=db_path, thread=thread)))


@agent_relay.command("schedule")
@click.option("--add", multiple=True, help="Add a priming time (HH:MM). Repeatable.")
@click.option("--remove", multiple=True, help="Remove a priming time (HH:MM). Repeatable.")
@click.option("--clear", is_flag=True, default=False, help="Remove all priming times.")
def schedule(add: tuple[str, ...], remove: tuple[str, ...], clear: bool) -> None:
    """Manage the priming schedule used by `chat --priming`."""

    _emit_lines(RELAY_CONTROLLER.schedule(ScheduleCommand(add=add, remove=remove, clear=clear)))


def _auto_approve(flag: bool) -> bool:
    if flag:
        return True
    try:
        return env_bool("AGENT_RELAY_AUTO_APPROVE", False)
    except ValueError as error:
        raise click.BadParameter(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
