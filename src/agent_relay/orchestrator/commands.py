"""Parse dash-prefixed control commands typed into a conversation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_CONTINUE = re.compile(r"^-continue(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_RESUME = re.compile(rf"^-resume(?:\s+`?({_UUID})`?)?(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_MODEL = re.compile(r"^-model(?:\s+(\S+))?$", re.IGNORECASE)
_BUDGET = re.compile(r"^-budget(?:\s+([\d.]+|off|reset))?$", re.IGNORECASE)
_CWD = re.compile(r"^-cwd(?:\s+(.+))?$", re.IGNORECASE)
_SCHEDULE = re.compile(r"^-schedule(?:\s+(add|remove|clear))?(?:\s+(\S+))?$", re.IGNORECASE)


class CommandKind(str, Enum):
    RESET = "reset"
    STOP = "stop"
    MODEL = "model"
    BUDGET = "budget"
    COST = "cost"
    SESSIONS = "sessions"
    MODE = "mode"
    CWD = "cwd"
    SCHEDULE = "schedule"


@dataclass(frozen=True, slots=True)
class ResumeCommand:
    """``-continue [prompt]`` or ``-resume [<uuid>] [prompt]``."""

    continue_last: bool = False
    resume_session_id: str | None = None
    prompt: str | None = None


@dataclass(frozen=True, slots=True)
class ControlCommand:
    """Any non-resume control command; ``argument`` is None when just querying."""

    kind: CommandKind
    argument: str | None = None
    value: float | None = None


def parse_resume_command(text: str) -> ResumeCommand | None:
    """``-resume`` without an id behaves like ``-continue``."""

    trimmed = text.strip()
    match = _CONTINUE.match(trimmed)
    if match is not None:
        return ResumeCommand(continue_last=True, prompt=_optional(match.group(1)))
    match = _RESUME.match(trimmed)
    if match is not None:
        session_id = match.group(1)
        prompt = _optional(match.group(2))
        if session_id:
            return ResumeCommand(resume_session_id=session_id.lower(), prompt=prompt)
        return ResumeCommand(continue_last=True, prompt=prompt)
    return None


def parse_control_command(text: str) -> ControlCommand | None:  # noqa: PLR0911
    trimmed = text.strip()
    lowered = trimmed.lower()
    if lowered == "-reset":
        return ControlCommand(CommandKind.RESET)
    if lowered in {"-stop", "-cancel"}:
        return ControlCommand(CommandKind.STOP)
    if lowered == "-cost":
        return ControlCommand(CommandKind.COST)
    if re.match(r"^-sessions?(\s+list)?$", lowered):
        return ControlCommand(CommandKind.SESSIONS)
    if lowered in {"-default", "-safe", "-plan", "-trust"}:
        return ControlCommand(CommandKind.MODE, argument=lowered[1:])

    match = _MODEL.match(trimmed)
    if match is not None:
        return ControlCommand(CommandKind.MODEL, argument=match.group(1))
    match = _BUDGET.match(trimmed)
    if match is not None:
        raw = match.group(1)
        if raw is None:
            return ControlCommand(CommandKind.BUDGET)
        if raw.lower() in {"off", "reset"}:
            return ControlCommand(CommandKind.BUDGET, argument=raw.lower(), value=0.0)
        try:
            return ControlCommand(CommandKind.BUDGET, argument=raw, value=float(raw))
        except ValueError:
            return None
    match = _CWD.match(trimmed)
    if match is not None:
        return ControlCommand(CommandKind.CWD, argument=_optional(match.group(1)))
    match = _SCHEDULE.match(trimmed)
    if match is not None:
        action = (match.group(1) or "").lower() or None
        return ControlCommand(
            CommandKind.SCHEDULE,
            argument=f"{action} {match.group(2) or ''}".strip() if action else None,
        )
    return None


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None
