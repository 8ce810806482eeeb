"""Front-end boundary and the console implementation used by the CLI."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import rich_click as click

from agent_relay.engine.events import ToolInvocation
from agent_relay.interactions.models import (
    ApprovalDecision,
    PlanDecision,
    RetryDecision,
    SessionPick,
)
from agent_relay.orchestrator.models import TurnState
from agent_relay.ratelimit.controller import RetrySchedule
from agent_relay.sessions.models import EngineSessionEntry, Scope

logger = logging.getLogger(__name__)

Resolver = Callable[[str, Any], bool]


class Frontend(Protocol):
    """Where the relay renders output and collects decisions.

    Prompts carry an interaction token; the decision comes back through
    ``Orchestrator.resolve_interaction(token, outcome)``.
    """

    async def post_message(self, scope: Scope, text: str) -> None: ...

    async def update_status(
        self,
        scope: Scope,
        state: TurnState,
        detail: str | None = None,
    ) -> None: ...

    async def request_approval(
        self,
        scope: Scope,
        token: str,
        invocation: ToolInvocation,
    ) -> None: ...

    async def request_plan_review(self, scope: Scope, token: str, plan: str) -> None: ...

    async def offer_retry(self, scope: Scope, token: str, schedule: RetrySchedule) -> None: ...

    async def offer_session_pick(
        self,
        scope: Scope,
        token: str,
        entries: Sequence[EngineSessionEntry],
    ) -> None: ...

    async def notify(self, scope: Scope, text: str) -> None: ...


class ConsoleFrontend:
    """Terminal front-end: prints output and asks for decisions on stdin."""

    def __init__(self, *, auto_approve: bool = False, interactive: bool = True) -> None:
        self.auto_approve = auto_approve
        self.interactive = interactive
        self.resolver: Resolver | None = None
        self.final_state: TurnState | None = None

    def bind(self, resolver: Resolver) -> None:
        self.resolver = resolver

    async def post_message(self, scope: Scope, text: str) -> None:
        click.echo(text)

    async def update_status(
        self,
        scope: Scope,
        state: TurnState,
        detail: str | None = None,
    ) -> None:
        if state.is_terminal:
            self.final_state = state
        suffix = f": {detail}" if detail else ""
        click.echo(click.style(f"[{state.value}]{suffix}", dim=True), err=True)

    async def notify(self, scope: Scope, text: str) -> None:
        click.echo(click.style(text, fg="yellow"), err=True)

    async def request_approval(self, scope: Scope, token: str, invocation: ToolInvocation) -> None:
        summary = json.dumps(invocation.input, ensure_ascii=False)[:300]
        click.echo(f"Tool request: {invocation.name} {summary}", err=True)
        if self.auto_approve:
            self._resolve(token, ApprovalDecision.APPROVED)
            return
        if not self.interactive:
            self._resolve(token, ApprovalDecision.DENIED)
            return
        answer = await asyncio.to_thread(
            click.prompt,
            "Approve? [y]es / [a]lways / [n]o",
            default="n",
            err=True,
        )
        decision = {
            "y": ApprovalDecision.APPROVED,
            "a": ApprovalDecision.APPROVED_FOR_SESSION,
        }.get(answer.strip().lower()[:1], ApprovalDecision.DENIED)
        self._resolve(token, decision)

    async def request_plan_review(self, scope: Scope, token: str, plan: str) -> None:
        click.echo(plan)
        if self.auto_approve:
            self._resolve(token, PlanDecision.EXECUTE)
            return
        if not self.interactive:
            self._resolve(token, PlanDecision.REJECT)
            return
        execute = await asyncio.to_thread(click.confirm, "Execute this plan?", err=True)
        self._resolve(token, PlanDecision.EXECUTE if execute else PlanDecision.REJECT)

    async def offer_retry(self, scope: Scope, token: str, schedule: RetrySchedule) -> None:
        when = schedule.fire_at.astimezone().strftime("%Y-%m-%d %H:%M")
        click.echo(f"Engine capacity limit reached; capacity expected back at {when}.", err=True)
        # A one-shot CLI process will not be alive at fire time.
        self._resolve(token, RetryDecision.DECLINE)

    async def offer_session_pick(
        self,
        scope: Scope,
        token: str,
        entries: Sequence[EngineSessionEntry],
    ) -> None:
        for number, entry in enumerate(entries, start=1):
            title = entry.summary or entry.first_prompt or "(no preview)"
            click.echo(f"{number:>2}. {entry.session_id}  {title}")
        if not self.interactive:
            self._resolve(token, SessionPick.expired())
            return
        choice = await asyncio.to_thread(
            click.prompt,
            "Session number",
            default=0,
            type=int,
            err=True,
        )
        if 1 <= choice <= len(entries):
            self._resolve(token, SessionPick(session_id=entries[choice - 1].session_id))
        else:
            self._resolve(token, SessionPick.expired())

    def _resolve(self, token: str, outcome: Any) -> None:
        if self.resolver is None:
            logger.warning("Console front-end has no resolver; dropping decision for %s", token)
            return
        if not self.resolver(token, outcome):
            click.echo("That request has already expired.", err=True)
