"""Turn orchestration across engine, sessions, approvals and retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any

from agent_relay.config import EDIT_TOOLS, MCP_TOOL_PREFIX, SUPPORTED_PERMISSION_MODES, Settings
from agent_relay.engine.events import (
    RESULT_ORIGIN_ENGINE,
    RESULT_ORIGIN_SPAWN,
    AssistantMessageEvent,
    InitEvent,
    RateLimitSignalEvent,
    ResultEvent,
    ToolInvocation,
)
from agent_relay.engine.launcher import EngineLauncher, EngineLaunchRequest
from agent_relay.interactions.models import (
    ApprovalDecision,
    InteractionKind,
    PlanDecision,
    SessionPick,
)
from agent_relay.interactions.pending import PendingInteractionRegistry
from agent_relay.orchestrator.frontend import Frontend
from agent_relay.orchestrator.models import (
    FailureKind,
    TurnCost,
    TurnOutcome,
    TurnRequest,
    TurnState,
)
from agent_relay.orchestrator.outbound import OutboundQueue
from agent_relay.orchestrator.state import ScopeState, ScopeStore, Turn
from agent_relay.ratelimit.classifier import (
    RateLimitClassification,
    classify_rate_limit,
    classify_rate_limit_signal,
)
from agent_relay.ratelimit.controller import RateLimitRetryController, RetrySchedule
from agent_relay.sessions.index import SessionIndex
from agent_relay.sessions.models import ResumePlan, Scope, UnknownSessionError
from agent_relay.sessions.registry import SessionRegistry
from agent_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

PLAN_EXIT_TOOL = "ExitPlanMode"


def _pre_approved_tools(approved: set[str], permission_mode: str) -> tuple[str, ...]:
    if permission_mode == "safe":
        return tuple(sorted(approved.union(EDIT_TOOLS)))
    return tuple(sorted(approved))


@dataclass(slots=True)
class _TurnProgress:
    """What one turn has seen so far."""

    session_id: str | None = None
    model: str | None = None
    texts: list[str] = field(default_factory=list)
    result: ResultEvent | None = None
    signal: RateLimitClassification | None = None
    denied_tools: list[str] = field(default_factory=list)
    follow_up: TurnRequest | None = None


class Orchestrator:
    """Run turns per scope: at most one active turn each, strictly sequential."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        frontend: Frontend,
        registry: SessionRegistry,
        launcher: EngineLauncher | None = None,
        session_index: SessionIndex | None = None,
        pending: PendingInteractionRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.frontend = frontend
        self.registry = registry
        self.launcher = launcher or EngineLauncher(settings.engine)
        self.session_index = session_index
        self.pending = pending or PendingInteractionRegistry(settings.interactions, clock=clock)
        self.retries = RateLimitRetryController(
            self.pending,
            on_reminder=self._on_retry_reminder,
            on_resubmit=self._on_retry_resubmit,
            clock=clock,
        )
        self.scopes = ScopeStore()
        self._clock = clock
        self._tasks: set[asyncio.Task[Any]] = set()
        self._sweeper: asyncio.Task[None] | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Load persisted bindings and start the idle-eviction sweep."""

        self.registry.load()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="session-sweeper")

    async def shutdown(self) -> None:
        """Stop active turns, settle parked interactions and flush sessions."""

        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        turns = self.scopes.active_turns()
        for turn in turns:
            await self._stop_turn(turn)
        await asyncio.gather(*(turn.wait() for turn in turns), return_exceptions=True)
        self.retries.close()
        self.pending.close()
        await self.pending.drain()
        await self.retries.drain()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.registry.flush()
        logger.info("Orchestrator stopped")

    async def _sweep_loop(self) -> None:
        interval = self.settings.sessions.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            now = self._clock()
            try:
                self.registry.evict_idle(now)
            except Exception:
                logger.exception("Idle session sweep failed")
            cutoff = now - timedelta(hours=self.settings.sessions.idle_eviction_hours)
            pruned = self.scopes.prune_idle(cutoff)
            if pruned:
                logger.debug("Pruned %d idle scope states", pruned)

    # -- turns -----------------------------------------------------------------

    async def dispatch(self, request: TurnRequest) -> Turn:
        """Start a turn, cancelling and awaiting any turn still active in the scope."""

        state = self.scopes.get_or_create(request.scope)
        async with state.lock:
            prior = state.active_turn
            if prior is not None and not prior.done:
                logger.info("Scope %s: new turn supersedes %s", request.scope.key, prior.turn_id)
                await self._stop_turn(prior)
                await asyncio.gather(prior.wait(), return_exceptions=True)
            state.transition(TurnState.DISPATCHED)
            turn = Turn(request=request)
            state.active_turn = turn
            turn.task = asyncio.create_task(
                self._run_turn(state, turn),
                name=f"turn-{request.scope.key}-{turn.turn_id}",
            )
        return turn

    async def run(self, request: TurnRequest) -> TurnOutcome:
        turn = await self.dispatch(request)
        return await turn.wait()

    async def cancel(self, scope: Scope) -> bool:
        """Cancel the scope's active turn; False when nothing was running."""

        state = self.scopes.get(scope)
        if state is None or state.active_turn is None or state.active_turn.done:
            return False
        turn = state.active_turn
        await self._stop_turn(turn)
        await asyncio.gather(turn.wait(), return_exceptions=True)
        return True

    async def reset(self, scope: Scope) -> bool:
        """Cancel, drop pending retries and forget the scope's session binding."""

        await self.cancel(scope)
        self.retries.cancel_scope(scope.key)
        self.pending.expire_scope(scope.key)
        self.scopes.discard(scope)
        removed = self.registry.remove(scope)
        logger.info("Reset scope %s (binding removed=%s)", scope.key, removed)
        return removed

    def resolve_interaction(self, token: str, outcome: Any) -> bool:
        return self.pending.resolve(token, outcome)

    async def _stop_turn(self, turn: Turn) -> None:
        turn.cancel_requested = True
        self._expire_gates(turn.request.scope)
        if turn.source is not None:
            await turn.source.stop(self.settings.engine.graceful_interrupt_seconds)

    def _expire_gates(self, scope: Scope) -> None:
        self.pending.expire_scope(scope.key, InteractionKind.TOOL_APPROVAL)
        self.pending.expire_scope(scope.key, InteractionKind.PLAN_GATE)

    async def _run_turn(self, state: ScopeState, turn: Turn) -> TurnOutcome:
        progress = _TurnProgress()
        try:
            outcome = await self._drive(state, turn, progress)
        except asyncio.CancelledError:
            outcome = self._outcome(
                state,
                TurnState.CANCELLED,
                progress,
                error="Turn task cancelled.",
            )
            await self._finish(state, turn, outcome, progress)
            raise
        except Exception as error:
            logger.exception("Turn %s in %s failed unexpectedly", turn.turn_id, state.scope.key)
            outcome = self._outcome(
                state,
                TurnState.FAILED,
                progress,
                failure_kind=FailureKind.INTERNAL,
                error=str(error) or type(error).__name__,
            )
        await self._finish(state, turn, outcome, progress)
        return outcome

    async def _drive(self, state: ScopeState, turn: Turn, progress: _TurnProgress) -> TurnOutcome:
        request = turn.request
        scope = request.scope
        permission_mode = (
            request.permission_mode
            or state.settings.permission_mode
            or self.settings.engine.permission_mode
        )
        self.registry.mark_active(scope)

        try:
            plan = self._resume_plan(request)
        except UnknownSessionError as error:
            if request.resume_session_id:
                return self._outcome(
                    state,
                    TurnState.FAILED,
                    progress,
                    failure_kind=FailureKind.SESSION_NOT_FOUND,
                    error=str(error),
                )
            await self.frontend.notify(
                scope,
                f"Session {error.session_id} is no longer available; starting a new one.",
            )
            self.registry.clear_binding(scope)
            plan = ResumePlan.fresh()

        if turn.cancel_requested:
            return self._outcome(state, TurnState.CANCELLED, progress)

        session = self.registry.get(scope)
        working_directory = (
            request.working_directory
            or state.settings.working_directory
            or (session.working_directory if session is not None else None)
        )
        progress.model = request.model or state.settings.model or self.settings.engine.default_model
        launch_request = EngineLaunchRequest(
            prompt=request.prompt,
            working_directory=working_directory,
            permission_mode=permission_mode,
            resume=plan,
            model=progress.model,
            max_budget_usd=(
                request.max_budget_usd
                if request.max_budget_usd is not None
                else state.settings.max_budget_usd or 0.0
            ),
            allowed_tools=_pre_approved_tools(state.settings.approved_tools, permission_mode),
            append_system_prompt=request.append_system_prompt,
        )
        source = await self.launcher.launch(launch_request)
        turn.source = source
        if turn.cancel_requested:
            await source.stop(self.settings.engine.graceful_interrupt_seconds)

        outbound = OutboundQueue(self.frontend, scope)
        paused = False
        try:
            state.transition(TurnState.STREAMING)
            await self.frontend.update_status(scope, TurnState.STREAMING)
            async for event in source:
                if isinstance(event, InitEvent):
                    progress.session_id = event.session_id
                    progress.model = event.model or progress.model
                    self.registry.bind_session_id(scope, event.session_id)
                elif isinstance(event, AssistantMessageEvent):
                    if event.text:
                        progress.texts.append(event.text)
                        await outbound.put(event.text)
                    if event.uuid:
                        self.registry.record_marker(scope, event.uuid)
                    for invocation in event.tool_invocations:
                        allowed = await self._gate_tool(
                            state,
                            turn,
                            outbound,
                            invocation,
                            permission_mode=permission_mode,
                            progress=progress,
                        )
                        if not allowed:
                            if not turn.cancel_requested:
                                progress.denied_tools.append(invocation.name)
                            paused = True
                            break
                    if paused:
                        break
                elif isinstance(event, RateLimitSignalEvent):
                    classification = classify_rate_limit_signal(
                        event,
                        self._clock(),
                        settings=self.settings.rate_limit,
                    )
                    if classification is not None:
                        progress.signal = classification
                elif isinstance(event, ResultEvent):
                    progress.result = event
                    if event.session_id and not progress.session_id:
                        progress.session_id = event.session_id
        finally:
            if paused or turn.cancel_requested or not source.finished:
                await source.stop(self.settings.engine.graceful_interrupt_seconds)
            await outbound.close()

        if source.dropped_lines:
            logger.warning(
                "Turn %s skipped %d malformed engine lines",
                turn.turn_id,
                source.dropped_lines,
            )
        return await self._classify(state, turn, progress, paused=paused)

    def _resume_plan(self, request: TurnRequest) -> ResumePlan:
        if request.force_fresh:
            return ResumePlan.fresh()
        return self.registry.resolve_resume(
            request.scope,
            resume_session_id=request.resume_session_id,
            continue_last=request.continue_last,
        )

    async def _gate_tool(  # noqa: PLR0913
        self,
        state: ScopeState,
        turn: Turn,
        outbound: OutboundQueue,
        invocation: ToolInvocation,
        *,
        permission_mode: str,
        progress: _TurnProgress,
    ) -> bool:
        """Decide whether the turn may go on past one tool invocation."""

        if permission_mode == "trust":
            return True
        scope = state.scope

        if permission_mode == "plan" and invocation.name == PLAN_EXIT_TOOL:
            await outbound.join()
            state.transition(TurnState.AWAITING_APPROVAL)
            token, future = self.pending.ask(
                kind=InteractionKind.PLAN_GATE,
                expired_outcome=PlanDecision.EXPIRED,
                scope_key=scope.key,
                payload={"turn_id": turn.turn_id},
            )
            await self.frontend.update_status(scope, TurnState.AWAITING_APPROVAL, "plan review")
            plan = str(invocation.input.get("plan") or "")
            await self.frontend.request_plan_review(scope, token, plan)
            decision = await future
            if turn.cancel_requested:
                return False
            state.transition(TurnState.STREAMING)
            if decision is PlanDecision.EXECUTE:
                progress.follow_up = TurnRequest(
                    scope=scope,
                    prompt=self.settings.orchestrator.plan_follow_up_prompt,
                    permission_mode="default",
                    model=turn.request.model,
                    max_budget_usd=turn.request.max_budget_usd,
                    working_directory=turn.request.working_directory,
                    origin="plan",
                )
            else:
                await self.frontend.notify(scope, f"Plan not executed ({decision.value}).")
            return True

        if not self._requires_approval(invocation.name, permission_mode):
            return True
        if invocation.name in state.settings.approved_tools:
            return True

        await outbound.join()
        state.transition(TurnState.AWAITING_APPROVAL)
        token, future = self.pending.ask(
            kind=InteractionKind.TOOL_APPROVAL,
            expired_outcome=ApprovalDecision.EXPIRED,
            scope_key=scope.key,
            payload={"turn_id": turn.turn_id, "tool": invocation.name},
        )
        await self.frontend.update_status(scope, TurnState.AWAITING_APPROVAL, invocation.name)
        await self.frontend.request_approval(scope, token, invocation)
        decision = await future
        if turn.cancel_requested:
            return False
        if decision is ApprovalDecision.APPROVED_FOR_SESSION:
            state.settings.approved_tools.add(invocation.name)
        if not decision.allows:
            logger.info("Tool %s %s in %s", invocation.name, decision.value, scope.key)
            return False
        state.transition(TurnState.STREAMING)
        return True

    def _requires_approval(self, tool_name: str, permission_mode: str) -> bool:
        """Bash and MCP tools need approval in default and safe; edits only in default."""

        if permission_mode not in {"default", "safe"}:
            return False
        if permission_mode == "safe" and tool_name in EDIT_TOOLS:
            return False
        return (
            tool_name in self.settings.interactions.approval_required_tools
            or tool_name.startswith(MCP_TOOL_PREFIX)
        )

    async def _classify(
        self,
        state: ScopeState,
        turn: Turn,
        progress: _TurnProgress,
        *,
        paused: bool,
    ) -> TurnOutcome:
        if turn.cancel_requested:
            return self._outcome(state, TurnState.CANCELLED, progress)
        if paused:
            return self._outcome(
                state,
                TurnState.PAUSED,
                progress,
                error=f"Tool not approved: {', '.join(progress.denied_tools)}",
            )
        result = progress.result
        if result is None:
            return self._outcome(
                state,
                TurnState.FAILED,
                progress,
                failure_kind=FailureKind.TRANSPORT,
                error="Engine stream ended without a result.",
            )
        if result.permission_denials:
            progress.denied_tools.extend(denial.tool_name for denial in result.permission_denials)
            return self._outcome(
                state,
                TurnState.PAUSED,
                progress,
                error=f"Engine denied tools: {', '.join(progress.denied_tools)}",
            )
        if not result.is_error:
            return self._outcome(state, TurnState.COMPLETED, progress)

        classification = progress.signal
        if classification is None and result.origin != RESULT_ORIGIN_SPAWN:
            # Reset times quoted without a zone are read in the host zone.
            classification = classify_rate_limit(
                result.result,
                self._clock().astimezone(),
                settings=self.settings.rate_limit,
            )
        if classification is not None:
            outcome = self._outcome(
                state,
                TurnState.FAILED,
                progress,
                failure_kind=FailureKind.CAPACITY,
                error=result.result,
            )
            payload = replace(
                turn.request,
                resume_session_id=None,
                continue_last=False,
                force_fresh=False,
            )
            schedule = self.retries.offer(state.scope.key, payload, classification)
            outcome.retry_token = schedule.token
            if schedule.offer_token is not None:
                await self.frontend.offer_retry(state.scope, schedule.offer_token, schedule)
            return outcome

        failure_kind = (
            FailureKind.ENGINE if result.origin == RESULT_ORIGIN_ENGINE else FailureKind.TRANSPORT
        )
        return self._outcome(
            state,
            TurnState.FAILED,
            progress,
            failure_kind=failure_kind,
            error=result.result,
        )

    def _outcome(  # noqa: PLR0913
        self,
        state: ScopeState,
        terminal: TurnState,
        progress: _TurnProgress,
        *,
        failure_kind: FailureKind | None = None,
        error: str | None = None,
    ) -> TurnOutcome:
        result = progress.result
        cost = None
        if result is not None and progress.session_id:
            cost = TurnCost(
                total_cost_usd=result.total_cost_usd,
                duration_ms=result.duration_ms,
                session_id=progress.session_id,
                model=progress.model,
            )
        text = result.result if result is not None and not result.is_error else ""
        return TurnOutcome(
            scope=state.scope,
            state=terminal,
            session_id=progress.session_id,
            text=text or "\n".join(progress.texts),
            failure_kind=failure_kind,
            error=error,
            cost=cost,
            denied_tools=tuple(progress.denied_tools),
            messages=list(progress.texts),
        )

    async def _finish(
        self,
        state: ScopeState,
        turn: Turn,
        outcome: TurnOutcome,
        progress: _TurnProgress,
    ) -> None:
        """Close out a turn: one terminal status, flush, index, back to idle."""

        scope = state.scope
        try:
            self._expire_gates(scope)
            state.transition(outcome.state)
            if outcome.cost is not None:
                state.last_cost = outcome.cost
            self.registry.mark_idle(scope)
            try:
                self.registry.flush()
            except Exception:
                logger.exception("Flushing sessions after turn %s failed", turn.turn_id)
            self._record_in_index(turn, progress)
            detail = outcome.error if outcome.state is not TurnState.COMPLETED else None
            try:
                await self.frontend.update_status(scope, outcome.state, detail)
            except Exception:
                logger.exception("Terminal status update for %s failed", scope.key)
        finally:
            state.settle(turn, now=self._clock())
        logger.info(
            "Turn %s in %s ended %s (session=%s failure=%s)",
            turn.turn_id,
            scope.key,
            outcome.state.value,
            outcome.session_id,
            outcome.failure_kind.value if outcome.failure_kind else None,
        )
        if progress.follow_up is not None and outcome.state is TurnState.COMPLETED:
            self._spawn(self.dispatch(progress.follow_up), f"follow-up-{scope.key}")

    def _record_in_index(self, turn: Turn, progress: _TurnProgress) -> None:
        if self.session_index is None or not progress.session_id:
            return
        session = self.registry.get(turn.request.scope)
        project = (
            turn.request.working_directory
            or (session.working_directory if session is not None else None)
            or Path.cwd()
        )
        try:
            self.session_index.record_session(
                session_id=progress.session_id,
                project_path=project,
                first_prompt=turn.request.prompt,
            )
        except Exception:
            logger.exception("Could not update engine session index for %s", progress.session_id)

    # -- session pick ----------------------------------------------------------

    async def offer_session_pick(
        self,
        scope: Scope,
        *,
        prompt: str | None = None,
        limit: int = 10,
        project_path: Path | None = None,
    ) -> str | None:
        """List recent engine sessions and park a pick; a pick dispatches a resumed turn."""

        if self.session_index is None:
            await self.frontend.notify(scope, "Engine session index is not configured.")
            return None
        entries = self.session_index.list_recent(limit, project_path=project_path)
        if not entries:
            await self.frontend.notify(scope, "No engine sessions found.")
            return None
        token = self.pending.register(
            partial(self._on_session_pick, scope, prompt),
            kind=InteractionKind.SESSION_PICK,
            expired_outcome=SessionPick.expired(),
            scope_key=scope.key,
            payload={"session_ids": [entry.session_id for entry in entries]},
        )
        await self.frontend.offer_session_pick(scope, token, entries)
        return token

    async def _on_session_pick(self, scope: Scope, prompt: str | None, pick: SessionPick) -> None:
        if pick.session_id is None:
            return
        await self.dispatch(
            TurnRequest(
                scope=scope,
                prompt=pick.prompt or prompt or "continue",
                resume_session_id=pick.session_id,
                origin="session_pick",
            ),
        )

    # -- per-scope settings ----------------------------------------------------

    def set_model(self, scope: Scope, model: str | None) -> None:
        self.scopes.get_or_create(scope).settings.model = model or None

    def set_budget(self, scope: Scope, max_budget_usd: float | None) -> None:
        if max_budget_usd is not None and max_budget_usd < 0:
            raise ValueError("Spend cap must be >= 0.")
        self.scopes.get_or_create(scope).settings.max_budget_usd = max_budget_usd or None

    def set_permission_mode(self, scope: Scope, mode: str) -> None:
        """Switch the scope's permission level; ``default`` also forgets session approvals."""

        normalized = mode.strip().lower()
        if normalized not in SUPPORTED_PERMISSION_MODES:
            raise ValueError(
                f"Permission mode must be one of {', '.join(SUPPORTED_PERMISSION_MODES)}: {mode!r}",
            )
        settings = self.scopes.get_or_create(scope).settings
        settings.permission_mode = normalized
        if normalized == "default":
            settings.approved_tools.clear()

    def set_working_directory(self, scope: Scope, working_directory: Path | None) -> None:
        if working_directory is not None and not working_directory.is_dir():
            raise ValueError(f"Working directory does not exist: {working_directory}")
        resolved = working_directory.resolve() if working_directory is not None else None
        self.scopes.get_or_create(scope).settings.working_directory = resolved
        self.registry.set_working_directory(scope, resolved)

    def last_cost(self, scope: Scope) -> TurnCost | None:
        state = self.scopes.get(scope)
        return state.last_cost if state is not None else None

    def turn_state(self, scope: Scope) -> TurnState:
        state = self.scopes.get(scope)
        return state.state if state is not None else TurnState.IDLE

    # -- retries ---------------------------------------------------------------

    async def _on_retry_reminder(self, schedule: RetrySchedule) -> None:
        request: TurnRequest = schedule.payload
        await self.frontend.notify(
            request.scope,
            "Engine capacity should be available again; resend your prompt to continue.",
        )

    async def _on_retry_resubmit(self, schedule: RetrySchedule) -> None:
        request: TurnRequest = schedule.payload
        await self.frontend.notify(
            request.scope,
            "Retrying the prompt that hit the capacity limit.",
        )
        await self.dispatch(replace(request, origin="retry"))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=error)
