from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from agent_relay.config import Settings
from agent_relay.interactions import ApprovalDecision, InteractionKind, PlanDecision, RetryDecision
from agent_relay.orchestrator.models import (
    FailureKind,
    InvalidTransitionError,
    TurnRequest,
    TurnState,
    can_transition,
)
from agent_relay.orchestrator.service import Orchestrator
from agent_relay.orchestrator.state import ScopeState, ScopeStore, Turn
from agent_relay.ratelimit import RetryState
from agent_relay.sessions.index import encode_project_dir
from agent_relay.sessions.models import Scope
from agent_relay.sessions.registry import SessionRegistry

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Turn Lifecycle"),
]

SCOPE = Scope(principal_id="u1", conversation_id="c1", thread_id="t1")


async def _wait_for(predicate: Callable[[], object], timeout: float = 15.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition was not reached in time")
        await asyncio.sleep(0.02)


def _run(orchestrator: Orchestrator, scenario):
    async def wrapper():
        await orchestrator.start()
        try:
            return await scenario()
        finally:
            await orchestrator.shutdown()

    return asyncio.run(wrapper())


def _bound_session(registry: SessionRegistry) -> str | None:
    session = registry.get(SCOPE)
    return session.session_id if session is not None else None


def test_completed_turn_binds_session_and_reports_one_terminal_status(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="hello")))

    assert outcome.state is TurnState.COMPLETED
    assert outcome.text == "echo: hello"
    assert outcome.failure_kind is None
    assert outcome.cost.total_cost_usd == 0.0012
    assert recording_frontend.messages == ["echo: hello"]
    assert recording_frontend.terminal_states == [TurnState.COMPLETED]
    assert recording_frontend.statuses[0] == (TurnState.STREAMING, None)
    assert _bound_session(relay.registry) == outcome.session_id
    assert relay.registry.get(SCOPE).last_marker
    assert relay.turn_state(SCOPE) is TurnState.IDLE
    assert relay.last_cost(SCOPE).session_id == outcome.session_id
    assert relay.session_index.exists(outcome.session_id)
    stored = relay.registry.repository.load(SCOPE)
    assert stored.session_id == outcome.session_id


def test_second_turn_resumes_the_bound_session(relay: Orchestrator) -> None:
    async def scenario():
        first = await relay.run(TurnRequest(scope=SCOPE, prompt="first"))
        second = await relay.run(TurnRequest(scope=SCOPE, prompt="second"))
        return first, second

    first, second = _run(relay, scenario)

    assert first.state is second.state is TurnState.COMPLETED
    assert second.session_id == first.session_id


def test_force_fresh_turn_starts_a_new_session(relay: Orchestrator) -> None:
    async def scenario():
        first = await relay.run(TurnRequest(scope=SCOPE, prompt="first"))
        fresh = await relay.run(TurnRequest(scope=SCOPE, prompt="again", force_fresh=True))
        return first, fresh

    first, fresh = _run(relay, scenario)

    assert fresh.session_id != first.session_id
    assert _bound_session(relay.registry) == fresh.session_id


def test_new_turn_cancels_the_running_one(relay: Orchestrator, recording_frontend) -> None:
    async def scenario():
        slow = await relay.dispatch(TurnRequest(scope=SCOPE, prompt="[slow] long job"))
        await _wait_for(lambda: _bound_session(relay.registry))
        quick = await relay.run(TurnRequest(scope=SCOPE, prompt="quick"))
        return await slow.wait(), quick

    slow, quick = _run(relay, scenario)

    assert slow.state is TurnState.CANCELLED
    assert quick.state is TurnState.COMPLETED
    assert recording_frontend.terminal_states == [TurnState.CANCELLED, TurnState.COMPLETED]
    # The interrupted session stays resumable.
    assert quick.session_id == slow.session_id


def test_cancel_stops_the_active_turn(relay: Orchestrator) -> None:
    async def scenario():
        turn = await relay.dispatch(TurnRequest(scope=SCOPE, prompt="[slow] long job"))
        await _wait_for(lambda: _bound_session(relay.registry))
        cancelled = await relay.cancel(SCOPE)
        return cancelled, await turn.wait(), await relay.cancel(SCOPE)

    cancelled, outcome, second_cancel = _run(relay, scenario)

    assert cancelled is True
    assert second_cancel is False
    assert outcome.state is TurnState.CANCELLED
    assert relay.turn_state(SCOPE) is TurnState.IDLE


def test_denied_tool_pauses_the_turn(relay: Orchestrator, recording_frontend) -> None:
    recording_frontend.approval_decision = ApprovalDecision.DENIED

    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="[tool:Bash] go")))

    assert outcome.state is TurnState.PAUSED
    assert outcome.denied_tools == ("Bash",)
    assert [item.name for item in recording_frontend.approval_requests] == ["Bash"]
    assert (TurnState.AWAITING_APPROVAL, "Bash") in recording_frontend.statuses
    assert recording_frontend.terminal_states == [TurnState.PAUSED]


def test_session_approval_widens_allowed_tools(relay: Orchestrator, recording_frontend) -> None:
    recording_frontend.approval_decision = ApprovalDecision.APPROVED_FOR_SESSION

    async def scenario():
        first = await relay.run(TurnRequest(scope=SCOPE, prompt="[tool:Bash] one"))
        second = await relay.run(TurnRequest(scope=SCOPE, prompt="[tool:Bash] two"))
        return first, second

    first, second = _run(relay, scenario)

    assert first.state is second.state is TurnState.COMPLETED
    assert len(recording_frontend.approval_requests) == 1
    assert relay.scopes.get(SCOPE).settings.approved_tools == {"Bash"}

    relay.set_permission_mode(SCOPE, "default")
    assert relay.scopes.get(SCOPE).settings.approved_tools == set()


def test_tools_outside_the_approval_list_run_without_prompt(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="[tool:Read] look")))

    assert outcome.state is TurnState.COMPLETED
    assert recording_frontend.approval_requests == []


def test_trust_mode_never_asks(relay: Orchestrator, recording_frontend) -> None:
    relay.set_permission_mode(SCOPE, "trust")

    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="[tool:Bash] go")))

    assert outcome.state is TurnState.COMPLETED
    assert recording_frontend.approval_requests == []


def test_cancel_while_awaiting_approval(relay: Orchestrator, recording_frontend) -> None:
    recording_frontend.approval_decision = None

    async def scenario():
        turn = await relay.dispatch(TurnRequest(scope=SCOPE, prompt="[tool:Bash] go"))
        await _wait_for(lambda: relay.turn_state(SCOPE) is TurnState.AWAITING_APPROVAL)
        assert len(relay.pending.pending(InteractionKind.TOOL_APPROVAL)) == 1
        await relay.cancel(SCOPE)
        return await turn.wait()

    outcome = _run(relay, scenario)

    assert outcome.state is TurnState.CANCELLED
    assert outcome.denied_tools == ()
    assert len(relay.pending) == 0


def test_executed_plan_dispatches_a_follow_up_turn(relay: Orchestrator, recording_frontend) -> None:
    relay.set_permission_mode(SCOPE, "plan")

    async def scenario():
        outcome = await relay.run(TurnRequest(scope=SCOPE, prompt="[tool:ExitPlanMode] plan it"))
        await _wait_for(lambda: len(recording_frontend.terminal_states) == 2)
        return outcome

    outcome = _run(relay, scenario)

    assert outcome.state is TurnState.COMPLETED
    assert recording_frontend.plans == ["1. Read the code\n2. Change it"]
    assert recording_frontend.terminal_states == [TurnState.COMPLETED, TurnState.COMPLETED]
    assert recording_frontend.messages[-1] == "echo: Proceed with the approved plan."


def test_rejected_plan_finishes_without_follow_up(relay: Orchestrator, recording_frontend) -> None:
    relay.set_permission_mode(SCOPE, "plan")
    recording_frontend.plan_decision = PlanDecision.REJECT

    async def scenario():
        outcome = await relay.run(TurnRequest(scope=SCOPE, prompt="[tool:ExitPlanMode] plan it"))
        await asyncio.sleep(0.2)
        return outcome

    outcome = _run(relay, scenario)

    assert outcome.state is TurnState.COMPLETED
    assert recording_frontend.terminal_states == [TurnState.COMPLETED]
    assert "Plan not executed (reject)." in recording_frontend.notices


def test_capacity_limit_fails_turn_and_offers_retry(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    async def scenario():
        outcome = await relay.run(TurnRequest(scope=SCOPE, prompt="[rate-limit] big job"))
        schedule = relay.retries.for_scope(SCOPE.key)
        offer_token = recording_frontend.retry_offers[0][0]
        accepted = relay.resolve_interaction(offer_token, RetryDecision.ACCEPT)
        return outcome, schedule, accepted, schedule.state

    outcome, schedule, accepted, state_after_accept = _run(relay, scenario)

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.CAPACITY
    assert outcome.retry_token == schedule.token
    assert schedule.classification.matched_rule == "reset_time"
    assert schedule.payload.prompt == "[rate-limit] big job"
    assert accepted is True
    assert state_after_accept is RetryState.SCHEDULED
    # Shutdown cancels whatever is still scheduled.
    assert schedule.state is RetryState.CANCELLED
    assert recording_frontend.terminal_states == [TurnState.FAILED]


def test_reset_drops_binding_retries_and_pending_offers(relay: Orchestrator) -> None:
    async def scenario():
        await relay.run(TurnRequest(scope=SCOPE, prompt="[rate-limit] big job"))
        assert relay.retries.for_scope(SCOPE.key) is not None
        return await relay.reset(SCOPE)

    removed = _run(relay, scenario)

    assert removed is True
    assert relay.retries.for_scope(SCOPE.key) is None
    assert relay.pending.pending(InteractionKind.RETRY_OFFER) == []
    assert relay.registry.get(SCOPE) is None
    assert relay.registry.repository.load(SCOPE) is None
    assert relay.scopes.get(SCOPE) is None


def test_unknown_explicit_session_fails_without_spawning(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    missing = str(uuid.uuid4())

    outcome = _run(
        relay,
        lambda: relay.run(TurnRequest(scope=SCOPE, prompt="hi", resume_session_id=missing)),
    )

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.SESSION_NOT_FOUND
    assert missing in outcome.error
    assert recording_frontend.messages == []
    assert recording_frontend.terminal_states == [TurnState.FAILED]


def test_stale_scope_binding_falls_back_to_a_fresh_session(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    relay.registry.bind_session_id(SCOPE, "stale-session")

    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="hello")))

    assert outcome.state is TurnState.COMPLETED
    assert outcome.session_id != "stale-session"
    assert any("stale-session" in notice for notice in recording_frontend.notices)
    assert _bound_session(relay.registry) == outcome.session_id


def test_engine_crash_is_a_transport_failure(relay: Orchestrator) -> None:
    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt="[crash]")))

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.TRANSPORT
    assert "fake engine crashed" in outcome.error


def test_missing_engine_binary_is_a_transport_failure(
    relay_settings: Settings,
    recording_frontend,
) -> None:
    settings = replace(
        relay_settings,
        engine=replace(relay_settings.engine, command="agent-relay-no-such-engine-binary"),
    )
    orchestrator = Orchestrator(
        settings,
        frontend=recording_frontend,
        registry=SessionRegistry(settings.sessions),
    )

    outcome = _run(orchestrator, lambda: orchestrator.run(TurnRequest(scope=SCOPE, prompt="hi")))

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.TRANSPORT
    assert orchestrator.retries.for_scope(SCOPE.key) is None


def test_session_pick_dispatches_a_resumed_turn(relay: Orchestrator, recording_frontend) -> None:
    project_dir = relay.session_index.projects_dir / encode_project_dir("/work/app")
    project_dir.mkdir(parents=True)
    picked = str(uuid.uuid4())
    (project_dir / f"{picked}.jsonl").write_text(
        json.dumps({"type": "user", "message": {"content": "earlier work"}}) + "\n",
        encoding="utf-8",
    )

    async def scenario():
        token = await relay.offer_session_pick(SCOPE, prompt="carry on")
        await _wait_for(lambda: recording_frontend.terminal_states)
        return token

    token = _run(relay, scenario)

    assert token is not None
    assert [entry.session_id for entry in recording_frontend.session_picks[0]] == [picked]
    assert recording_frontend.terminal_states == [TurnState.COMPLETED]
    assert recording_frontend.messages == ["echo: picked up"]
    assert _bound_session(relay.registry) == picked


def test_scope_settings_validation(relay: Orchestrator, tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Permission mode"):
        relay.set_permission_mode(SCOPE, "yolo")
    with pytest.raises(ValueError, match="Spend cap"):
        relay.set_budget(SCOPE, -1)
    with pytest.raises(ValueError, match="does not exist"):
        relay.set_working_directory(SCOPE, tmp_path / "missing")

    relay.set_model(SCOPE, "opus")
    relay.set_budget(SCOPE, 0)
    relay.set_working_directory(SCOPE, tmp_path)
    settings = relay.scopes.get(SCOPE).settings
    assert settings.model == "opus"
    assert settings.max_budget_usd is None
    assert settings.working_directory == tmp_path.resolve()
    assert relay.registry.get(SCOPE).working_directory == tmp_path.resolve()


def test_turn_state_machine_rejects_illegal_transitions() -> None:
    state = ScopeState(scope=SCOPE)

    with pytest.raises(InvalidTransitionError, match="idle -> completed"):
        state.transition(TurnState.COMPLETED)

    state.transition(TurnState.DISPATCHED)
    state.transition(TurnState.STREAMING)
    state.transition(TurnState.AWAITING_APPROVAL)
    state.transition(TurnState.STREAMING)
    state.transition(TurnState.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        state.transition(TurnState.STREAMING)
    state.transition(TurnState.IDLE)

    assert can_transition(TurnState.DISPATCHED, TurnState.FAILED)
    assert not can_transition(TurnState.IDLE, TurnState.STREAMING)
    assert all(terminal.is_terminal for terminal in (TurnState.PAUSED, TurnState.CANCELLED))


def test_front_end_failure_mid_turn_stops_the_engine(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    recording_frontend.fail_on_status = TurnState.STREAMING

    async def scenario():
        turn = await relay.dispatch(TurnRequest(scope=SCOPE, prompt="[slow] job"))
        outcome = await turn.wait()
        returncode = turn.source.returncode
        recording_frontend.fail_on_status = None
        after = await relay.run(TurnRequest(scope=SCOPE, prompt="after"))
        return outcome, returncode, after

    outcome, returncode, after = _run(relay, scenario)

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.INTERNAL
    assert "rejected streaming status" in outcome.error
    assert returncode is not None
    assert after.state is TurnState.COMPLETED
    assert recording_frontend.terminal_states == [TurnState.FAILED, TurnState.COMPLETED]


def test_failed_approval_prompt_fails_turn_and_clears_the_gate(
    relay: Orchestrator,
    recording_frontend,
) -> None:
    recording_frontend.fail_on_approval = True

    async def scenario():
        turn = await relay.dispatch(TurnRequest(scope=SCOPE, prompt="[tool:Bash] go"))
        outcome = await turn.wait()
        return outcome, turn.source.returncode, relay.turn_state(SCOPE)

    outcome, returncode, state_after = _run(relay, scenario)

    assert outcome.state is TurnState.FAILED
    assert outcome.failure_kind is FailureKind.INTERNAL
    assert returncode is not None
    assert state_after is TurnState.IDLE
    assert relay.pending.pending(InteractionKind.TOOL_APPROVAL) == []
    assert recording_frontend.terminal_states == [TurnState.FAILED]


def test_malformed_session_index_does_not_wedge_the_scope(
    relay: Orchestrator,
    tmp_path: Path,
) -> None:
    project = tmp_path / "work"
    project.mkdir()
    index_dir = relay.session_index.projects_dir / encode_project_dir(project)
    index_dir.mkdir(parents=True)
    (index_dir / "sessions-index.json").write_text('{"entries": 5}', encoding="utf-8")

    async def scenario():
        first = await relay.run(TurnRequest(scope=SCOPE, prompt="one", working_directory=project))
        second = await relay.run(TurnRequest(scope=SCOPE, prompt="two", working_directory=project))
        return first, second

    first, second = _run(relay, scenario)

    assert first.state is second.state is TurnState.COMPLETED
    assert relay.turn_state(SCOPE) is TurnState.IDLE
    assert relay.session_index.exists(first.session_id)


def test_failure_while_closing_a_turn_returns_scope_to_idle(
    relay: Orchestrator,
    recording_frontend,
    monkeypatch,
) -> None:
    def broken_record_session(**_kwargs):
        raise TypeError("'int' object is not iterable")

    monkeypatch.setattr(relay.session_index, "record_session", broken_record_session)

    async def scenario():
        first = await relay.run(TurnRequest(scope=SCOPE, prompt="one"))
        second = await relay.run(TurnRequest(scope=SCOPE, prompt="two"))
        return first, second

    first, second = _run(relay, scenario)

    assert first.state is second.state is TurnState.COMPLETED
    assert relay.turn_state(SCOPE) is TurnState.IDLE
    assert relay.scopes.get(SCOPE).active_turn is None
    assert recording_frontend.terminal_states == [TurnState.COMPLETED, TurnState.COMPLETED]


def test_settle_returns_an_interrupted_scope_to_idle() -> None:
    state = ScopeState(scope=SCOPE)
    turn = Turn(request=TurnRequest(scope=SCOPE, prompt="hi"))
    state.active_turn = turn
    state.transition(TurnState.DISPATCHED)
    state.transition(TurnState.STREAMING)

    state.settle(turn)

    assert state.state is TurnState.IDLE
    assert state.active_turn is None
    state.transition(TurnState.DISPATCHED)


@pytest.mark.parametrize(
    ("prompt", "needs_approval"),
    [
        ("[tool:Edit] change it", False),
        ("[tool:Write] add a file", False),
        ("[tool:Bash] run it", True),
        ("[tool:mcp__tracker__create_issue] file it", True),
    ],
)
def test_safe_mode_auto_approves_edits_only(
    relay: Orchestrator,
    recording_frontend,
    prompt: str,
    needs_approval: bool,
) -> None:
    relay.set_permission_mode(SCOPE, "safe")

    outcome = _run(relay, lambda: relay.run(TurnRequest(scope=SCOPE, prompt=prompt)))

    assert outcome.state is TurnState.COMPLETED
    assert bool(recording_frontend.approval_requests) is needs_approval


def test_default_mode_gates_mcp_tools(relay: Orchestrator, recording_frontend) -> None:
    recording_frontend.approval_decision = ApprovalDecision.DENIED

    outcome = _run(
        relay,
        lambda: relay.run(TurnRequest(scope=SCOPE, prompt="[tool:mcp__tracker__search] look")),
    )

    assert outcome.state is TurnState.PAUSED
    assert outcome.denied_tools == ("mcp__tracker__search",)


def test_scopes_with_dashes_in_ids_stay_isolated(relay: Orchestrator) -> None:
    left = Scope(principal_id="a-b", conversation_id="c")
    right = Scope(principal_id="a", conversation_id="b-c")

    async def scenario():
        first = await relay.run(TurnRequest(scope=left, prompt="left"))
        second = await relay.run(TurnRequest(scope=right, prompt="right"))
        return first, second

    first, second = _run(relay, scenario)

    assert left.key != right.key
    assert first.session_id != second.session_id
    assert relay.registry.get(left).session_id == first.session_id
    assert relay.registry.get(right).session_id == second.session_id
    assert relay.scopes.get(left) is not relay.scopes.get(right)


def test_scope_store_prunes_only_stale_idle_scopes_on_default_settings() -> None:
    store = ScopeStore()
    now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    stale = store.get_or_create(SCOPE)
    stale.idle_since = now - timedelta(hours=48)
    recent = store.get_or_create(Scope(principal_id="u1", conversation_id="c2"))
    recent.idle_since = now
    customized = store.get_or_create(Scope(principal_id="u1", conversation_id="c3"))
    customized.settings.model = "opus"
    customized.idle_since = now - timedelta(hours=48)
    busy = store.get_or_create(Scope(principal_id="u1", conversation_id="c4"))
    busy.transition(TurnState.DISPATCHED)

    assert store.prune_idle(now - timedelta(hours=24)) == 1
    assert store.get(SCOPE) is None
    assert len(store) == 3
