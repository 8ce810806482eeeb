"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from agent_relay.config import EngineSettings, PrimingSettings, SessionSettings, Settings
from agent_relay.engine.events import ToolInvocation
from agent_relay.interactions.models import (
    ApprovalDecision,
    PlanDecision,
    RetryDecision,
    SessionPick,
)
from agent_relay.orchestrator.models import TurnState
from agent_relay.orchestrator.service import Orchestrator
from agent_relay.ratelimit.controller import RetrySchedule
from agent_relay.sessions.index import SessionIndex
from agent_relay.sessions.models import EngineSessionEntry, Scope
from agent_relay.sessions.registry import SessionRegistry
from agent_relay.sessions.repository import SessionStateRepository

FAKE_ENGINE_COMMAND = f"{shlex.quote(sys.executable)} -m agent_relay.engine.fake_engine"
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


class RecordingFrontend:
    """Front-end double: records every call and answers prompts with preset decisions.

    A decision left as ``None`` keeps the prompt pending.
    """

    def __init__(self) -> None:
        self.messages: list[str] = []
        self.statuses: list[tuple[TurnState, str | None]] = []
        self.notices: list[str] = []
        self.approval_requests: list[ToolInvocation] = []
        self.plans: list[str] = []
        self.retry_offers: list[tuple[str, RetrySchedule]] = []
        self.session_picks: list[list[EngineSessionEntry]] = []
        self.approval_decision: ApprovalDecision | None = ApprovalDecision.APPROVED
        self.plan_decision: PlanDecision | None = PlanDecision.EXECUTE
        self.retry_decision: RetryDecision | None = None
        self.pick_first_session = True
        self.fail_on_status: TurnState | None = None
        self.fail_on_approval = False
        self.resolver: Any = None

    def bind(self, resolver: Any) -> None:
        self.resolver = resolver

    @property
    def terminal_states(self) -> list[TurnState]:
        return [state for state, _ in self.statuses if state.is_terminal]

    async def post_message(self, scope: Scope, text: str) -> None:
        self.messages.append(text)

    async def update_status(
        self,
        scope: Scope,
        state: TurnState,
        detail: str | None = None,
    ) -> None:
        self.statuses.append((state, detail))
        if state is self.fail_on_status:
            raise RuntimeError(f"front-end rejected {state.value} status")

    async def notify(self, scope: Scope, text: str) -> None:
        self.notices.append(text)

    async def request_approval(self, scope: Scope, token: str, invocation: ToolInvocation) -> None:
        self.approval_requests.append(invocation)
        if self.fail_on_approval:
            raise RuntimeError("front-end could not render the approval prompt")
        if self.approval_decision is not None:
            self.resolver(token, self.approval_decision)

    async def request_plan_review(self, scope: Scope, token: str, plan: str) -> None:
        self.plans.append(plan)
        if self.plan_decision is not None:
            self.resolver(token, self.plan_decision)

    async def offer_retry(self, scope: Scope, token: str, schedule: RetrySchedule) -> None:
        self.retry_offers.append((token, schedule))
        if self.retry_decision is not None:
            self.resolver(token, self.retry_decision)

    async def offer_session_pick(
        self,
        scope: Scope,
        token: str,
        entries: Sequence[EngineSessionEntry],
    ) -> None:
        self.session_picks.append(list(entries))
        if self.pick_first_session and entries:
            self.resolver(token, SessionPick(session_id=entries[0].session_id, prompt="picked up"))


@pytest.fixture(autouse=True)
def _engine_pythonpath(monkeypatch):
    """Let the fake engine subprocess import the package from a source checkout."""

    existing = os.environ.get("PYTHONPATH")
    value = str(_SRC_DIR) if not existing else os.pathsep.join([str(_SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def relay_settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "relay.db",
        engine=EngineSettings(
            command=FAKE_ENGINE_COMMAND,
            graceful_interrupt_seconds=3.0,
            projects_dir=tmp_path / "projects",
        ),
        sessions=SessionSettings(save_debounce_seconds=0.05),
        priming=PrimingSettings(config_path=tmp_path / "schedule.json", jitter_max_seconds=0.0),
    )


@pytest.fixture()
def recording_frontend() -> RecordingFrontend:
    return RecordingFrontend()


@pytest.fixture()
def relay(relay_settings: Settings, recording_frontend: RecordingFrontend):
    """Orchestrator wired to the fake engine, a temp SQLite store and a temp session index."""

    repository = SessionStateRepository(relay_settings.db_path)
    repository.init_schema()
    index = SessionIndex(relay_settings.engine.projects_dir)
    registry = SessionRegistry(relay_settings.sessions, repository, session_lookup=index.exists)
    orchestrator = Orchestrator(
        relay_settings,
        frontend=recording_frontend,
        registry=registry,
        session_index=index,
    )
    recording_frontend.bind(orchestrator.resolve_interaction)
    yield orchestrator
    repository.close()


@pytest.fixture()
def fake_engine(monkeypatch, tmp_path: Path):
    """Monkeypatch Settings.from_env to spawn the fake engine with temp state paths."""

    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        engine = replace(
            settings.engine,
            command=FAKE_ENGINE_COMMAND,
            projects_dir=tmp_path / "projects",
        )
        priming = replace(settings.priming, config_path=tmp_path / "schedule.json")
        return replace(settings, engine=engine, priming=priming)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
    monkeypatch.setenv("USER", "tester")
