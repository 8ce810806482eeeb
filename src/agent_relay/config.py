"""Runtime configuration for the relay, the engine process and session bookkeeping."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

SUPPORTED_PERMISSION_MODES = ("default", "safe", "plan", "trust")
EDIT_TOOLS = ("Edit", "MultiEdit", "Write", "NotebookEdit")
MCP_TOOL_PREFIX = "mcp__"

_DEFAULT_APPROVAL_TOOLS = ("Bash", *EDIT_TOOLS)


@dataclass(slots=True)
class EngineSettings:
    """How the local engine CLI is spawned."""

    command: str = "claude"
    permission_mode: str = "default"
    mcp_config_path: Path | None = None
    default_model: str | None = None
    max_budget_usd: float = 0.0
    graceful_interrupt_seconds: float = 5.0
    stderr_tail_chars: int = 8_000
    projects_dir: Path = field(default_factory=lambda: Path.home() / ".claude" / "projects")

    def argv_head(self) -> list[str]:
        """Split the configured engine command into argv tokens."""

        return shlex.split(self.command)


@dataclass(slots=True)
class SessionSettings:
    """Scope-to-session registry persistence and eviction policy."""

    retention_days: int = 7
    idle_eviction_hours: float = 24.0
    save_debounce_seconds: float = 5.0
    sweep_interval_seconds: float = 300.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class InteractionSettings:
    """TTLs of parked human decisions, per call site."""

    approval_ttl_minutes: float = 10.0
    plan_gate_ttl_minutes: float = 30.0
    retry_offer_ttl_minutes: float = 10.0
    session_pick_ttl_minutes: float = 5.0
    approval_required_tools: tuple[str, ...] = _DEFAULT_APPROVAL_TOOLS


@dataclass(slots=True)
class RateLimitSettings:
    """Capacity-limit recovery estimation."""

    buffer_minutes: float = 2.0
    default_wait_hours: float = 5.0
    # Zone for reset times quoted without one; empty means the host zone.
    reset_timezone: str = ""


@dataclass(slots=True)
class PrimingSettings:
    """Scheduled session priming turns."""

    config_path: Path = Path(".agent_relay.schedule.json")
    model: str = "haiku"
    prompt: str = "hi"
    jitter_min_seconds: float = 0.0
    jitter_max_seconds: float = 120.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Turn-loop policy."""

    plan_follow_up_prompt: str = "Proceed with the approved plan."
    index_prompt_chars: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_relay.db")
    engine: EngineSettings = field(default_factory=EngineSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    interactions: InteractionSettings = field(default_factory=InteractionSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    priming: PrimingSettings = field(default_factory=PrimingSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        mcp_config = os.getenv("AGENT_RELAY_MCP_CONFIG_PATH", "").strip()
        projects_dir = os.getenv("AGENT_RELAY_ENGINE_PROJECTS_DIR", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RELAY_DB_PATH", ".agent_relay.db")),
            engine=EngineSettings(
                command=os.getenv("AGENT_RELAY_ENGINE_COMMAND", "claude"),
                permission_mode=os.getenv("AGENT_RELAY_PERMISSION_MODE", "default").strip().lower(),
                mcp_config_path=Path(mcp_config) if mcp_config else None,
                default_model=os.getenv("AGENT_RELAY_DEFAULT_MODEL") or None,
                max_budget_usd=float(os.getenv("AGENT_RELAY_MAX_BUDGET_USD", "0")),
                graceful_interrupt_seconds=float(
                    os.getenv("AGENT_RELAY_GRACEFUL_INTERRUPT_SECONDS", "5"),
                ),
                stderr_tail_chars=int(os.getenv("AGENT_RELAY_STDERR_TAIL_CHARS", "8000")),
                projects_dir=(
                    Path(projects_dir)
                    if projects_dir
                    else Path.home() / ".claude" / "projects"
                ),
            ),
            sessions=SessionSettings(
                retention_days=int(os.getenv("AGENT_RELAY_SESSION_RETENTION_DAYS", "7")),
                idle_eviction_hours=float(
                    os.getenv("AGENT_RELAY_SESSION_IDLE_EVICTION_HOURS", "24"),
                ),
                save_debounce_seconds=float(
                    os.getenv("AGENT_RELAY_SESSION_SAVE_DEBOUNCE_SECONDS", "5"),
                ),
                sweep_interval_seconds=float(
                    os.getenv("AGENT_RELAY_SESSION_SWEEP_INTERVAL_SECONDS", "300"),
                ),
            ),
            interactions=InteractionSettings(
                approval_ttl_minutes=float(os.getenv("AGENT_RELAY_APPROVAL_TTL_MINUTES", "10")),
                plan_gate_ttl_minutes=float(os.getenv("AGENT_RELAY_PLAN_GATE_TTL_MINUTES", "30")),
                retry_offer_ttl_minutes=float(
                    os.getenv("AGENT_RELAY_RETRY_OFFER_TTL_MINUTES", "10"),
                ),
                session_pick_ttl_minutes=float(
                    os.getenv("AGENT_RELAY_SESSION_PICK_TTL_MINUTES", "5"),
                ),
                approval_required_tools=_collect_csv(
                    "AGENT_RELAY_APPROVAL_REQUIRED_TOOLS",
                    default=_DEFAULT_APPROVAL_TOOLS,
                ),
            ),
            rate_limit=RateLimitSettings(
                buffer_minutes=float(os.getenv("AGENT_RELAY_RATE_LIMIT_BUFFER_MINUTES", "2")),
                default_wait_hours=float(
                    os.getenv("AGENT_RELAY_RATE_LIMIT_DEFAULT_WAIT_HOURS", "5"),
                ),
                reset_timezone=os.getenv("AGENT_RELAY_RATE_LIMIT_RESET_TIMEZONE", "").strip(),
            ),
            priming=PrimingSettings(
                config_path=Path(
                    os.getenv("AGENT_RELAY_PRIMING_CONFIG_PATH", ".agent_relay.schedule.json"),
                ),
                model=os.getenv("AGENT_RELAY_PRIMING_MODEL", "haiku"),
                prompt=os.getenv("AGENT_RELAY_PRIMING_PROMPT", "hi"),
                jitter_min_seconds=float(os.getenv("AGENT_RELAY_PRIMING_JITTER_MIN_SECONDS", "0")),
                jitter_max_seconds=float(
                    os.getenv("AGENT_RELAY_PRIMING_JITTER_MAX_SECONDS", "120"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                plan_follow_up_prompt=os.getenv(
                    "AGENT_RELAY_PLAN_FOLLOW_UP_PROMPT",
                    "Proceed with the approved plan.",
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if not self.engine.argv_head():
            raise ValueError("AGENT_RELAY_ENGINE_COMMAND must not be empty.")
        if self.engine.permission_mode not in SUPPORTED_PERMISSION_MODES:
            raise ValueError(
                "AGENT_RELAY_PERMISSION_MODE must be one of "
                f"{', '.join(SUPPORTED_PERMISSION_MODES)}: {self.engine.permission_mode!r}",
            )
        if self.engine.max_budget_usd < 0:
            raise ValueError("AGENT_RELAY_MAX_BUDGET_USD must be >= 0.")
        if self.engine.graceful_interrupt_seconds < 0:
            raise ValueError("AGENT_RELAY_GRACEFUL_INTERRUPT_SECONDS must be >= 0.")
        if self.sessions.retention_days <= 0:
            raise ValueError("AGENT_RELAY_SESSION_RETENTION_DAYS must be > 0.")
        if self.sessions.idle_eviction_hours <= 0:
            raise ValueError("AGENT_RELAY_SESSION_IDLE_EVICTION_HOURS must be > 0.")
        if self.sessions.save_debounce_seconds < 0:
            raise ValueError("AGENT_RELAY_SESSION_SAVE_DEBOUNCE_SECONDS must be >= 0.")
        for name, value in (
            ("AGENT_RELAY_APPROVAL_TTL_MINUTES", self.interactions.approval_ttl_minutes),
            ("AGENT_RELAY_PLAN_GATE_TTL_MINUTES", self.interactions.plan_gate_ttl_minutes),
            ("AGENT_RELAY_RETRY_OFFER_TTL_MINUTES", self.interactions.retry_offer_ttl_minutes),
            ("AGENT_RELAY_SESSION_PICK_TTL_MINUTES", self.interactions.session_pick_ttl_minutes),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.rate_limit.buffer_minutes < 0:
            raise ValueError("AGENT_RELAY_RATE_LIMIT_BUFFER_MINUTES must be >= 0.")
        if self.rate_limit.default_wait_hours <= 0:
            raise ValueError("AGENT_RELAY_RATE_LIMIT_DEFAULT_WAIT_HOURS must be > 0.")
        if self.rate_limit.reset_timezone:
            try:
                ZoneInfo(self.rate_limit.reset_timezone)
            except (ZoneInfoNotFoundError, ValueError) as error:
                raise ValueError(
                    "AGENT_RELAY_RATE_LIMIT_RESET_TIMEZONE must name an IANA time zone.",
                ) from error
        if not 0 <= self.priming.jitter_min_seconds <= self.priming.jitter_max_seconds:
            raise ValueError(
                "Priming jitter bounds must satisfy 0 <= "
                "AGENT_RELAY_PRIMING_JITTER_MIN_SECONDS <= AGENT_RELAY_PRIMING_JITTER_MAX_SECONDS.",
            )


def _collect_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def env_bool(name: str, default: bool) -> bool:
    """Parse a boolean environment flag."""

    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
