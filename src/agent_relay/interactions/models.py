"""Decision types delivered to parked interactions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class InteractionKind(str, Enum):
    TOOL_APPROVAL = "tool_approval"
    PLAN_GATE = "plan_gate"
    RETRY_OFFER = "retry_offer"
    SESSION_PICK = "session_pick"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def allows(self) -> bool:
        return self in {ApprovalDecision.APPROVED, ApprovalDecision.APPROVED_FOR_SESSION}


class PlanDecision(str, Enum):
    EXECUTE = "execute"
    REJECT = "reject"
    EXPIRED = "expired"


class RetryDecision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class SessionPick:
    """Session chosen from a pick list; ``session_id`` is None when nothing was picked."""

    session_id: str | None
    prompt: str | None = None

    @classmethod
    def expired(cls) -> SessionPick:
        return cls(session_id=None)
