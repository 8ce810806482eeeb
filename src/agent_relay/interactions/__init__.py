"""Correlation of parked computations with asynchronous human decisions."""

from agent_relay.interactions.models import (
    ApprovalDecision,
    InteractionKind,
    PlanDecision,
    RetryDecision,
    SessionPick,
)
from agent_relay.interactions.pending import PendingInteraction, PendingInteractionRegistry

__all__ = [
    "ApprovalDecision",
    "InteractionKind",
    "PendingInteraction",
    "PendingInteractionRegistry",
    "PlanDecision",
    "RetryDecision",
    "SessionPick",
]
