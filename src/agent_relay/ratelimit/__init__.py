"""Capacity-limit classification and retry scheduling."""

from agent_relay.ratelimit.classifier import (
    RATE_LIMIT_CLASSIFIER_VERSION,
    RateLimitClassification,
    classify_rate_limit,
    classify_rate_limit_signal,
)
from agent_relay.ratelimit.controller import RateLimitRetryController, RetrySchedule, RetryState

__all__ = [
    "RATE_LIMIT_CLASSIFIER_VERSION",
    "RateLimitClassification",
    "RateLimitRetryController",
    "RetrySchedule",
    "RetryState",
    "classify_rate_limit",
    "classify_rate_limit_signal",
]
