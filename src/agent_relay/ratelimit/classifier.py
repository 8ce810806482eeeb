"""Deterministic capacity-limit classification for retry scheduling."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_relay.config import RateLimitSettings
from agent_relay.engine.events import RateLimitSignalEvent

RATE_LIMIT_CLASSIFIER_VERSION = 1

_RETRY_AFTER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"retry[\s_-]?after[:=\s]+(\d+)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)?\b",
    ),
    re.compile(r"try again in\s+(\d+)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)\b"),
)
_RESET_TIME_PATTERN = re.compile(
    r"resets?\s+(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)?"
    r"(?:\s*\(\s*([a-z_]+(?:/[a-z_+\-0-9]+)*)\s*\))?",
)
_CAPACITY_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate-limit",
    "rate_limit",
    "ratelimit",
    "usage limit",
    "limit reached",
    "overloaded",
    "too many requests",
    "429",
    "capacity",
    "quota",
)


@dataclass(slots=True)
class RateLimitClassification:
    """When the engine should have capacity again, and why we think so."""

    fire_at: datetime
    matched_rule: str
    matched_pattern: str | None
    detected_at: datetime

    @property
    def wait_seconds(self) -> float:
        return max(0.0, (self.fire_at - self.detected_at).total_seconds())

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": RATE_LIMIT_CLASSIFIER_VERSION,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "fire_at": self.fire_at.isoformat(),
            "wait_seconds": int(self.wait_seconds),
        }


def classify_rate_limit(
    text: str,
    now: datetime,
    *,
    settings: RateLimitSettings | None = None,
) -> RateLimitClassification | None:
    """Classify an engine error text; ``None`` when it is not a capacity limit.

    Priority is fixed: explicit retry-after, then an explicit reset time of
    day, then generic capacity phrases (answered with the conservative default
    wait). Explicit timings get the safety buffer added.
    """

    policy = settings or RateLimitSettings()
    now = _aware(now)
    haystack = text.lower()
    buffer = timedelta(minutes=policy.buffer_minutes)

    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(haystack)
        if match is not None:
            delay = _duration(int(match.group(1)), match.group(2))
            return RateLimitClassification(
                fire_at=now + delay + buffer,
                matched_rule="retry_after",
                matched_pattern=match.group(0),
                detected_at=now,
            )

    match = _find_reset_time(haystack)
    if match is not None:
        reset_at = _next_occurrence(match, now, _default_zone(policy, now))
        return RateLimitClassification(
            fire_at=reset_at + buffer,
            matched_rule="reset_time",
            matched_pattern=match.group(0),
            detected_at=now,
        )

    phrase = _first_match(haystack, _CAPACITY_PATTERNS)
    if phrase is not None:
        return RateLimitClassification(
            fire_at=now + timedelta(hours=policy.default_wait_hours),
            matched_rule="capacity_default",
            matched_pattern=phrase,
            detected_at=now,
        )
    return None


def classify_rate_limit_signal(
    event: RateLimitSignalEvent,
    now: datetime,
    *,
    settings: RateLimitSettings | None = None,
) -> RateLimitClassification | None:
    """Classify an in-band quota notice; only rejections count."""

    if not event.is_rejected:
        return None
    policy = settings or RateLimitSettings()
    now = _aware(now)
    if event.resets_at is None:
        return RateLimitClassification(
            fire_at=now + timedelta(hours=policy.default_wait_hours),
            matched_rule="signal_default",
            matched_pattern=event.rate_limit_type or None,
            detected_at=now,
        )
    resets_at = datetime.fromtimestamp(event.resets_at, tz=UTC)
    return RateLimitClassification(
        fire_at=max(resets_at, now) + timedelta(minutes=policy.buffer_minutes),
        matched_rule="signal_resets_at",
        matched_pattern=event.rate_limit_type or None,
        detected_at=now,
    )


def _find_reset_time(haystack: str) -> re.Match[str] | None:
    for match in _RESET_TIME_PATTERN.finditer(haystack):
        # A bare number ("resets 3") is too ambiguous to schedule on.
        if match.group(2) is None and match.group(3) is None:
            continue
        hour = int(match.group(1))
        if match.group(3) is not None and not 1 <= hour <= 12:
            continue
        if hour > 23 or int(match.group(2) or 0) > 59:
            continue
        return match
    return None


def _next_occurrence(match: re.Match[str], now: datetime, default_zone: tzinfo) -> datetime:
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3)
    if meridiem == "am" and hour == 12:
        hour = 0
    elif meridiem == "pm" and hour != 12:
        hour += 12

    zone = _zone(match.group(4)) or default_zone
    local_now = now.astimezone(zone)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        # Aware arithmetic is wall-clock, so this stays at H:MM across DST.
        candidate += timedelta(days=1)
    return candidate.astimezone(UTC)


def _default_zone(policy: RateLimitSettings, now: datetime) -> tzinfo:
    """Zone for a reset time quoted without one: configured, else the zone of ``now``."""

    if policy.reset_timezone:
        return ZoneInfo(policy.reset_timezone)
    return now.tzinfo or UTC


def _zone(name: str | None) -> ZoneInfo | None:
    if not name:
        return None
    # Zone keys are case-sensitive; the haystack was lowercased.
    canonical = "/".join(
        "_".join(word.capitalize() for word in part.split("_")) for part in name.split("/")
    )
    for candidate in (canonical, name.upper()):
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return None


def _duration(value: int, unit: str | None) -> timedelta:
    if not unit or unit.startswith("s"):
        return timedelta(seconds=value)
    if unit.startswith("m"):
        return timedelta(minutes=value)
    return timedelta(hours=value)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
