from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import allure
import pytest

from agent_relay.config import RateLimitSettings
from agent_relay.engine.events import RateLimitSignalEvent
from agent_relay.ratelimit import (
    RATE_LIMIT_CLASSIFIER_VERSION,
    classify_rate_limit,
    classify_rate_limit_signal,
)

pytestmark = [
    allure.epic("Rate Limits"),
    allure.feature("Capacity Classification"),
]

NOW = datetime(2026, 10, 19, 11, 0, tzinfo=UTC)


def test_classifier_version_is_stable() -> None:
    assert RATE_LIMIT_CLASSIFIER_VERSION == 1


def test_reset_time_already_passed_today_rolls_to_tomorrow() -> None:
    classified = classify_rate_limit("Claude AI usage limit reached ∙ resets 2am (UTC)", NOW)

    assert classified is not None
    assert classified.matched_rule == "reset_time"
    assert classified.fire_at == datetime(2026, 10, 20, 2, 2, tzinfo=UTC)


def test_reset_time_later_today_stays_today() -> None:
    classified = classify_rate_limit("Usage limit reached. Resets at 3:30pm", NOW)

    assert classified.fire_at == datetime(2026, 10, 19, 15, 32, tzinfo=UTC)


def test_reset_time_equal_to_now_is_tomorrow() -> None:
    classified = classify_rate_limit("limit reached, resets 11:00", NOW)

    assert classified.fire_at == datetime(2026, 10, 20, 11, 2, tzinfo=UTC)


def test_reset_time_uses_named_time_zone() -> None:
    try:
        ZoneInfo("Europe/Berlin")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")

    classified = classify_rate_limit("usage limit reached ∙ resets 9am (Europe/Berlin)", NOW)

    # Berlin is UTC+2 on 2026-10-19, so 09:00 local already passed (13:00 local).
    assert classified.fire_at == datetime(2026, 10, 20, 7, 2, tzinfo=UTC)


def test_zoneless_reset_time_reads_in_configured_or_caller_zone() -> None:
    try:
        berlin = ZoneInfo("Europe/Berlin")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")
    text = "usage limit reached, resets 2am"

    configured = classify_rate_limit(
        text,
        NOW,
        settings=RateLimitSettings(reset_timezone="Europe/Berlin"),
    )
    caller_zone = classify_rate_limit(text, NOW.astimezone(berlin))

    assert configured.fire_at == datetime(2026, 10, 20, 0, 2, tzinfo=UTC)
    assert caller_zone.fire_at == configured.fire_at
    assert classify_rate_limit(text, NOW).fire_at == datetime(2026, 10, 20, 2, 2, tzinfo=UTC)


def test_retry_after_beats_reset_time_and_capacity_phrases() -> None:
    classified = classify_rate_limit(
        "429 Too Many Requests: retry after 30 seconds (limit resets 2am)",
        NOW,
    )

    assert classified.matched_rule == "retry_after"
    assert classified.fire_at == NOW + timedelta(seconds=30, minutes=2)


def test_try_again_in_minutes() -> None:
    classified = classify_rate_limit("Overloaded, try again in 5 minutes", NOW)

    assert classified.matched_rule == "retry_after"
    assert classified.wait_seconds == 7 * 60


def test_capacity_phrase_falls_back_to_default_wait() -> None:
    classified = classify_rate_limit("API Error: server overloaded", NOW)

    assert classified.matched_rule == "capacity_default"
    assert classified.matched_pattern == "overloaded"
    assert classified.fire_at == NOW + timedelta(hours=5)


def test_bare_reset_hour_is_not_a_time_of_day() -> None:
    classified = classify_rate_limit("usage limit resets 3", NOW)

    assert classified.matched_rule == "capacity_default"


def test_unrelated_errors_are_not_capacity_limits() -> None:
    assert classify_rate_limit("SyntaxError: unexpected token", NOW) is None
    assert classify_rate_limit("", NOW) is None


def test_naive_now_is_treated_as_utc_and_buffer_is_configurable() -> None:
    classified = classify_rate_limit(
        "rate limit, retry-after: 60",
        datetime(2026, 10, 19, 11, 0),
        settings=RateLimitSettings(buffer_minutes=0),
    )

    assert classified.fire_at == NOW + timedelta(seconds=60)
    details = classified.to_event_details()
    assert details["classifier_version"] == 1
    assert details["matched_rule"] == "retry_after"
    assert details["wait_seconds"] == 60


def test_rejected_signal_uses_reset_timestamp() -> None:
    resets = NOW + timedelta(minutes=40)
    event = RateLimitSignalEvent(
        status="rejected",
        resets_at=resets.timestamp(),
        rate_limit_type="five_hour",
        overage_status="disabled",
    )

    classified = classify_rate_limit_signal(event, NOW)

    assert classified.matched_rule == "signal_resets_at"
    assert classified.matched_pattern == "five_hour"
    assert classified.fire_at == resets + timedelta(minutes=2)


def test_signal_in_the_past_fires_after_the_buffer() -> None:
    event = RateLimitSignalEvent(
        status="rejected",
        resets_at=(NOW - timedelta(hours=1)).timestamp(),
        rate_limit_type="",
        overage_status="",
    )

    assert classify_rate_limit_signal(event, NOW).fire_at == NOW + timedelta(minutes=2)


def test_signal_without_reset_uses_default_wait_and_allowed_is_ignored() -> None:
    rejected = RateLimitSignalEvent(
        status="rejected",
        resets_at=None,
        rate_limit_type="",
        overage_status="",
    )
    allowed = RateLimitSignalEvent(
        status="allowed",
        resets_at=NOW.timestamp(),
        rate_limit_type="five_hour",
        overage_status="",
    )

    assert classify_rate_limit_signal(rejected, NOW).fire_at == NOW + timedelta(hours=5)
    assert classify_rate_limit_signal(allowed, NOW) is None
