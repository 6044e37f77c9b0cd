"""Tests for status conditions."""

from datetime import datetime, timedelta, UTC

from flux_kcl.manifest import KclInstanceStatus
from flux_kcl.status import (
    READY_CONDITION,
    STALLED_CONDITION,
    format_time,
    parse_time,
    remove_condition,
    set_condition,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def test_time_round_trip() -> None:
    """Test timestamps use the API server format."""
    assert format_time(NOW) == "2024-05-01T12:00:00Z"
    assert parse_time("2024-05-01T12:00:00Z") == NOW


def test_set_condition_keeps_transition_time() -> None:
    """Test the transition time only moves when the status changes."""
    status = KclInstanceStatus()
    set_condition(status, READY_CONDITION, "False", "A", "first", 1, NOW)
    later = NOW + timedelta(minutes=1)
    condition = set_condition(status, READY_CONDITION, "False", "B", "second", 2, later)
    assert condition.last_transition_time == "2024-05-01T12:00:00Z"
    assert condition.reason == "B"
    assert condition.observed_generation == 2

    condition = set_condition(status, READY_CONDITION, "True", "C", "third", 2, later)
    assert condition.last_transition_time == "2024-05-01T12:01:00Z"
    assert len(status.conditions) == 1


def test_ready_condition_first() -> None:
    """Test the Ready condition is listed first."""
    status = KclInstanceStatus()
    set_condition(status, STALLED_CONDITION, "True", "A", "stalled", 1, NOW)
    set_condition(status, READY_CONDITION, "False", "A", "failed", 1, NOW)
    assert [c.type for c in status.conditions] == [READY_CONDITION, STALLED_CONDITION]

    remove_condition(status, STALLED_CONDITION)
    assert [c.type for c in status.conditions] == [READY_CONDITION]
    remove_condition(status, STALLED_CONDITION)
    assert [c.type for c in status.conditions] == [READY_CONDITION]
