"""Status phases and conditions of a KclInstance."""

from datetime import datetime, UTC
from enum import StrEnum

from flux_kcl.manifest import Condition, KclInstanceStatus

__all__ = [
    "Phase",
    "READY_CONDITION",
    "RECONCILING_CONDITION",
    "STALLED_CONDITION",
    "set_condition",
    "remove_condition",
    "format_time",
    "parse_time",
]


class Phase(StrEnum):
    """Reconciliation phase of an instance."""

    PENDING = "Pending"
    RECONCILING = "Reconciling"
    READY = "Ready"
    FAILED = "Failed"
    SUSPENDED = "Suspended"
    FINALIZING = "Finalizing"


READY_CONDITION = "Ready"
RECONCILING_CONDITION = "Reconciling"
STALLED_CONDITION = "Stalled"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

PROGRESSING_REASON = "Progressing"
SUCCEEDED_REASON = "ReconciliationSucceeded"
FAILED_REASON = "ReconciliationFailed"
SUSPENDED_REASON = "Suspended"
FINALIZING_REASON = "Finalizing"

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_time(now: datetime) -> str:
    """Format a timestamp the way the API server does."""
    return now.astimezone(UTC).strftime(_TIME_FORMAT)


def parse_time(value: str) -> datetime:
    """Parse an API server timestamp."""
    return datetime.strptime(value, _TIME_FORMAT).replace(tzinfo=UTC)


def set_condition(
    status: KclInstanceStatus,
    condition_type: str,
    condition_status: str,
    reason: str,
    message: str,
    generation: int,
    now: datetime,
) -> Condition:
    """Set a condition, keeping at most one condition per type.

    The transition time only moves when the condition status changes.
    """
    transition_time = format_time(now)
    if (existing := status.get_condition(condition_type)) is not None:
        if existing.status == condition_status and existing.last_transition_time:
            transition_time = existing.last_transition_time
        status.conditions = [
            c for c in status.conditions if c.type != condition_type
        ]
    condition = Condition(
        type=condition_type,
        status=condition_status,
        reason=reason,
        message=message,
        last_transition_time=transition_time,
        observed_generation=generation,
    )
    if condition_type == READY_CONDITION:
        status.conditions.insert(0, condition)
    else:
        status.conditions.append(condition)
    return condition


def remove_condition(status: KclInstanceStatus, condition_type: str) -> None:
    """Remove the condition of the given type, if present."""
    status.conditions = [c for c in status.conditions if c.type != condition_type]
