"""Finality guards for log record status changes."""
from __future__ import annotations

from docrelay.core.schema import Status

_FINAL = frozenset({Status.ANSWERED, Status.REJECTED, Status.FAILED})

# requested status -> current statuses that keep the stored value unchanged
GUARDS: dict[Status, frozenset[Status]] = {
    Status.SENT: _FINAL | {Status.POSTED, Status.DELIVERED},
    Status.POSTED: _FINAL | {Status.DELIVERED},
    Status.DELIVERED: _FINAL,
    Status.BUSINESS: _FINAL,
    Status.REJECTED: frozenset({Status.ANSWERED}),
    Status.FAILED: frozenset({Status.ANSWERED, Status.REJECTED}),
}


def blocked_from(requested: Status) -> frozenset[Status]:
    """Statuses that must not be overwritten by ``requested``."""

    return GUARDS.get(requested, frozenset())


def is_allowed(current: Status | None, requested: Status) -> bool:
    if current is None:
        return True
    return current not in blocked_from(requested)
