"""Task lifecycle transitions.

``created`` is the only chargeable state. Anything else is reported back to the
caller unchanged, which is what makes repeated execute calls idempotent.
"""

from __future__ import annotations

from credit_meter.ledger.errors import InvalidTaskTransitionError
from credit_meter.ledger.models import TaskStatus

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.CREATED: frozenset({TaskStatus.RUNNING, TaskStatus.REJECTED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED}),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_chargeable(status: TaskStatus) -> bool:
    """Only a task that was never charged may be charged."""

    return status is TaskStatus.CREATED


def can_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    return status_to in ALLOWED_TRANSITIONS[status_from]


def ensure_transition(status_from: TaskStatus, status_to: TaskStatus) -> None:
    """Raise when ``status_from -> status_to`` is not an edge of the lifecycle."""

    if not can_transition(status_from, status_to):
        raise InvalidTaskTransitionError(status_from.value, status_to.value)
