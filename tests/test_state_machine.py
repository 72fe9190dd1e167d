from __future__ import annotations

import allure
import pytest

from credit_meter.ledger.errors import InvalidTaskTransitionError
from credit_meter.ledger.models import TaskStatus
from credit_meter.ledger.state_machine import (
    TERMINAL_STATUSES,
    can_transition,
    ensure_transition,
    is_chargeable,
    is_terminal,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Lifecycle"),
]


@pytest.mark.parametrize(
    ("status_from", "status_to"),
    [
        (TaskStatus.CREATED, TaskStatus.RUNNING),
        (TaskStatus.CREATED, TaskStatus.REJECTED),
        (TaskStatus.RUNNING, TaskStatus.SUCCEEDED),
        (TaskStatus.RUNNING, TaskStatus.FAILED),
    ],
)
def test_forward_transitions_are_allowed(status_from: TaskStatus, status_to: TaskStatus) -> None:
    assert can_transition(status_from, status_to)
    ensure_transition(status_from, status_to)


@pytest.mark.parametrize(
    ("status_from", "status_to"),
    [
        (TaskStatus.CREATED, TaskStatus.SUCCEEDED),
        (TaskStatus.RUNNING, TaskStatus.CREATED),
        (TaskStatus.RUNNING, TaskStatus.REJECTED),
        (TaskStatus.REJECTED, TaskStatus.RUNNING),
        (TaskStatus.SUCCEEDED, TaskStatus.FAILED),
        (TaskStatus.FAILED, TaskStatus.CREATED),
    ],
)
def test_other_transitions_are_refused(status_from: TaskStatus, status_to: TaskStatus) -> None:
    assert not can_transition(status_from, status_to)
    with pytest.raises(InvalidTaskTransitionError, match="Invalid task transition"):
        ensure_transition(status_from, status_to)


def test_terminal_statuses() -> None:
    assert TERMINAL_STATUSES == {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.REJECTED}
    assert not is_terminal(TaskStatus.CREATED)
    assert not is_terminal(TaskStatus.RUNNING)
    assert is_terminal(TaskStatus.REJECTED)


def test_only_created_is_chargeable() -> None:
    assert is_chargeable(TaskStatus.CREATED)
    for status in TaskStatus:
        if status is not TaskStatus.CREATED:
            assert not is_chargeable(status)
