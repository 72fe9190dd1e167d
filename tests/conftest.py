"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Iterator
from pathlib import Path

import pytest

from credit_meter.ledger.models import TaskStatus, TaskView
from credit_meter.ledger.repository import LedgerRepository


class FixedRandom(random.Random):
    """Random source with a pinned cost and a pinned ``random()`` draw.

    ``draw`` below 0.5 makes the simulated work succeed, 0.5 and above fails it.
    """

    def __init__(self, *, cost: int, draw: float = 0.1) -> None:
        super().__init__(0)
        self.cost = cost
        self.draw = draw

    def randint(self, a: int, b: int) -> int:
        assert a <= self.cost <= b
        return self.cost

    def random(self) -> float:
        return self.draw


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[LedgerRepository]:
    repo = LedgerRepository(tmp_path / "ledger.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def _assert_task_invariants(task: TaskView) -> None:
    """A rejected task never starts: it leaves ``created`` without a ``started_at``."""

    assert (task.cost is None) == (task.status is TaskStatus.CREATED)
    assert (task.completed_at is not None) == (
        task.status in {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.REJECTED}
    )
    if task.status in {TaskStatus.RUNNING, TaskStatus.SUCCEEDED, TaskStatus.FAILED}:
        assert task.started_at is not None
    else:
        assert task.started_at is None
    assert (task.failure_reason is not None) == (task.status is TaskStatus.FAILED)


@pytest.fixture()
def fixed_random() -> type[FixedRandom]:
    return FixedRandom


@pytest.fixture()
def check_task_invariants():
    """Cost, start and completion stamps must agree with the status."""

    return _assert_task_invariants
