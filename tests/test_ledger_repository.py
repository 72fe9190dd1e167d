from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy import text

from credit_meter.ledger.errors import (
    TaskAccessDeniedError,
    TaskNotFoundError,
    UserNotFoundError,
)
from credit_meter.ledger.models import ChargeOutcome, LedgerEntryKind, TaskStatus
from credit_meter.ledger.repository import LedgerRepository
from credit_meter.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Credit Ledger"),
    allure.feature("Persist & Charge"),
]


def test_alembic_schema_is_initialized_to_head(repository: LedgerRepository, tmp_path) -> None:
    assert current_revision(tmp_path / "never-migrated.db") is None
    assert current_revision(repository.db_path) == "20261018_0001"

    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name IN ('users', 'tasks', 'credit_transactions') "
                "ORDER BY name",
            ),
        ).scalars()
        assert list(tables) == ["credit_transactions", "tasks", "users"]


def test_register_user_records_starting_balance(repository: LedgerRepository) -> None:
    registered_at = datetime(2026, 1, 1, 12, tzinfo=UTC)

    user = repository.register_user(
        display_name="Alice",
        starting_credits=500,
        registered_at=registered_at,
    )

    stored = repository.get_user(user_id=user.user_id)
    assert stored is not None
    assert stored.credits == 500
    assert stored.initial_credits == 500
    assert stored.registered_at == registered_at
    assert stored.last_grant_at is None
    assert stored.grant_baseline == registered_at
    assert repository.list_ledger_entries(user_id=user.user_id) == []


def test_register_user_rejects_duplicate_id_and_negative_balance(
    repository: LedgerRepository,
) -> None:
    repository.register_user(display_name="Alice", starting_credits=5, user_id="alice")

    with pytest.raises(ValueError, match="already exists"):
        repository.register_user(display_name="Alice again", starting_credits=5, user_id="alice")
    with pytest.raises(ValueError, match=">= 0"):
        repository.register_user(display_name="Bob", starting_credits=-1)


def test_create_task_is_free_and_requires_owner(
    repository: LedgerRepository,
    check_task_invariants,
) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=7)

    task = repository.create_task(user_id=user.user_id)

    assert task.status is TaskStatus.CREATED
    assert task.user_id == user.user_id
    check_task_invariants(task)
    assert repository.get_user(user_id=user.user_id).credits == 7
    assert repository.ledger_total(user_id=user.user_id) == 0
    with pytest.raises(UserNotFoundError, match="missing"):
        repository.create_task(user_id="missing")


def test_list_tasks_returns_only_owned_tasks_newest_first(repository: LedgerRepository) -> None:
    alice = repository.register_user(display_name="Alice", starting_credits=10)
    bob = repository.register_user(display_name="Bob", starting_credits=10)
    base = datetime(2026, 1, 1, tzinfo=UTC)
    older = repository.create_task(user_id=alice.user_id, created_at=base)
    newer = repository.create_task(user_id=alice.user_id, created_at=base + timedelta(minutes=5))
    repository.create_task(user_id=bob.user_id, created_at=base + timedelta(minutes=10))

    listed = repository.list_tasks(user_id=alice.user_id)

    assert [task.task_id for task in listed] == [newer.task_id, older.task_id]
    assert repository.list_tasks(user_id="nobody") == []


def test_charge_debits_and_starts_task(
    repository: LedgerRepository,
    check_task_invariants,
) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=20)
    task = repository.create_task(user_id=user.user_id)

    decision = repository.charge_task(
        task_id=task.task_id,
        user_id=user.user_id,
        draw_cost=lambda: 9,
    )

    assert decision.outcome is ChargeOutcome.CHARGED
    assert decision.available_credits == 11
    assert decision.task.status is TaskStatus.RUNNING
    assert decision.task.cost == 9
    check_task_invariants(decision.task)
    entries = repository.list_ledger_entries(user_id=user.user_id)
    assert [(entry.kind, entry.amount, entry.task_id) for entry in entries] == [
        (LedgerEntryKind.DEBIT, -9, task.task_id),
    ]
    assert repository.reconcile_user(user_id=user.user_id).balanced


def test_charge_rejects_without_debit_when_balance_is_short(
    repository: LedgerRepository,
    check_task_invariants,
) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=5)
    task = repository.create_task(user_id=user.user_id)

    decision = repository.charge_task(
        task_id=task.task_id,
        user_id=user.user_id,
        draw_cost=lambda: 9,
    )

    assert decision.outcome is ChargeOutcome.REJECTED
    assert decision.available_credits == 5
    assert decision.task.status is TaskStatus.REJECTED
    assert decision.task.cost == 9
    check_task_invariants(decision.task)
    assert repository.get_user(user_id=user.user_id).credits == 5
    assert repository.list_ledger_entries(user_id=user.user_id) == []


def test_charge_allows_spending_the_exact_balance(repository: LedgerRepository) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=9)
    task = repository.create_task(user_id=user.user_id)

    decision = repository.charge_task(
        task_id=task.task_id,
        user_id=user.user_id,
        draw_cost=lambda: 9,
    )

    assert decision.outcome is ChargeOutcome.CHARGED
    assert decision.available_credits == 0


def test_second_charge_reports_current_state_without_drawing_cost(
    repository: LedgerRepository,
) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=20)
    task = repository.create_task(user_id=user.user_id)
    repository.charge_task(task_id=task.task_id, user_id=user.user_id, draw_cost=lambda: 4)

    def _must_not_draw() -> int:
        raise AssertionError("cost drawn for an already charged task")

    decision = repository.charge_task(
        task_id=task.task_id,
        user_id=user.user_id,
        draw_cost=_must_not_draw,
    )

    assert decision.outcome is ChargeOutcome.ALREADY_PROCESSED
    assert decision.task.status is TaskStatus.RUNNING
    assert decision.task.cost == 4
    assert repository.get_user(user_id=user.user_id).credits == 16
    assert len(repository.list_ledger_entries(user_id=user.user_id)) == 1


def test_rejected_task_is_never_charged_again(repository: LedgerRepository) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=3)
    task = repository.create_task(user_id=user.user_id)
    repository.charge_task(task_id=task.task_id, user_id=user.user_id, draw_cost=lambda: 9)
    decision = repository.charge_task(
        task_id=task.task_id,
        user_id=user.user_id,
        draw_cost=lambda: 1,
    )

    assert decision.outcome is ChargeOutcome.ALREADY_PROCESSED
    assert decision.task.status is TaskStatus.REJECTED
    assert decision.task.cost == 9


def test_charge_checks_existence_before_ownership(repository: LedgerRepository) -> None:
    alice = repository.register_user(display_name="Alice", starting_credits=20)
    bob = repository.register_user(display_name="Bob", starting_credits=20)
    task = repository.create_task(user_id=alice.user_id)

    with pytest.raises(TaskNotFoundError, match="missing-task"):
        repository.charge_task(task_id="missing-task", user_id=bob.user_id, draw_cost=lambda: 1)
    with pytest.raises(TaskAccessDeniedError, match=bob.user_id):
        repository.charge_task(task_id=task.task_id, user_id=bob.user_id, draw_cost=lambda: 1)

    unchanged = repository.get_task(task_id=task.task_id)
    assert unchanged.status is TaskStatus.CREATED
    assert repository.get_user(user_id=alice.user_id).credits == 20
    assert repository.get_user(user_id=bob.user_id).credits == 20


def test_complete_task_moves_running_to_terminal_once(
    repository: LedgerRepository,
    check_task_invariants,
) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=20)
    task = repository.create_task(user_id=user.user_id)
    repository.charge_task(task_id=task.task_id, user_id=user.user_id, draw_cost=lambda: 5)

    failed = repository.complete_task(
        task_id=task.task_id,
        user_id=user.user_id,
        succeeded=False,
        failure_reason="boom",
    )
    again = repository.complete_task(task_id=task.task_id, user_id=user.user_id, succeeded=True)

    assert failed is not None
    assert failed.status is TaskStatus.FAILED
    assert failed.failure_reason == "boom"
    check_task_invariants(failed)
    assert again is None
    assert repository.get_task(task_id=task.task_id).status is TaskStatus.FAILED
    assert repository.get_user(user_id=user.user_id).credits == 15


def test_complete_task_ignores_missing_foreign_and_created_tasks(
    repository: LedgerRepository,
) -> None:
    alice = repository.register_user(display_name="Alice", starting_credits=20)
    task = repository.create_task(user_id=alice.user_id)

    missing = repository.complete_task(task_id="missing", user_id=alice.user_id, succeeded=True)
    assert missing is None
    assert repository.complete_task(task_id=task.task_id, user_id="bob", succeeded=True) is None
    assert (
        repository.complete_task(task_id=task.task_id, user_id=alice.user_id, succeeded=True)
        is None
    )
    assert repository.get_task(task_id=task.task_id).status is TaskStatus.CREATED


def test_reconcile_reports_mismatch_and_unknown_user(repository: LedgerRepository) -> None:
    user = repository.register_user(display_name="Alice", starting_credits=20)
    with repository.engine.begin() as connection:
        connection.execute(
            text("UPDATE users SET credits = credits + 3 WHERE user_id = :user_id"),
            {"user_id": user.user_id},
        )

    report = repository.reconcile_user(user_id=user.user_id)

    assert report.credits == 23
    assert report.ledger_total == 0
    assert not report.balanced
    with pytest.raises(UserNotFoundError):
        repository.reconcile_user(user_id="missing")
