"""Persistent ledger repository for users, tasks and credit transactions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from credit_meter.ledger.errors import (
    TaskAccessDeniedError,
    TaskNotFoundError,
    UserNotFoundError,
)
from credit_meter.ledger.models import (
    ChargeDecision,
    ChargeOutcome,
    GrantView,
    LedgerEntryKind,
    LedgerEntryView,
    LedgerReconciliation,
    TaskStatus,
    TaskView,
    UserView,
)
from credit_meter.ledger.state_machine import ensure_transition, is_chargeable
from credit_meter.storage.alembic_runner import upgrade_head
from credit_meter.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from credit_meter.storage.sqlmodel_models import CreditTransaction, CreditUser, TaskItem

logger = logging.getLogger(__name__)


class LedgerRepository:
    """Ledger persistence facade backed by SQLModel + SQLite.

    Every public method runs in its own session, so the repository can be shared
    between request handling, detached completions and the grant scheduler.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- users -----------------------------------------------------------------

    def register_user(
        self,
        *,
        display_name: str,
        starting_credits: int,
        user_id: str | None = None,
        registered_at: datetime | None = None,
    ) -> UserView:
        """Create a user with its registration balance."""

        if starting_credits < 0:
            raise ValueError(f"Starting credits must be >= 0, got {starting_credits}")

        row = CreditUser(
            user_id=user_id or str(uuid4()),
            display_name=display_name,
            credits=starting_credits,
            initial_credits=starting_credits,
            registered_at=to_db_datetime(registered_at or utc_now()),
            last_grant_at=None,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"User already exists: {row.user_id}") from error
            session.refresh(row)
            return _to_user_view(row)

    def get_user(self, *, user_id: str) -> UserView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CreditUser).where(CreditUser.user_id == user_id),
            ).one_or_none()
            return _to_user_view(row) if row is not None else None

    # -- tasks -----------------------------------------------------------------

    def create_task(self, *, user_id: str, created_at: datetime | None = None) -> TaskView:
        """Insert a task in ``created`` state. No ledger interaction."""

        now = to_db_datetime(created_at or utc_now())
        with Session(self.engine) as session:
            owner = session.exec(
                select(CreditUser.user_id).where(CreditUser.user_id == user_id),
            ).one_or_none()
            if owner is None:
                raise UserNotFoundError(user_id)
            row = TaskItem(
                task_id=str(uuid4()),
                user_id=user_id,
                status=TaskStatus.CREATED.value,
                cost=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskItem).where(TaskItem.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, *, user_id: str) -> list[TaskView]:
        """Tasks owned by ``user_id``, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskItem)
                .where(TaskItem.user_id == user_id)
                .order_by(col(TaskItem.created_at).desc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def charge_task(
        self,
        *,
        task_id: str,
        user_id: str,
        draw_cost: Callable[[], int],
    ) -> ChargeDecision:
        """Charge a ``created`` task once and move it to ``running`` or ``rejected``.

        The conditional debit and the ``created`` compare-and-swap share one
        transaction. When the swap loses to a concurrent request the debit is
        rolled back and the winner's committed state is reported instead.
        """

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskItem).where(TaskItem.task_id == task_id),
            ).one_or_none()
            if row is None:
                raise TaskNotFoundError(task_id)
            if row.user_id != user_id:
                raise TaskAccessDeniedError(task_id, user_id)

            status = TaskStatus(row.status)
            if not is_chargeable(status):
                return ChargeDecision(
                    outcome=ChargeOutcome.ALREADY_PROCESSED,
                    task=_to_task_view(row),
                )

            owner = session.exec(
                select(CreditUser.user_id).where(CreditUser.user_id == user_id),
            ).one_or_none()
            if owner is None:
                raise UserNotFoundError(user_id)

            cost = draw_cost()
            if cost < 1:
                raise ValueError(f"Task cost must be >= 1, got {cost}")

            now = to_db_datetime(utc_now())
            debit = session.exec(
                sa_update(CreditUser)
                .where(
                    col(CreditUser.user_id) == user_id,
                    col(CreditUser.credits) >= cost,
                )
                .values(credits=col(CreditUser.credits) - cost),
            )
            charged = debit.rowcount == 1
            if charged:
                target = TaskStatus.RUNNING
                values: dict[str, object] = {"started_at": now}
            else:
                target = TaskStatus.REJECTED
                values = {"completed_at": now}
            ensure_transition(status, target)

            moved = session.exec(
                sa_update(TaskItem)
                .where(
                    col(TaskItem.task_id) == task_id,
                    col(TaskItem.user_id) == user_id,
                    col(TaskItem.status) == TaskStatus.CREATED.value,
                )
                .values(status=target.value, cost=cost, updated_at=now, **values),
            )
            if moved.rowcount != 1:
                session.rollback()
                logger.info("Task %s was charged by a concurrent request", task_id)
                current = session.exec(
                    select(TaskItem).where(TaskItem.task_id == task_id),
                ).one()
                return ChargeDecision(
                    outcome=ChargeOutcome.ALREADY_PROCESSED,
                    task=_to_task_view(current),
                )

            if charged:
                session.add(
                    CreditTransaction(
                        entry_id=str(uuid4()),
                        user_id=user_id,
                        task_id=task_id,
                        amount=-cost,
                        kind=LedgerEntryKind.DEBIT.value,
                        created_at=now,
                    ),
                )
            available = session.exec(
                select(CreditUser.credits).where(CreditUser.user_id == user_id),
            ).one()
            session.commit()

            committed = session.exec(
                select(TaskItem).where(TaskItem.task_id == task_id),
            ).one()
            return ChargeDecision(
                outcome=ChargeOutcome.CHARGED if charged else ChargeOutcome.REJECTED,
                task=_to_task_view(committed),
                available_credits=available,
            )

    def complete_task(
        self,
        *,
        task_id: str,
        user_id: str,
        succeeded: bool,
        failure_reason: str | None = None,
    ) -> TaskView | None:
        """Move a ``running`` task to its terminal state.

        Returns ``None`` without writing when the task is gone, changed owner, or
        is not ``running`` anymore.
        """

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskItem).where(TaskItem.task_id == task_id),
            ).one_or_none()
            if row is None:
                logger.warning("Task %s disappeared before completion", task_id)
                return None
            if row.user_id != user_id:
                logger.warning("Task %s owner changed before completion", task_id)
                return None
            status = TaskStatus(row.status)
            if status is not TaskStatus.RUNNING:
                logger.info("Task %s is %s, skipping completion", task_id, status.value)
                return None

            target = TaskStatus.SUCCEEDED if succeeded else TaskStatus.FAILED
            ensure_transition(status, target)
            now = to_db_datetime(utc_now())
            result = session.exec(
                sa_update(TaskItem)
                .where(
                    col(TaskItem.task_id) == task_id,
                    col(TaskItem.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=target.value,
                    completed_at=now,
                    failure_reason=None if succeeded else failure_reason,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()

            committed = session.exec(
                select(TaskItem).where(TaskItem.task_id == task_id),
            ).one()
            return _to_task_view(committed)

    # -- grants ----------------------------------------------------------------

    def grant_due_users(
        self,
        *,
        grant_amount: int,
        due_before: datetime,
        granted_at: datetime,
    ) -> list[GrantView]:
        """Credit every user whose grant baseline is at or before ``due_before``.

        One serializable transaction for the whole batch: either every due user
        is credited and gets a ledger entry, or nothing is written.
        """

        if grant_amount < 1:
            raise ValueError(f"Grant amount must be >= 1, got {grant_amount}")

        cutoff = to_db_datetime(due_before)
        stamp = to_db_datetime(granted_at)
        baseline = func.coalesce(col(CreditUser.last_grant_at), col(CreditUser.registered_at))
        granted: list[GrantView] = []
        with Session(self.engine) as session:
            session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
            try:
                due_user_ids = session.exec(
                    select(CreditUser.user_id)
                    .where(baseline <= cutoff)
                    .order_by(col(CreditUser.user_id)),
                ).all()
                for user_id in due_user_ids:
                    result = session.exec(
                        sa_update(CreditUser)
                        .where(col(CreditUser.user_id) == user_id, baseline <= cutoff)
                        .values(
                            credits=col(CreditUser.credits) + grant_amount,
                            last_grant_at=stamp,
                        )
                        .execution_options(synchronize_session=False),
                    )
                    if result.rowcount != 1:
                        logger.info("User %s is no longer due for a grant", user_id)
                        continue
                    session.add(
                        CreditTransaction(
                            entry_id=str(uuid4()),
                            user_id=user_id,
                            task_id=None,
                            amount=grant_amount,
                            kind=LedgerEntryKind.AUTO_GRANT.value,
                            created_at=stamp,
                        ),
                    )
                    credits_after = session.exec(
                        select(CreditUser.credits).where(CreditUser.user_id == user_id),
                    ).one()
                    granted.append(
                        GrantView(
                            user_id=user_id,
                            amount=grant_amount,
                            credits_after=credits_after,
                            granted_at=to_utc_aware_datetime(stamp),
                        ),
                    )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return granted

    # -- ledger ----------------------------------------------------------------

    def list_ledger_entries(self, *, user_id: str) -> list[LedgerEntryView]:
        """Ledger entries for ``user_id``, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(col(CreditTransaction.created_at).asc()),
            ).all()
            return [_to_entry_view(row) for row in rows]

    def ledger_total(self, *, user_id: str) -> int:
        with Session(self.engine) as session:
            return _ledger_sum(session, user_id)

    def reconcile_user(self, *, user_id: str) -> LedgerReconciliation:
        """Compare the ledger sum with the balance delta in one read."""

        with Session(self.engine) as session:
            row = session.exec(
                select(CreditUser).where(CreditUser.user_id == user_id),
            ).one_or_none()
            if row is None:
                raise UserNotFoundError(user_id)
            return LedgerReconciliation(
                user_id=row.user_id,
                credits=row.credits,
                initial_credits=row.initial_credits,
                ledger_total=_ledger_sum(session, user_id),
            )


def _ledger_sum(session: Session, user_id: str) -> int:
    total = session.exec(
        select(func.coalesce(func.sum(col(CreditTransaction.amount)), 0)).where(
            CreditTransaction.user_id == user_id,
        ),
    ).one()
    return int(total)


def _to_user_view(row: CreditUser) -> UserView:
    return UserView(
        user_id=row.user_id,
        display_name=row.display_name,
        credits=row.credits,
        initial_credits=row.initial_credits,
        registered_at=to_utc_aware_datetime(row.registered_at),
        last_grant_at=(
            to_utc_aware_datetime(row.last_grant_at) if row.last_grant_at is not None else None
        ),
    )


def _to_task_view(row: TaskItem) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        status=TaskStatus(row.status),
        cost=row.cost,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        failure_reason=row.failure_reason,
    )


def _to_entry_view(row: CreditTransaction) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.entry_id,
        user_id=row.user_id,
        task_id=row.task_id,
        amount=row.amount,
        kind=LedgerEntryKind(row.kind),
        created_at=to_utc_aware_datetime(row.created_at),
    )
