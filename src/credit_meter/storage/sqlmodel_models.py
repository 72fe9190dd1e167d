"""SQLModel ORM tables for the credit ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, text
from sqlmodel import Field, SQLModel


class CreditUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)

    user_id: str = Field(primary_key=True)
    display_name: str = Field(index=True)
    credits: int = Field(default=0)
    initial_credits: int = Field(default=0)
    registered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_grant_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class TaskItem(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_owner_created", "user_id", "created_at"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    status: str = Field(index=True)
    cost: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_reason: str | None = Field(default=None, sa_column=Column(String(512)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditTransaction(SQLModel, table=True):
    __tablename__ = "credit_transactions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_credit_transactions_user_time", "user_id", "created_at"),
        Index(
            "uq_credit_transactions_task_debit",
            "task_id",
            unique=True,
            sqlite_where=text("kind = 'debit'"),
        ),
    )

    entry_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    amount: int
    kind: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
