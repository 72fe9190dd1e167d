"""Domain models for tasks, users and ledger entries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


class LedgerEntryKind(str, Enum):
    """Reason a balance changed."""

    DEBIT = "debit"
    AUTO_GRANT = "auto_grant"


class ChargeOutcome(str, Enum):
    """Result of one synchronous charge attempt."""

    CHARGED = "charged"
    REJECTED = "rejected"
    ALREADY_PROCESSED = "already_processed"


@dataclass(slots=True)
class UserView:
    """Read-only user snapshot."""

    user_id: str
    display_name: str
    credits: int
    initial_credits: int
    registered_at: datetime
    last_grant_at: datetime | None

    @property
    def grant_baseline(self) -> datetime:
        return self.last_grant_at or self.registered_at


@dataclass(slots=True)
class TaskView:
    """Read-only task snapshot."""

    task_id: str
    user_id: str
    status: TaskStatus
    cost: int | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failure_reason: str | None


@dataclass(slots=True)
class LedgerEntryView:
    """Audit entry for one balance mutation."""

    entry_id: str
    user_id: str
    task_id: str | None
    amount: int
    kind: LedgerEntryKind
    created_at: datetime


@dataclass(slots=True)
class ChargeDecision:
    """What the charge transaction committed (or found already committed)."""

    outcome: ChargeOutcome
    task: TaskView
    available_credits: int | None = None


@dataclass(slots=True)
class GrantView:
    """One user credited by an auto-grant cycle."""

    user_id: str
    amount: int
    credits_after: int
    granted_at: datetime


@dataclass(slots=True)
class ExecuteTaskResult:
    """Response of the execute operation."""

    task_id: str
    status: TaskStatus
    cost: int
    started_at: datetime | None
    message: str
    already_processed: bool = False


@dataclass(slots=True)
class CreateTaskResult:
    """Response of the create operation."""

    task_id: str
    status: TaskStatus
    created_at: datetime


@dataclass(slots=True)
class ProfileView:
    """Public user profile."""

    user_id: str
    display_name: str
    credits: int
    registered_at: datetime
    grant_baseline: datetime


@dataclass(slots=True)
class LedgerReconciliation:
    """Comparison of the ledger sum against the balance delta since registration."""

    user_id: str
    credits: int
    initial_credits: int
    ledger_total: int

    @property
    def balanced(self) -> bool:
        return self.ledger_total == self.credits - self.initial_credits
