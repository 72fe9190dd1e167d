"""Use-case services for users and tasks."""

from __future__ import annotations

from credit_meter.ledger.models import (
    CreateTaskResult,
    LedgerEntryView,
    LedgerReconciliation,
    ProfileView,
    TaskView,
    UserView,
)
from credit_meter.ledger.repository import LedgerRepository


class TaskService:
    """Task creation and listing; neither touches the ledger."""

    def __init__(self, *, repository: LedgerRepository) -> None:
        self.repository = repository

    def create_task(self, *, user_id: str) -> CreateTaskResult:
        task = self.repository.create_task(user_id=user_id)
        return CreateTaskResult(
            task_id=task.task_id,
            status=task.status,
            created_at=task.created_at,
        )

    def list_tasks(self, *, user_id: str) -> list[TaskView]:
        return self.repository.list_tasks(user_id=user_id)


class UserService:
    """Profile reads, registration and ledger audit."""

    def __init__(self, *, repository: LedgerRepository, starting_credits: int = 500) -> None:
        self.repository = repository
        self.starting_credits = starting_credits

    def register_user(self, *, display_name: str, credits: int | None = None) -> UserView:
        name = display_name.strip()
        if not name:
            raise ValueError("Display name must not be empty.")
        return self.repository.register_user(
            display_name=name,
            starting_credits=self.starting_credits if credits is None else credits,
        )

    def get_profile(self, *, user_id: str) -> ProfileView | None:
        user = self.repository.get_user(user_id=user_id)
        if user is None:
            return None
        return ProfileView(
            user_id=user.user_id,
            display_name=user.display_name,
            credits=user.credits,
            registered_at=user.registered_at,
            grant_baseline=user.grant_baseline,
        )

    def ledger_entries(self, *, user_id: str) -> list[LedgerEntryView]:
        return self.repository.list_ledger_entries(user_id=user_id)

    def ledger_total(self, *, user_id: str) -> int:
        return self.repository.ledger_total(user_id=user_id)

    def reconcile(self, *, user_id: str) -> LedgerReconciliation:
        return self.repository.reconcile_user(user_id=user_id)
