"""Errors raised by ledger operations."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures surfaced to callers."""


class TaskNotFoundError(LedgerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class UserNotFoundError(LedgerError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class TaskAccessDeniedError(LedgerError):
    """Caller does not own the task."""

    def __init__(self, task_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} is not allowed to execute task {task_id}")
        self.task_id = task_id
        self.user_id = user_id


class TransientStoreError(LedgerError):
    """Store conflict or timeout; the transaction was rolled back and may be retried."""


class InvalidTaskTransitionError(ValueError):
    def __init__(self, status_from: object, status_to: object) -> None:
        super().__init__(f"Invalid task transition: {status_from} -> {status_to}")
        self.status_from = status_from
        self.status_to = status_to
