"""Controllers for ledger CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from credit_meter.config import Settings
from credit_meter.ledger.errors import UserNotFoundError
from credit_meter.ledger.execution import TaskExecutionEngine
from credit_meter.ledger.grants import AutoGrantPolicy, AutoGrantScheduler
from credit_meter.ledger.models import TaskStatus, TaskView
from credit_meter.ledger.repository import LedgerRepository
from credit_meter.ledger.services import TaskService, UserService


@dataclass(slots=True)
class RegisterUserCommand:
    """CLI input for user registration."""

    db_path: Path | None
    display_name: str
    credits: int | None


@dataclass(slots=True)
class UserCommand:
    """CLI input for commands scoped to one user."""

    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class ExecuteTaskCommand:
    """CLI input for task execution."""

    db_path: Path | None
    task_id: str
    user_id: str
    wait: bool
    wait_timeout_seconds: float | None = None


@dataclass(slots=True)
class GrantCommand:
    """CLI input for the auto-grant scheduler."""

    db_path: Path | None
    max_ticks: int | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command succeeded."""

    lines: list[str]
    success: bool = True


class LedgerCliController:
    """Coordinates user, task, grant and ledger CLI operations."""

    def register_user(self, command: RegisterUserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = UserService(
                repository=repository,
                starting_credits=settings.accounts.starting_credits,
            )
            user = service.register_user(
                display_name=command.display_name,
                credits=command.credits,
            )
        return [f"User registered: user_id={user.user_id} credits={user.credits}"]

    def profile(self, command: UserCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            profile = UserService(repository=repository).get_profile(user_id=command.user_id)
        if profile is None:
            return CommandResult(lines=[f"User not found: {command.user_id}"], success=False)
        return CommandResult(
            lines=[
                f"user_id={profile.user_id}",
                f"name={profile.display_name}",
                f"credits={profile.credits}",
                f"registered_at={profile.registered_at.isoformat()}",
                f"grant_baseline={profile.grant_baseline.isoformat()}",
            ],
        )

    def create_task(self, command: UserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            created = TaskService(repository=repository).create_task(user_id=command.user_id)
        return [
            "Task created: "
            f"task_id={created.task_id} status={created.status.value} "
            f"created_at={created.created_at.isoformat()}",
        ]

    def list_tasks(self, command: UserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = TaskService(repository=repository).list_tasks(user_id=command.user_id)
        if not tasks:
            return ["No tasks."]
        return [_task_line(task) for task in tasks]

    def execute_task(self, command: ExecuteTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_execution()
        with _repository(settings) as repository:
            engine = TaskExecutionEngine(repository=repository, settings=settings.execution)
            try:
                result = engine.execute(task_id=command.task_id, user_id=command.user_id)
                lines = [
                    "Execute: "
                    f"task_id={result.task_id} status={result.status.value} cost={result.cost}",
                    result.message,
                ]
                if result.status is TaskStatus.RUNNING and not result.already_processed:
                    if not command.wait:
                        lines.append("Not waiting for completion; task stays running.")
                    elif engine.wait_for_pending(timeout=command.wait_timeout_seconds):
                        final = repository.get_task(task_id=command.task_id)
                        if final is not None:
                            lines.append(f"Completed: {_task_line(final)}")
                    else:
                        lines.append("Timed out waiting for completion; task stays running.")
            finally:
                engine.shutdown(cancel_pending=True)
        return lines

    def grant_once(self, command: GrantCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            scheduler = AutoGrantScheduler(
                repository=repository,
                policy=AutoGrantPolicy.from_settings(settings.auto_grant),
            )
            summary = scheduler.run_once()
        lines = [
            "Grant cycle: "
            f"granted_users={summary.granted_users} due_before={summary.due_before.isoformat()}",
        ]
        lines.extend(
            f"  user_id={grant.user_id} amount={grant.amount} credits={grant.credits_after}"
            for grant in summary.grants
        )
        return lines

    def serve_grants(self, command: GrantCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            scheduler = AutoGrantScheduler(
                repository=repository,
                policy=AutoGrantPolicy.from_settings(settings.auto_grant),
            )
            ticks = scheduler.serve(max_ticks=command.max_ticks)
        return [f"Auto-grant scheduler stopped after {ticks} ticks."]

    def show_ledger(self, command: UserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if repository.get_user(user_id=command.user_id) is None:
                raise UserNotFoundError(command.user_id)
            service = UserService(repository=repository)
            entries = service.ledger_entries(user_id=command.user_id)
            total = service.ledger_total(user_id=command.user_id)
        if not entries:
            return ["No ledger entries."]
        lines = [
            f"{entry.created_at.isoformat()} {entry.kind.value} amount={entry.amount:+d}"
            f" task_id={entry.task_id or '-'}"
            for entry in entries
        ]
        lines.append(f"total={total:+d}")
        return lines

    def verify_ledger(self, command: UserCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = UserService(repository=repository).reconcile(user_id=command.user_id)
        line = (
            f"user_id={report.user_id} credits={report.credits} "
            f"initial_credits={report.initial_credits} ledger_total={report.ledger_total}"
        )
        if report.balanced:
            return CommandResult(lines=[line, "Ledger is balanced."])
        return CommandResult(lines=[line, "Ledger does NOT match the balance."], success=False)


def _task_line(task: TaskView) -> str:
    parts = [
        f"task_id={task.task_id}",
        f"status={task.status.value}",
        f"cost={task.cost if task.cost is not None else '-'}",
        f"created_at={task.created_at.isoformat()}",
    ]
    if task.started_at is not None:
        parts.append(f"started_at={task.started_at.isoformat()}")
    if task.completed_at is not None:
        parts.append(f"completed_at={task.completed_at.isoformat()}")
    if task.failure_reason:
        parts.append(f"failure_reason={task.failure_reason!r}")
    return " ".join(parts)


@contextmanager
def _repository(settings: Settings) -> Iterator[LedgerRepository]:
    repository = LedgerRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
