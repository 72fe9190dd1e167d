"""Task execution: synchronous charge, detached completion."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from sqlalchemy.exc import OperationalError

from credit_meter.config import ExecutionSettings
from credit_meter.ledger.errors import LedgerError, TransientStoreError
from credit_meter.ledger.models import ChargeOutcome, ExecuteTaskResult, TaskView
from credit_meter.ledger.repository import LedgerRepository
from credit_meter.ledger.state_machine import is_terminal

logger = logging.getLogger(__name__)

MIN_TASK_COST = 1
MAX_TASK_COST = 14
SIMULATED_FAILURE_REASON = "Random failure during execution simulation."


class TaskExecutionEngine:
    """Charges tasks on the caller's thread and finalizes them on a worker pool.

    ``execute`` returns as soon as the charge transaction commits. The outcome of
    the simulated work is written later by a pool thread in its own transaction;
    a failed task keeps its charge.
    """

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        settings: ExecutionSettings,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self._random = rng or random.Random()  # noqa: S311
        self._random_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=settings.completion_workers,
            thread_name_prefix="task-completion",
        )
        self._pending: set[Future[TaskView | None]] = set()
        self._pending_lock = threading.Lock()

    def execute(self, *, task_id: str, user_id: str) -> ExecuteTaskResult:
        """Charge ``task_id`` for ``user_id`` once; repeated calls report current state."""

        logger.info("Starting task execution for task %s by user %s", task_id, user_id)
        try:
            decision = self.repository.charge_task(
                task_id=task_id,
                user_id=user_id,
                draw_cost=self._draw_cost,
            )
        except LedgerError as error:
            logger.warning("Task %s not executed: %s", task_id, error)
            raise
        except OperationalError as error:
            logger.warning("Store conflict while charging task %s: %s", task_id, error)
            raise TransientStoreError(f"Could not charge task {task_id}: {error}") from error
        except Exception:
            logger.exception("Error executing task %s", task_id)
            raise

        task = decision.task
        if decision.outcome is ChargeOutcome.ALREADY_PROCESSED:
            logger.info(
                "Task %s is already %s%s, returning current state",
                task_id,
                task.status.value,
                "" if is_terminal(task.status) else " and still in flight",
            )
            return ExecuteTaskResult(
                task_id=task.task_id,
                status=task.status,
                cost=task.cost or 0,
                started_at=task.started_at,
                message="Task has already been processed.",
                already_processed=True,
            )

        cost = task.cost or 0
        if decision.outcome is ChargeOutcome.REJECTED:
            logger.info(
                "Insufficient credits for task %s. Required: %d, available: %s",
                task_id,
                cost,
                decision.available_credits,
            )
            return ExecuteTaskResult(
                task_id=task.task_id,
                status=task.status,
                cost=cost,
                started_at=task.started_at,
                message=(
                    f"Insufficient credits. Required: {cost}, "
                    f"Available: {decision.available_credits}"
                ),
            )

        logger.info("Task %s is running, %d credits debited", task_id, cost)
        self._schedule_completion(task)
        return ExecuteTaskResult(
            task_id=task.task_id,
            status=task.status,
            cost=cost,
            started_at=task.started_at,
            message="Task execution started.",
        )

    def wait_for_pending(self, timeout: float | None = None) -> bool:
        """Block until scheduled completions finish; ``False`` on timeout."""

        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def shutdown(self, *, cancel_pending: bool = True) -> None:
        """Stop the completion pool.

        With ``cancel_pending`` the sleeping completions abort before writing, so
        their tasks stay ``running``. Otherwise this waits for them to finish.
        """

        pending = self.pending_count()
        if pending:
            logger.info(
                "Shutting down completion pool with %d pending completions, cancel=%s",
                pending,
                cancel_pending,
            )
        if cancel_pending:
            self._stop_requested.set()
        self._executor.shutdown(wait=True, cancel_futures=cancel_pending)

    def _schedule_completion(self, task: TaskView) -> None:
        if self._stop_requested.is_set():
            logger.warning("Engine is shutting down, task %s stays running", task.task_id)
            return
        duration = self._draw_duration()
        try:
            future = self._executor.submit(
                self._complete_task,
                task.task_id,
                task.user_id,
                duration,
            )
        except RuntimeError:
            logger.warning("Completion pool is closed, task %s stays running", task.task_id)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future[TaskView | None]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _complete_task(self, task_id: str, user_id: str, duration: float) -> TaskView | None:
        try:
            logger.info(
                "Starting background execution for task %s, duration %.1fs",
                task_id,
                duration,
            )
            if self._stop_requested.wait(timeout=duration):
                logger.warning("Background execution cancelled, task %s stays running", task_id)
                return None

            succeeded = self._draw_outcome()
            completed = self.repository.complete_task(
                task_id=task_id,
                user_id=user_id,
                succeeded=succeeded,
                failure_reason=None if succeeded else SIMULATED_FAILURE_REASON,
            )
            if completed is not None:
                logger.info(
                    "Background execution completed for task %s: %s",
                    task_id,
                    completed.status.value,
                )
            return completed
        except Exception:
            logger.exception("Error in background execution for task %s", task_id)
            return None

    def _draw_cost(self) -> int:
        with self._random_lock:
            return self._random.randint(MIN_TASK_COST, MAX_TASK_COST)

    def _draw_duration(self) -> float:
        low = self.settings.min_duration_seconds
        high = self.settings.max_duration_seconds
        with self._random_lock:
            return low + (high - low) * self._random.random()

    def _draw_outcome(self) -> bool:
        with self._random_lock:
            return self._random.random() < 0.5
