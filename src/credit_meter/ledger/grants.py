"""Periodic auto-grant of credits to due users."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from credit_meter.config import AutoGrantSettings
from credit_meter.ledger.models import GrantView
from credit_meter.ledger.repository import LedgerRepository
from credit_meter.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AutoGrantPolicy:
    """Effective scheduler parameters."""

    grant_amount: int = 10
    grant_frequency: timedelta = timedelta(days=3)
    check_interval: timedelta = timedelta(minutes=60)

    @classmethod
    def from_settings(cls, settings: AutoGrantSettings) -> AutoGrantPolicy:
        """Clamp configured values up to their minimums instead of rejecting them."""

        grant_amount = _clamp_at_least_one("grant_amount", settings.grant_amount)
        frequency_days = _clamp_at_least_one(
            "grant_frequency_days",
            settings.grant_frequency_days,
        )
        interval_minutes = _clamp_at_least_one(
            "check_interval_minutes",
            settings.check_interval_minutes,
        )
        return cls(
            grant_amount=grant_amount,
            grant_frequency=timedelta(days=frequency_days),
            check_interval=timedelta(minutes=interval_minutes),
        )


@dataclass(slots=True)
class GrantCycleSummary:
    """Outcome of one scheduler tick."""

    granted_at: datetime
    due_before: datetime
    grants: list[GrantView] = field(default_factory=list)

    @property
    def granted_users(self) -> int:
        return len(self.grants)


class AutoGrantScheduler:
    """Grants credits to every due user on a fixed interval.

    Due-ness comes only from persisted ``last_grant_at``/``registered_at``, so a
    restart loses at most the tick in flight. Stop requests are honored between
    ticks; a running grant transaction always commits or rolls back on its own.
    """

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        policy: AutoGrantPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.policy = policy
        self._clock = clock
        self._stop_requested = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks_run = 0

    def run_once(self) -> GrantCycleSummary:
        """Run one grant cycle; errors propagate after the batch is rolled back."""

        now = self._clock()
        due_before = now - self.policy.grant_frequency
        grants = self.repository.grant_due_users(
            grant_amount=self.policy.grant_amount,
            due_before=due_before,
            granted_at=now,
        )
        for grant in grants:
            logger.info(
                "Auto-granted %d credits to user %s at %s",
                grant.amount,
                grant.user_id,
                grant.granted_at.isoformat(),
            )
        return GrantCycleSummary(granted_at=now, due_before=due_before, grants=grants)

    def tick(self) -> GrantCycleSummary | None:
        """Run one cycle, logging and swallowing any failure."""

        try:
            return self.run_once()
        except Exception:
            logger.exception("Unhandled error while processing auto credit grants")
            return None

    def run_forever(self, *, max_ticks: int | None = None) -> int:
        """Tick now and then every ``check_interval`` until stopped; returns ticks run."""

        logger.info(
            "Starting auto credit grant service. grant_amount=%d "
            "grant_frequency_days=%d check_interval_minutes=%d",
            self.policy.grant_amount,
            self.policy.grant_frequency.days,
            int(self.policy.check_interval.total_seconds() // 60),
        )
        ticks = 0
        interval_seconds = self.policy.check_interval.total_seconds()
        while not self._stop_requested.is_set():
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if self._stop_requested.wait(timeout=interval_seconds):
                break
        logger.info("Auto credit grant loop stopped after %d ticks", ticks)
        self.ticks_run = ticks
        return ticks

    def start(self, *, max_ticks: int | None = None) -> None:
        """Run the loop on a background thread."""

        if self.is_running():
            return
        self._stop_requested.clear()
        self.ticks_run = 0
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"max_ticks": max_ticks},
            daemon=True,
            name="auto-credit-grant",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        """Signal the loop to stop and wait for the in-flight tick."""

        logger.info("Stopping auto credit grant service")
        self._stop_requested.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Auto credit grant thread did not stop within %ss", timeout)
            return
        self._thread = None

    def serve(self, *, max_ticks: int | None = None) -> int:
        """Run the loop until SIGINT/SIGTERM, keeping the calling thread free for signals."""

        with self._signal_handlers():
            self.start(max_ticks=max_ticks)
            thread = self._thread
            try:
                while thread is not None and thread.is_alive():
                    thread.join(timeout=0.5)
            finally:
                self.stop()
        return self.ticks_run

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def request_stop(self) -> None:
        self._stop_requested.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping after the current tick", signal.Signals(signum).name)
            self._stop_requested.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _clamp_at_least_one(name: str, value: int) -> int:
    if value >= 1:
        return value
    logger.warning("Auto-grant %s=%d is below 1, using 1", name, value)
    return 1
