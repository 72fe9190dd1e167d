"""Runtime configuration for task execution and auto-grants."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class AccountSettings:
    """Registration settings."""

    starting_credits: int = 500


@dataclass(slots=True)
class ExecutionSettings:
    """Detached completion settings.

    The simulated work lasts ``[min_duration_seconds, max_duration_seconds)``.
    """

    min_duration_seconds: float = 10.0
    max_duration_seconds: float = 40.0
    completion_workers: int = 4


@dataclass(slots=True)
class AutoGrantSettings:
    """Raw auto-grant values as configured; clamped by ``AutoGrantPolicy``."""

    grant_amount: int = 10
    grant_frequency_days: int = 3
    check_interval_minutes: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".credit_meter.db")
    sqlite_busy_timeout_ms: int = 5_000
    accounts: AccountSettings = field(default_factory=AccountSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    auto_grant: AutoGrantSettings = field(default_factory=AutoGrantSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CREDIT_METER_DB_PATH", ".credit_meter.db")),
            sqlite_busy_timeout_ms=_env_int("CREDIT_METER_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            accounts=AccountSettings(
                starting_credits=_env_int("CREDIT_METER_STARTING_CREDITS", 500),
            ),
            execution=ExecutionSettings(
                min_duration_seconds=_env_float("CREDIT_METER_TASK_MIN_DURATION_SECONDS", 10.0),
                max_duration_seconds=_env_float("CREDIT_METER_TASK_MAX_DURATION_SECONDS", 40.0),
                completion_workers=_env_int("CREDIT_METER_COMPLETION_WORKERS", 4),
            ),
            auto_grant=AutoGrantSettings(
                grant_amount=_env_int("CREDIT_METER_AUTO_GRANT_AMOUNT", 10),
                grant_frequency_days=_env_int("CREDIT_METER_AUTO_GRANT_FREQUENCY_DAYS", 3),
                check_interval_minutes=_env_int(
                    "CREDIT_METER_AUTO_GRANT_CHECK_INTERVAL_MINUTES",
                    60,
                ),
            ),
        )

    def validate_for_execution(self) -> None:
        """Raise configuration error if execution settings are unusable."""

        execution = self.execution
        if execution.min_duration_seconds < 0:
            raise ValueError("CREDIT_METER_TASK_MIN_DURATION_SECONDS must be >= 0.")
        if execution.max_duration_seconds < execution.min_duration_seconds:
            raise ValueError(
                "CREDIT_METER_TASK_MAX_DURATION_SECONDS must be >= "
                "CREDIT_METER_TASK_MIN_DURATION_SECONDS.",
            )
        if execution.completion_workers <= 0:
            raise ValueError("CREDIT_METER_COMPLETION_WORKERS must be a positive integer.")
        if self.accounts.starting_credits < 0:
            raise ValueError("CREDIT_METER_STARTING_CREDITS must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("CREDIT_METER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
