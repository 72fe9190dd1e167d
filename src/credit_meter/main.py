"""CLI entrypoint for credit-meter."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from credit_meter import __version__
from credit_meter.ledger.controllers import (
    ExecuteTaskCommand,
    GrantCommand,
    LedgerCliController,
    RegisterUserCommand,
    UserCommand,
)
from credit_meter.ledger.errors import (
    LedgerError,
    TaskAccessDeniedError,
    TaskNotFoundError,
    TransientStoreError,
    UserNotFoundError,
)

click.rich_click.USE_MARKDOWN = True
LEDGER_CONTROLLER = LedgerCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to CREDIT_METER_DB_PATH or .credit_meter.db.",
)


@click.group()
@click.version_option(version=__version__, prog_name="credit-meter")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def credit_meter(log_level: str) -> None:
    """Credit-metered task execution CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@credit_meter.group()
def users() -> None:
    """User commands."""


@users.command("register")
@DB_PATH_OPTION
@click.option("--name", "display_name", required=True, help="Display name.")
@click.option(
    "--credits",
    type=click.IntRange(min=0),
    default=None,
    help="Starting balance. Defaults to CREDIT_METER_STARTING_CREDITS (500).",
)
def users_register(db_path: Path | None, display_name: str, credits: int | None) -> None:
    """Register a user with a starting credit balance."""

    try:
        lines = LEDGER_CONTROLLER.register_user(
            RegisterUserCommand(db_path=db_path, display_name=display_name, credits=credits),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@users.command("profile")
@DB_PATH_OPTION
@click.argument("user_id")
def users_profile(db_path: Path | None, user_id: str) -> None:
    """Show a user's balance and registration time."""

    result = LEDGER_CONTROLLER.profile(UserCommand(db_path=db_path, user_id=user_id))
    if not result.success:
        raise click.ClickException(result.lines[0])
    _emit_lines(result.lines)


@credit_meter.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("create")
@DB_PATH_OPTION
@click.argument("user_id")
def tasks_create(db_path: Path | None, user_id: str) -> None:
    """Create a task. Creating is free."""

    with _ledger_errors():
        lines = LEDGER_CONTROLLER.create_task(UserCommand(db_path=db_path, user_id=user_id))
    _emit_lines(lines)


@tasks.command("list")
@DB_PATH_OPTION
@click.argument("user_id")
def tasks_list(db_path: Path | None, user_id: str) -> None:
    """List a user's tasks, newest first."""

    _emit_lines(LEDGER_CONTROLLER.list_tasks(UserCommand(db_path=db_path, user_id=user_id)))


@tasks.command("execute")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--user", "user_id", required=True, help="Id of the user requesting execution.")
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help=(
        "Keep the process alive until the simulated work finishes. "
        "With --no-wait the task is charged and left running."
    ),
)
@click.option(
    "--wait-timeout",
    "wait_timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Give up waiting after this many seconds.",
)
def tasks_execute(
    db_path: Path | None,
    task_id: str,
    user_id: str,
    wait: bool,
    wait_timeout_seconds: float | None,
) -> None:
    """Charge a task and run it. Repeated calls never charge twice."""

    with _ledger_errors():
        try:
            lines = LEDGER_CONTROLLER.execute_task(
                ExecuteTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                    user_id=user_id,
                    wait=wait,
                    wait_timeout_seconds=wait_timeout_seconds,
                ),
            )
        except ValueError as error:
            raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@credit_meter.group()
def grants() -> None:
    """Auto-grant scheduler commands."""


@grants.command("run-once")
@DB_PATH_OPTION
def grants_run_once(db_path: Path | None) -> None:
    """Run a single auto-grant cycle."""

    _emit_lines(LEDGER_CONTROLLER.grant_once(GrantCommand(db_path=db_path)))


@grants.command("serve")
@DB_PATH_OPTION
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles. Runs until SIGINT/SIGTERM when omitted.",
)
def grants_serve(db_path: Path | None, max_ticks: int | None) -> None:
    """Run the auto-grant scheduler in the foreground."""

    _emit_lines(
        LEDGER_CONTROLLER.serve_grants(GrantCommand(db_path=db_path, max_ticks=max_ticks)),
    )


@credit_meter.group()
def ledger() -> None:
    """Ledger audit commands."""


@ledger.command("show")
@DB_PATH_OPTION
@click.argument("user_id")
def ledger_show(db_path: Path | None, user_id: str) -> None:
    """Show a user's ledger entries, oldest first."""

    with _ledger_errors():
        lines = LEDGER_CONTROLLER.show_ledger(UserCommand(db_path=db_path, user_id=user_id))
    _emit_lines(lines)


@ledger.command("verify")
@DB_PATH_OPTION
@click.argument("user_id")
def ledger_verify(db_path: Path | None, user_id: str) -> None:
    """Check that the ledger sum matches the balance change since registration."""

    with _ledger_errors():
        result = LEDGER_CONTROLLER.verify_ledger(UserCommand(db_path=db_path, user_id=user_id))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Ledger reconciliation failed.")


@contextmanager
def _ledger_errors() -> Iterator[None]:
    try:
        yield
    except (TaskNotFoundError, UserNotFoundError) as error:
        raise click.ClickException(f"Not found: {error}") from error
    except TaskAccessDeniedError as error:
        raise click.ClickException(f"Not allowed: {error}") from error
    except TransientStoreError as error:
        raise click.ClickException(f"Temporary storage failure, retry: {error}") from error
    except LedgerError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    credit_meter()
