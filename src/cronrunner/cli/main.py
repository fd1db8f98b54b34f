"""cron-runner CLI application."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from cronrunner import __version__
from cronrunner.config import (
    ConfigurationError,
    CronRunnerError,
    debug_enabled,
    ensure_log_dir,
    is_interactive,
    load_config,
)
from cronrunner.core.registry import Registry
from cronrunner.core.remote import RemoteChannel
from cronrunner.core.sentinel import ErrorSentinel
from cronrunner.core.supervisor import LifecycleSupervisor
from cronrunner.models import (
    Action,
    CronRunnerConfig,
    Outcome,
    RunnerContext,
    RunnerStatus,
    SupervisorResult,
)

app = typer.Typer(
    name="cron-runner",
    help="Keep a CI runner alive on a remote host. Meant to be called from cron.",
    add_completion=False,
)
console = Console()

LOG_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"


def setup_logging(verbose: bool = False, interactive: bool = True) -> None:
    """Setup logging configuration.

    Unattended runs only send warnings and errors to stderr, so cron mails
    stay quiet on routine passes.
    """
    logger.remove()

    if verbose:
        level = "DEBUG"
    else:
        level = "INFO" if interactive else "WARNING"

    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=interactive,
    )


def add_run_log(config: CronRunnerConfig, verbose: bool = False) -> None:
    """Append this run's log lines to the shared run log."""
    ensure_log_dir(config)
    logger.add(
        config.get_run_log(),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        level="DEBUG" if verbose else "INFO",
        rotation="10 MB",
        retention=5,
    )


def select_action(info: bool, list_: bool, resume: bool, stop: bool) -> Action:
    """Map the mutually exclusive action flags to an Action."""
    chosen = [
        action
        for flag, action in (
            (info, Action.INFO),
            (list_, Action.LIST),
            (resume, Action.RESUME),
            (stop, Action.STOP),
        )
        if flag
    ]
    if len(chosen) > 1:
        flags = ", ".join(f"--{a.value}" for a in chosen)
        raise ConfigurationError(f"Only one action may be given (got {flags})")
    return chosen[0] if chosen else Action.ENSURE_RUNNING


def version_callback(value: bool) -> None:
    if value:
        console.print(f"cron-runner {__version__}")
        raise typer.Exit()


@app.command()
def main(
    path: Optional[Path] = typer.Argument(None, help="Runner installation directory"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Registered runner name"),
    machine: Optional[str] = typer.Option(
        None, "--machine", "-m", help="Machine to (re)start the runner on"
    ),
    info: bool = typer.Option(False, "--info", "-i", help="Show recorded state, change nothing"),
    list_: bool = typer.Option(False, "--list", "-l", help="List registered runners"),
    resume: bool = typer.Option(False, "--resume", "-r", help="Release a stop hold"),
    stop: bool = typer.Option(False, "--stop", "-s", help="Stop the runner and hold it"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    """Start the runner if it is not running (cron mode), or inspect/stop/resume it."""
    interactive = is_interactive()
    setup_logging(verbose, interactive)

    sentinel = ErrorSentinel(CronRunnerConfig().sentinel_file)
    try:
        config = load_config(config_file)
        sentinel = ErrorSentinel(config.sentinel_file)

        if not interactive:
            if sentinel.exists():
                logger.debug(f"Error sentinel {sentinel.path} present, doing nothing")
                raise typer.Exit(0)
            add_run_log(config, verbose)

        ctx = RunnerContext(
            action=select_action(info, list_, resume, stop),
            path=path,
            name=name,
            machine=machine,
            interactive=interactive,
            debug=debug_enabled(),
        )
        supervisor = LifecycleSupervisor(
            config=config,
            registry=Registry(config.get_registry_file()),
            remote=RemoteChannel(config),
            user=config.remote_user,
        )
        result = supervisor.run(ctx)

    except typer.Exit:
        raise
    except CronRunnerError as e:
        fail(e, interactive, sentinel)
    except Exception as e:
        if interactive:
            raise
        logger.exception(f"Unexpected error: {e}")
        sentinel.trip(f"{type(e).__name__}: {e}")
        raise typer.Exit(1)

    report(result, interactive)


def fail(error: CronRunnerError, interactive: bool, sentinel: ErrorSentinel) -> None:
    """Report a fatal error and exit 1."""
    message = f"{type(error).__name__}: {error}"
    if interactive:
        console.print(f"[red]✗ {error}[/red]")
    else:
        logger.error(message)
        if error.trips_breaker:
            sentinel.trip(message)
    raise typer.Exit(1)


def report(result: SupervisorResult, interactive: bool) -> None:
    """Print the outcome of a supervisor pass."""
    if result.outcome == Outcome.LISTED:
        print_runner_table(result)
        return

    if result.outcome == Outcome.INFO:
        print_info(result)
        return

    if not interactive:
        logger.info(result.message)
        return

    if result.outcome in (Outcome.STARTED, Outcome.RESTARTED, Outcome.STOPPED, Outcome.HOLD_RELEASED):
        console.print(f"[green]✓ {result.message}[/green]")
    elif result.outcome == Outcome.ALREADY_ACTIVE:
        console.print(f"[blue]● {result.message}[/blue]")
    else:
        console.print(f"[yellow]{result.message}[/yellow]")


def print_runner_table(result: SupervisorResult) -> None:
    if not result.runners:
        console.print("[yellow]No runners registered[/yellow]")
        return

    table = Table(title="Runners")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Host")
    table.add_column("PID", justify="right")
    table.add_column("Path")

    for runner in result.runners:
        status_str = runner.status
        if runner.status == RunnerStatus.STARTED.value:
            status_str = f"[green]{runner.status}[/green]"
        elif runner.status == RunnerStatus.STOPPED.value:
            status_str = f"[dim]{runner.status}[/dim]"
        elif runner.status == "?":
            status_str = "[red]?[/red]"

        table.add_row(
            runner.name,
            status_str,
            runner.host or "-",
            str(runner.pid) if runner.pid else "-",
            str(runner.path),
        )

    console.print(table)


def print_info(result: SupervisorResult) -> None:
    record = result.record
    console.print(f"[cyan bold]{record.name}[/cyan bold]")
    console.print(f"  Path:   {record.path}")
    console.print(f"  Status: {record.status.value}")
    console.print(f"  Host:   {record.host or '-'}")
    console.print(f"  PID:    {record.pid or '-'}")

    if result.log_file:
        console.print(f"\n[dim]Last {len(result.log_tail)} lines of {result.log_file}:[/dim]")
        for line in result.log_tail:
            console.print(line, markup=False, highlight=False)


if __name__ == "__main__":
    app()
