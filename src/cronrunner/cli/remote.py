"""Remote-side commands, run on the runner's host over ssh.

    python -m cronrunner.cli.remote launch PATH [--log FILE] [--entrypoint FILE]
    python -m cronrunner.cli.remote stop PID [--name NAME] [--timeout S]
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from cronrunner.config import CronRunnerError, load_config
from cronrunner.core.launcher import launch_runner
from cronrunner.core.stopper import resolve_signal, stop_runner
from cronrunner.models import RunnerInstallConfig, StopConfig

app = typer.Typer(
    name="cron-runner-remote",
    help="cron-runner helpers executed on the runner's host",
    no_args_is_help=True,
    add_completion=False,
)


def setup_logging(verbose: bool = False) -> None:
    """Plain stderr logging; output ends up in the runner log or ssh stderr."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        level="DEBUG" if verbose else "INFO",
    )


@app.command("launch")
def launch(
    path: Path = typer.Argument(..., help="Runner installation directory"),
    log: Optional[Path] = typer.Option(None, "--log", help="Append runner output to this file"),
    entrypoint: Optional[str] = typer.Option(
        None, "--entrypoint", help="Runner entrypoint, relative to PATH (overrides config)"
    ),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Record this process as the runner's pid, then run the runner until it exits."""
    setup_logging(verbose)
    if log is not None:
        # Launcher messages go to the same file as the runner's output
        logger.add(log, format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}", level="INFO")

    try:
        runner = load_config(config_file).runner
        if entrypoint:
            runner = runner.model_copy(update={"entrypoint": entrypoint})
        returncode = launch_runner(path.absolute(), log_file=log, runner=runner)
    except CronRunnerError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    raise typer.Exit(returncode)


@app.command("stop")
def stop(
    pid: int = typer.Argument(..., help="Launcher pid recorded in cron-runner.pid"),
    name: str = typer.Option(
        RunnerInstallConfig().worker_process_name, "--name", help="Worker process name"
    ),
    timeout: float = typer.Option(StopConfig().timeout, "--timeout", "-t", help="Seconds to wait"),
    poll_interval: float = typer.Option(
        StopConfig().poll_interval, "--poll-interval", help="Seconds between checks"
    ),
    sig: str = typer.Option(StopConfig().signal, "--signal", help="Signal sent to the worker"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Gracefully stop the worker under a launcher and wait for the launcher to exit."""
    setup_logging(verbose)

    try:
        signum = resolve_signal(sig)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    try:
        stop_runner(pid, name, sig=signum, timeout=timeout, poll_interval=poll_interval)
    except CronRunnerError as e:
        logger.error(str(e))
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
