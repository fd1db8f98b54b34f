"""Graceful stop of a runner tree, executed on the runner's host.

The graceful-shutdown handler lives in the worker process beneath the
launcher, so the signal goes to that descendant while the wait is on the
launcher pid that the state files record.
"""

from __future__ import annotations

import os
import signal
import time
from pathlib import Path

import psutil
from loguru import logger

from cronrunner.config import CronRunnerError


class StopFailure(CronRunnerError):
    """Stop was requested but termination was not confirmed."""

    pass


def check_pid(pid: int) -> bool:
    """Check if a process with given PID is running (zombies count as gone)."""
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def _process_names(process: psutil.Process) -> set[str]:
    names = set()
    try:
        names.add(process.name())
        cmdline = process.cmdline()
        if cmdline:
            names.add(Path(cmdline[0]).name)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        pass
    return names


def find_descendant_by_name(root_pid: int, name: str) -> int | None:
    """Find the first descendant of root_pid whose process name is name."""
    try:
        root = psutil.Process(root_pid)
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return None

    for child in children:
        if name in _process_names(child):
            return child.pid
    return None


def resolve_signal(sig: str | int) -> signal.Signals:
    """Turn 'INT', 'SIGINT' or 2 into a signal."""
    if isinstance(sig, int):
        return signal.Signals(sig)
    name = sig.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"Unknown signal: {sig}") from None


def stop_runner(
    root_pid: int,
    name: str,
    sig: signal.Signals = signal.SIGINT,
    timeout: float = 600,
    poll_interval: float = 5.0,
) -> None:
    """Signal the named worker under root_pid and wait for root_pid to exit.

    Raises:
        StopFailure: No matching descendant, or root_pid still alive at timeout
    """
    target = find_descendant_by_name(root_pid, name)
    if target is None:
        raise StopFailure(f"No '{name}' process found under pid {root_pid}")

    logger.info(f"Sending {sig.name} to {name} (pid {target}) under launcher {root_pid}")
    try:
        os.kill(target, sig)
    except ProcessLookupError:
        logger.warning(f"Process {target} exited before it could be signalled")

    deadline = time.monotonic() + timeout
    while check_pid(root_pid):
        if time.monotonic() >= deadline:
            raise StopFailure(f"Launcher pid {root_pid} still running after {timeout}s")
        time.sleep(poll_interval)

    logger.info(f"Launcher pid {root_pid} exited")
