"""Runner launcher, executed on the runner's host.

Records this process as the runner's bookkeeping pid, then runs the runner
entrypoint as a child in its own session and stays alive until it exits. A
crash right after launch leaves status=started with a pid the next probe
finds dead, which triggers a restart.
"""

from __future__ import annotations

import os
import signal
import socket
import subprocess
from datetime import datetime
from pathlib import Path
from typing import IO

from loguru import logger

from cronrunner.config import ConfigurationError
from cronrunner.core.state import StateStore
from cronrunner.models import RunnerInstallConfig, RunnerStatus

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def _open_log(log_file: Path, entrypoint: Path) -> IO[str]:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    f = open(log_file, "a")
    timestamp = datetime.now().isoformat()
    f.write(f"\n{'='*60}\n")
    f.write(f"[{timestamp}] Starting runner on {socket.gethostname()} (pid {os.getpid()})\n")
    f.write(f"Command: {entrypoint}\n")
    f.write(f"{'='*60}\n\n")
    f.flush()
    return f


def launch_runner(
    path: Path,
    log_file: Path | None = None,
    runner: RunnerInstallConfig | None = None,
) -> int:
    """Record identity and run the runner until it exits.

    Args:
        path: Runner installation directory
        log_file: Where the runner's output goes; inherited when None
        runner: Installation layout

    Returns:
        The runner's exit code
    """
    runner = runner or RunnerInstallConfig()
    path = Path(path)
    store = StateStore(path)

    store.set_status(RunnerStatus.STARTED)
    store.record_process(socket.gethostname(), os.getpid())

    entrypoint = path / runner.entrypoint
    if not entrypoint.is_file():
        raise ConfigurationError(f"Runner entrypoint not found: {entrypoint}")

    log_handle = _open_log(log_file, entrypoint) if log_file is not None else None
    process: subprocess.Popen[bytes] | None = None
    pending: list[int] = []

    def forward(signum: int, frame: object) -> None:
        if process is None:
            # Not spawned yet; delivered right after Popen
            pending.append(signum)
            return
        logger.info(f"Forwarding signal {signum} to runner process group")
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            pass

    previous = {sig: signal.signal(sig, forward) for sig in FORWARDED_SIGNALS}
    try:
        process = subprocess.Popen(
            [str(entrypoint)],
            cwd=path,
            stdout=log_handle,
            stderr=subprocess.STDOUT if log_handle else None,
            start_new_session=True,
        )
        logger.info(f"Runner started (pid {process.pid}) under launcher {os.getpid()}")

        for signum in pending:
            forward(signum, None)

        returncode = process.wait()
        logger.info(f"Runner exited with code {returncode}")
        return returncode
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if log_handle:
            log_handle.close()
