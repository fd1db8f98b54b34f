"""File-backed runner state.

Each runner directory holds up to three one-line files:

    cron-runner.status   configured|started|resuming|stopped (absent = configured)
    cron-runner.pid      pid of the remote launcher
    cron-runner.host     host the launcher runs on

The supervisor owns status transitions, the launcher is the only writer of
pid/host. Writes go through a temp file and os.replace so a concurrent reader
never sees a half-written value.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from loguru import logger

from cronrunner.config import (
    STATE_HOST_FILE,
    STATE_PID_FILE,
    STATE_STATUS_FILE,
    ConfigurationError,
)
from cronrunner.models import RunnerRecord, RunnerStatus


def atomic_write_text(path: Path, text: str) -> None:
    """Replace a file's contents in one step."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class StateStore:
    """Read/write access to one runner's state files."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def status_file(self) -> Path:
        return self.path / STATE_STATUS_FILE

    @property
    def pid_file(self) -> Path:
        return self.path / STATE_PID_FILE

    @property
    def host_file(self) -> Path:
        return self.path / STATE_HOST_FILE

    def _read(self, path: Path) -> str | None:
        try:
            value = path.read_text().strip()
        except FileNotFoundError:
            return None
        return value or None

    def _write(self, path: Path, value: str) -> None:
        atomic_write_text(path, f"{value}\n")

    # Status

    def status(self) -> RunnerStatus:
        """Current status. A missing status file means configured."""
        value = self._read(self.status_file)
        if value is None:
            return RunnerStatus.CONFIGURED
        try:
            return RunnerStatus(value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown status '{value}' in {self.status_file}"
            ) from None

    def set_status(self, status: RunnerStatus) -> None:
        """Persist a status. Configured is represented by removing the file."""
        if status == RunnerStatus.CONFIGURED:
            self.status_file.unlink(missing_ok=True)
        else:
            self._write(self.status_file, status.value)
        logger.debug(f"{self.path}: status -> {status.value}")

    # Process identity

    def pid(self) -> int | None:
        value = self._read(self.pid_file)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Invalid pid '{value}' in {self.pid_file}") from None

    def host(self) -> str | None:
        return self._read(self.host_file)

    def record_process(self, host: str, pid: int) -> None:
        """Record where the launcher runs."""
        self._write(self.host_file, host)
        self._write(self.pid_file, str(pid))
        logger.debug(f"{self.path}: recorded pid {pid} on {host}")

    def clear_process(self) -> None:
        """Forget the launcher's pid/host."""
        self.pid_file.unlink(missing_ok=True)
        self.host_file.unlink(missing_ok=True)
        logger.debug(f"{self.path}: cleared pid/host")

    def load(self, name: str) -> RunnerRecord:
        """Read everything into a RunnerRecord."""
        return RunnerRecord(
            name=name,
            path=self.path,
            status=self.status(),
            host=self.host(),
            pid=self.pid(),
        )
