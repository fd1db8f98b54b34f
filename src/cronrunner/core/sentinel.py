"""One-shot error sentinel for unattended runs.

The first fatal error of a cron invocation is written here. While the file
exists, cron invocations do nothing. An operator deletes it after fixing the
problem.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

from loguru import logger


class ErrorSentinel:
    """Manual circuit breaker backed by a single file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> str | None:
        try:
            return self.path.read_text()
        except FileNotFoundError:
            return None

    def trip(self, message: str) -> bool:
        """Record an error unless one is already recorded.

        Returns:
            True if this call created the sentinel
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # O_EXCL: two overlapping cron runs cannot both write it
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w") as f:
            f.write(f"[{datetime.now().isoformat()}] {message}\n")
            f.write(f"Remove {self.path} to re-enable cron-runner.\n")

        logger.error(f"Error sentinel written to {self.path}")
        return True

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True
