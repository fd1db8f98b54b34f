"""Log file helpers for cron-runner."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

from loguru import logger

LOG_TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"


def runner_log_path(log_dir: Path, name: str, now: datetime | None = None) -> Path:
    """Dated log file for one launch of a runner.

    Example: <log_dir>/my-runner.2024-03-01_120000.log
    """
    now = now or datetime.now()
    return log_dir / f"{name}.{now.strftime(LOG_TIMESTAMP_FORMAT)}.log"


def get_runner_logs(log_dir: Path, name: str) -> list[Path]:
    """All dated log files of a runner, oldest first."""
    if not log_dir.is_dir():
        return []
    prefix = f"{name}."
    files = []
    for f in log_dir.glob(f"{name}.*.log"):
        stamp = f.name[len(prefix):-len(".log")]
        try:
            datetime.strptime(stamp, LOG_TIMESTAMP_FORMAT)
        except ValueError:
            continue
        files.append(f)
    # The timestamp format sorts lexically
    return sorted(files)


def latest_runner_log(log_dir: Path, name: str) -> Path | None:
    """The most recent log file of a runner."""
    logs = get_runner_logs(log_dir, name)
    return logs[-1] if logs else None


def tail_lines(path: Path, lines: int = 20, block_size: int = 8192) -> list[str]:
    """Last lines of a file, read backwards in blocks."""
    if lines <= 0:
        return []

    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        data = b""
        while end > 0 and data.count(b"\n") <= lines:
            start = max(0, end - block_size)
            f.seek(start)
            data = f.read(end - start) + data
            end = start

    text = data.decode("utf-8", errors="replace")
    return text.splitlines()[-lines:]


def refresh_alias(log_dir: Path, name: str, target: Path) -> Path:
    """Point <log_dir>/<name> at the runner path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    alias = log_dir / name

    if alias.is_symlink():
        if Path(os.readlink(alias)) == target:
            return alias
        alias.unlink()
    elif alias.exists():
        logger.warning(f"Not replacing non-symlink {alias}")
        return alias

    alias.symlink_to(target, target_is_directory=True)
    logger.debug(f"Alias {alias} -> {target}")
    return alias
