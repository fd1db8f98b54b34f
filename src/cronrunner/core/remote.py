"""Remote command execution over ssh.

The channel relies on ssh for authentication and host key checking. Every
command is bounded by an explicit timeout.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from loguru import logger

from cronrunner.config import CronRunnerError
from cronrunner.models import CronRunnerConfig, ProbeResult

# ssh reserves exit code 255 for its own failures
SSH_FAILURE_EXIT = 255

REMOTE_MODULE = "cronrunner.cli.remote"

# Appears in the launcher's argv, used to recognise it in the process list
LAUNCHER_MARKER = f"{REMOTE_MODULE} launch"


class TransientRemoteError(CronRunnerError):
    """A remote command could not be executed. The next cron pass retries."""

    trips_breaker = False


class RemoteTimeout(TransientRemoteError):
    """A remote command exceeded its timeout."""

    pass


def parse_process_list(output: str) -> dict[int, str]:
    """Parse ``ps -o pid=,args=`` output into {pid: args}."""
    processes: dict[int, str] = {}
    for line in output.splitlines():
        parts = line.strip().split(maxsplit=1)
        if not parts:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        processes[pid] = parts[1] if len(parts) > 1 else ""
    return processes


class RemoteChannel:
    """Runs cron-runner's remote helpers on a destination host."""

    def __init__(self, config: CronRunnerConfig):
        self.config = config

    def _remote_argv(self, *args: str) -> list[str]:
        return [self.config.remote_python, "-m", REMOTE_MODULE, *args]

    def run(
        self,
        host: str,
        argv: list[str],
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command on host.

        Args:
            host: ssh destination
            argv: Remote command, quoted before being handed to the remote shell
            timeout: Seconds before giving up (defaults to remote_timeout)

        Returns:
            The completed process, whatever the remote exit code

        Raises:
            RemoteTimeout: The command did not finish in time
            TransientRemoteError: ssh itself failed
        """
        timeout = timeout or self.config.remote_timeout
        command = shlex.join(argv)
        ssh = [*self.config.ssh_command, host, command]
        logger.debug(f"ssh {host}: {command}")

        try:
            proc = subprocess.run(
                ssh,
                text=True,
                capture_output=True,
                check=False,
                timeout=timeout,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeout(
                f"Remote command on {host} timed out after {timeout}s: {command}"
            ) from exc
        except OSError as exc:
            raise TransientRemoteError(f"Could not run ssh to {host}: {exc}") from exc

        if proc.returncode == SSH_FAILURE_EXIT:
            stderr = (proc.stderr or "").strip()
            raise TransientRemoteError(f"ssh to {host} failed: {stderr or 'exit 255'}")

        return proc

    def probe_liveness(self, host: str, pid: int, user: str | None = None) -> ProbeResult:
        """Check whether the launcher with pid is still running on host.

        Without a user, processes are filtered by the user ssh logged in as.
        """
        if user:
            argv = ["ps", "-u", user, "-o", "pid=,args="]
        else:
            argv = ["sh", "-c", 'ps -u "$(id -un)" -o pid=,args=']
        try:
            proc = self.run(host, argv)
        except RemoteTimeout:
            raise
        except TransientRemoteError as e:
            logger.warning(f"Liveness probe of {host} failed: {e}")
            return ProbeResult.UNREACHABLE

        if proc.returncode != 0:
            logger.warning(
                f"Liveness probe on {host} exited {proc.returncode}: {(proc.stderr or '').strip()}"
            )
            return ProbeResult.UNREACHABLE

        args = parse_process_list(proc.stdout or "").get(pid)
        if args is not None and LAUNCHER_MARKER in args:
            return ProbeResult.ALIVE
        return ProbeResult.DEAD

    def launch(self, host: str, path: Path, log_file: Path | None) -> None:
        """Start the launcher on host, detached from this ssh session."""
        argv = self._remote_argv(
            "launch", str(path), "--entrypoint", self.config.runner.entrypoint
        )
        if log_file is not None:
            argv += ["--log", str(log_file)]

        # The remote shell returns as soon as the launcher is in the background
        command = f"nohup setsid {shlex.join(argv)} </dev/null >/dev/null 2>&1 &"
        proc = self.run(host, ["sh", "-c", command])

        if proc.returncode != 0:
            raise TransientRemoteError(
                f"Launch on {host} exited {proc.returncode}: {(proc.stderr or '').strip()}"
            )
        logger.info(f"Launcher started on {host} for {path}")

    def stop(self, host: str, pid: int) -> int:
        """Run the stopper against the launcher pid and return its exit code."""
        stop = self.config.stop
        argv = self._remote_argv(
            "stop",
            str(pid),
            "--name",
            self.config.runner.worker_process_name,
            "--timeout",
            str(stop.timeout),
            "--poll-interval",
            str(stop.poll_interval),
            "--signal",
            stop.signal,
        )
        proc = self.run(host, argv, timeout=stop.timeout + self.config.remote_timeout)

        output = "\n".join(s.strip() for s in (proc.stdout, proc.stderr) if s and s.strip())
        if output:
            logger.debug(f"Stopper output from {host}:\n{output}")
        return proc.returncode
