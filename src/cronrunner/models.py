"""Pydantic models for cron-runner configuration and state."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class RunnerStatus(str, Enum):
    """Lifecycle status of a runner."""

    CONFIGURED = "configured"  # No status file: never started, or hold files removed
    STARTED = "started"
    RESUMING = "resuming"  # Hold released, next cron pass starts the runner
    STOPPED = "stopped"  # Hold: automatic restarts suppressed


class Action(str, Enum):
    """What a single supervisor invocation was asked to do."""

    ENSURE_RUNNING = "ensure-running"
    INFO = "info"
    STOP = "stop"
    RESUME = "resume"
    LIST = "list"


class ProbeResult(str, Enum):
    """Result of a remote liveness probe."""

    ALIVE = "alive"
    DEAD = "dead"
    UNREACHABLE = "unreachable"


class Outcome(str, Enum):
    """Terminal outcome of a supervisor invocation."""

    ALREADY_ACTIVE = "already_active"
    STARTED = "started"
    RESTARTED = "restarted"  # Recorded pid was dead, fresh launch issued
    STOPPED = "stopped"
    HELD = "held"
    HOLD_RELEASED = "hold_released"
    NO_HOLD = "no_hold"
    INFO = "info"
    LISTED = "listed"


DEFAULT_MACHINES: dict[str, str] = {
    "derecho": "derecho.hpc.ucar.edu",
    "casper": "casper.hpc.ucar.edu",
}


class RunnerInstallConfig(BaseModel):
    """Layout of a runner installation directory."""

    entrypoint: str = "run.sh"
    config_artifact: str = ".runner"  # Written by the runner's own config step
    worker_process_name: str = "Runner.Listener"


class StopConfig(BaseModel):
    """Remote stop behaviour."""

    timeout: int = 600  # seconds to wait for the launcher to exit
    poll_interval: float = 5.0
    signal: str = "SIGINT"

    @field_validator("signal")
    @classmethod
    def validate_signal(cls, v: str) -> str:
        v = v.upper()
        if not v.startswith("SIG"):
            v = f"SIG{v}"
        return v


class CronRunnerConfig(BaseModel):
    """Main cron-runner configuration."""

    log_dir: Path = Field(default_factory=lambda: Path.home() / ".cron-runner" / "logs")
    registry_file: Path | None = None  # Defaults to <log_dir>/registry
    sentinel_file: Path = Field(default_factory=lambda: Path.home() / ".cron-runner" / "ERROR")

    machines: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MACHINES))
    ssh_command: list[str] = Field(
        default_factory=lambda: ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=30"]
    )
    remote_timeout: int = 120  # seconds, bounds every remote command
    remote_python: str = Field(default_factory=lambda: sys.executable)
    remote_user: str | None = None  # ps filter on the remote host; None = the ssh login user

    stop: StopConfig = Field(default_factory=StopConfig)
    runner: RunnerInstallConfig = Field(default_factory=RunnerInstallConfig)

    info_tail_lines: int = 20

    @field_validator("remote_timeout")
    @classmethod
    def validate_remote_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("remote_timeout must be positive")
        return v

    def get_registry_file(self) -> Path:
        """Get the registry file path."""
        return self.registry_file or self.log_dir / "registry"

    def get_run_log(self) -> Path:
        """Get the supervisor's own append-only run log."""
        return self.log_dir / "cron-runner.log"


class RunnerRecord(BaseModel):
    """Identity and persisted lifecycle state of one runner."""

    name: str
    path: Path
    status: RunnerStatus = RunnerStatus.CONFIGURED
    host: str | None = None
    pid: int | None = None

    @property
    def has_process(self) -> bool:
        """Whether a launcher host/pid pair is on record."""
        return self.host is not None and self.pid is not None


class RegistryEntry(BaseModel):
    """A name -> path mapping in the registry."""

    name: str
    path: Path


@dataclass
class RunnerContext:
    """Everything one invocation knows about its target and mode."""

    action: Action = Action.ENSURE_RUNNING
    path: Path | None = None
    name: str | None = None
    machine: str | None = None
    interactive: bool = False
    debug: bool = False


@dataclass
class ListedRunner:
    """A registry entry with its opportunistically read local state."""

    name: str
    path: Path
    status: str
    pid: int | None = None
    host: str | None = None


@dataclass
class SupervisorResult:
    """Result of one supervisor pass."""

    outcome: Outcome
    message: str
    record: RunnerRecord | None = None
    runners: list[ListedRunner] = field(default_factory=list)
    log_file: Path | None = None
    log_tail: list[str] = field(default_factory=list)
