"""Lifecycle supervisor for a remote CI runner.

One invocation reads the runner's state, decides what to do, talks to the
remote host if needed and returns a single outcome. Nothing stays resident:
cron calls us again on the next interval, and the liveness probe is what
makes repeated calls safe.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from cronrunner.config import ConfigurationError, CronRunnerError, ModeError
from cronrunner.core.log_utils import (
    latest_runner_log,
    refresh_alias,
    runner_log_path,
    tail_lines,
)
from cronrunner.core.registry import Registry
from cronrunner.core.remote import RemoteChannel, TransientRemoteError
from cronrunner.core.state import StateStore
from cronrunner.core.stopper import StopFailure
from cronrunner.models import (
    Action,
    CronRunnerConfig,
    ListedRunner,
    Outcome,
    ProbeResult,
    RunnerContext,
    RunnerStatus,
    SupervisorResult,
)


class NotActiveError(CronRunnerError):
    """Stop requested for a runner with no live process."""

    pass


class LifecycleSupervisor:
    """Decides and carries out one lifecycle action for one runner."""

    def __init__(
        self,
        config: CronRunnerConfig,
        registry: Registry,
        remote: RemoteChannel,
        user: str | None = None,
    ):
        self.config = config
        self.registry = registry
        self.remote = remote
        self.user = user

    def run(self, ctx: RunnerContext) -> SupervisorResult:
        """Run one supervisor pass."""
        if ctx.action == Action.LIST:
            return self.list_runners()

        self._resolve_identity(ctx)
        self._validate(ctx)

        store = StateStore(ctx.path)
        status = store.status()
        logger.debug(f"Runner '{ctx.name}' at {ctx.path}: status={status.value}")

        if status == RunnerStatus.STOPPED:
            if ctx.action == Action.RESUME:
                store.set_status(RunnerStatus.RESUMING)
                logger.info(f"Hold released for '{ctx.name}'")
                return SupervisorResult(
                    Outcome.HOLD_RELEASED,
                    f"Hold released for '{ctx.name}'; the next cron pass will start it",
                )
            if ctx.action != Action.INFO:
                return SupervisorResult(
                    Outcome.HELD,
                    f"Runner '{ctx.name}' is stopped; use --resume to release the hold",
                )
        elif ctx.action == Action.RESUME:
            return SupervisorResult(
                Outcome.NO_HOLD, f"Runner '{ctx.name}' is not on hold ({status.value})"
            )

        if ctx.action == Action.INFO:
            return self.info(ctx, store)

        artifact = ctx.path / self.config.runner.config_artifact
        if not artifact.exists():
            raise ConfigurationError(
                f"Runner at {ctx.path} is not configured: {artifact} is missing. "
                "Run the runner's config step first."
            )

        broken = False
        host, pid = store.host(), store.pid()
        if host is not None and pid is not None:
            probe = self.remote.probe_liveness(host, pid, self.user)
            logger.debug(f"Probe of pid {pid} on {host}: {probe.value}")

            if probe == ProbeResult.UNREACHABLE:
                raise TransientRemoteError(
                    f"Could not probe runner '{ctx.name}' on {host}; will retry next pass"
                )

            if probe == ProbeResult.ALIVE:
                if ctx.action == Action.STOP:
                    return self._stop(ctx, store, host, pid)
                return SupervisorResult(
                    Outcome.ALREADY_ACTIVE,
                    f"Runner '{ctx.name}' already active (pid {pid} on {host})",
                    record=store.load(ctx.name),
                )

            logger.warning(
                f"Runner '{ctx.name}' is broken (pid {pid} on {host} is gone), restarting"
            )
            store.clear_process()
            broken = True

        if ctx.action == Action.STOP:
            raise NotActiveError(f"Runner '{ctx.name}' is not active; nothing to stop")

        return self._start(ctx, restart=broken)

    # Identity and validation

    def _resolve_identity(self, ctx: RunnerContext) -> None:
        if ctx.path is None and ctx.name is None:
            raise ConfigurationError("A runner path or --name is required")

        if ctx.path is None:
            path = self.registry.lookup(ctx.name)
            if path is None:
                raise ConfigurationError(f"No runner registered under name '{ctx.name}'")
            ctx.path = path

        ctx.path = Path(ctx.path).expanduser().absolute()

        if ctx.name is None:
            ctx.name = self.registry.name_for(ctx.path) or ctx.path.name

    def _validate(self, ctx: RunnerContext) -> None:
        if not ctx.path.is_dir():
            raise ConfigurationError(f"Runner path does not exist: {ctx.path}")

        entrypoint = ctx.path / self.config.runner.entrypoint
        if not entrypoint.is_file():
            raise ConfigurationError(
                f"{ctx.path} is not a runner installation ({self.config.runner.entrypoint} missing)"
            )

        if ctx.action == Action.ENSURE_RUNNING:
            if ctx.interactive and not ctx.debug:
                raise ModeError(
                    "Starting runners is cron-only; set CRON_RUNNER_DEBUG=1 to run it interactively"
                )
            if not ctx.machine:
                raise ConfigurationError("--machine is required to start a runner")
            if ctx.machine not in self.config.machines:
                known = ", ".join(sorted(self.config.machines))
                raise ConfigurationError(f"Unknown machine '{ctx.machine}' (known: {known})")

    # Actions

    def _stop(self, ctx: RunnerContext, store: StateStore, host: str, pid: int) -> SupervisorResult:
        logger.info(f"Stopping runner '{ctx.name}' (pid {pid} on {host})")
        returncode = self.remote.stop(host, pid)
        if returncode != 0:
            raise StopFailure(
                f"Remote stop of runner '{ctx.name}' (pid {pid} on {host}) "
                f"did not confirm termination (exit {returncode})"
            )

        store.clear_process()
        store.set_status(RunnerStatus.STOPPED)
        logger.info(f"Runner '{ctx.name}' stopped and held")
        return SupervisorResult(Outcome.STOPPED, f"Runner '{ctx.name}' stopped")

    def _start(self, ctx: RunnerContext, restart: bool = False) -> SupervisorResult:
        address = self.config.machines[ctx.machine]

        try:
            self.registry.register(ctx.name, ctx.path)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        refresh_alias(self.config.log_dir, ctx.name, ctx.path)

        log_file = runner_log_path(self.config.log_dir, ctx.name)
        logger.info(f"Launching runner '{ctx.name}' on {ctx.machine} ({address})")
        self.remote.launch(address, ctx.path, log_file)

        outcome = Outcome.RESTARTED if restart else Outcome.STARTED
        verb = "restarted" if restart else "started"
        return SupervisorResult(
            outcome,
            f"Runner '{ctx.name}' {verb} on {ctx.machine}; logging to {log_file}",
            log_file=log_file,
        )

    def info(self, ctx: RunnerContext, store: StateStore) -> SupervisorResult:
        """Snapshot of recorded state. No probe, no mutation."""
        record = store.load(ctx.name)
        result = SupervisorResult(Outcome.INFO, f"Runner '{ctx.name}'", record=record)

        if record.status == RunnerStatus.STARTED:
            log_file = latest_runner_log(self.config.log_dir, ctx.name)
            if log_file is not None:
                result.log_file = log_file
                result.log_tail = tail_lines(log_file, self.config.info_tail_lines)
        return result

    def list_runners(self) -> SupervisorResult:
        """Registered runners with their local state, possibly stale."""
        runners = []
        for entry in self.registry.entries():
            store = StateStore(entry.path)
            try:
                runners.append(
                    ListedRunner(
                        name=entry.name,
                        path=entry.path,
                        status=store.status().value,
                        pid=store.pid(),
                        host=store.host(),
                    )
                )
            except (ConfigurationError, OSError) as e:
                logger.debug(f"Could not read state of '{entry.name}': {e}")
                runners.append(ListedRunner(name=entry.name, path=entry.path, status="?"))

        return SupervisorResult(
            Outcome.LISTED, f"{len(runners)} registered runner(s)", runners=runners
        )
