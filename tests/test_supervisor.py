"""Tests for the lifecycle supervisor decision logic.

The remote channel is replaced by a fake whose launch() does what the remote
launcher would do on a shared filesystem: write status/pid/host.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from cronrunner.config import ConfigurationError, ModeError
from cronrunner.core.registry import Registry
from cronrunner.core.remote import RemoteTimeout, TransientRemoteError
from cronrunner.core.state import StateStore
from cronrunner.core.stopper import StopFailure
from cronrunner.core.supervisor import LifecycleSupervisor, NotActiveError
from cronrunner.models import (
    Action,
    CronRunnerConfig,
    Outcome,
    ProbeResult,
    RunnerContext,
    RunnerStatus,
)


class FakeRemote:
    """Stands in for RemoteChannel."""

    def __init__(self):
        self.alive: set[tuple[str, int]] = set()
        self.unreachable = False
        self.stop_exit = 0
        self.launches: list[tuple[str, Path, Path]] = []
        self.probes: list[tuple[str, int, str]] = []
        self.stops: list[tuple[str, int]] = []
        self.next_pid = 1000

    def probe_liveness(self, host, pid, user):
        self.probes.append((host, pid, user))
        if self.unreachable:
            return ProbeResult.UNREACHABLE
        return ProbeResult.ALIVE if (host, pid) in self.alive else ProbeResult.DEAD

    def launch(self, host, path, log_file):
        self.launches.append((host, path, log_file))
        self.next_pid += 1
        store = StateStore(path)
        store.set_status(RunnerStatus.STARTED)
        store.record_process(host, self.next_pid)
        self.alive.add((host, self.next_pid))

    def stop(self, host, pid):
        self.stops.append((host, pid))
        if self.stop_exit == 0:
            self.alive.discard((host, pid))
        return self.stop_exit


@pytest.fixture
def runner_dir(tmp_path):
    """A configured runner installation."""
    path = tmp_path / "runners" / "my-runner"
    path.mkdir(parents=True)
    (path / "run.sh").write_text("#!/bin/sh\nexit 0\n")
    (path / "run.sh").chmod(0o755)
    (path / ".runner").write_text("{}")
    return path


@pytest.fixture
def config(tmp_path):
    return CronRunnerConfig(
        log_dir=tmp_path / "logs",
        sentinel_file=tmp_path / "ERROR",
        machines={"derecho": "derecho.example.org", "casper": "casper.example.org"},
    )


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def registry(config):
    return Registry(config.get_registry_file())


@pytest.fixture
def supervisor(config, registry, remote):
    return LifecycleSupervisor(config=config, registry=registry, remote=remote, user="alice")


def cron(path=None, name=None, machine="derecho", action=Action.ENSURE_RUNNING):
    return RunnerContext(action=action, path=path, name=name, machine=machine, interactive=False)


def interactive(action, path=None, name=None):
    return RunnerContext(action=action, path=path, name=name, interactive=True)


class TestFreshStart:
    """Runner with no status file."""

    def test_fresh_runner_is_started(self, supervisor, remote, registry, runner_dir):
        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.STARTED
        assert len(remote.launches) == 1
        host, path, log_file = remote.launches[0]
        assert host == "derecho.example.org"
        assert path == runner_dir
        assert log_file.name.startswith("my-runner.")

        store = StateStore(runner_dir)
        assert store.status() == RunnerStatus.STARTED
        assert store.pid() is not None
        assert store.host() == "derecho.example.org"
        assert registry.lookup("my-runner") == runner_dir

    def test_fresh_start_does_not_probe(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))
        assert remote.probes == []

    def test_start_creates_alias(self, supervisor, config, runner_dir):
        supervisor.run(cron(runner_dir))
        alias = config.log_dir / "my-runner"
        assert alias.is_symlink()
        assert alias.resolve() == runner_dir.resolve()

    def test_start_uses_machine_address(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir, machine="casper"))
        assert remote.launches[0][0] == "casper.example.org"


class TestIdempotence:
    """Repeated cron passes against a live runner."""

    def test_second_pass_is_noop(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))
        store = StateStore(runner_dir)
        before = store.load("my-runner")

        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.ALREADY_ACTIVE
        assert len(remote.launches) == 1
        assert store.load("my-runner") == before

    def test_probe_uses_recorded_host_and_user(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)
        remote.alive.add(("node7", 4242))

        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.ALREADY_ACTIVE
        assert remote.probes == [("node7", 4242, "alice")]


class TestBrokenRecovery:
    """Recorded pid that is no longer running."""

    def test_dead_pid_triggers_one_restart(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)

        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.RESTARTED
        assert len(remote.launches) == 1
        assert store.pid() != 4242
        assert store.host() == "derecho.example.org"
        assert store.status() == RunnerStatus.STARTED

    def test_stale_fields_cleared_before_launch(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)

        seen = []
        original = remote.launch

        def launch(host, path, log_file):
            seen.append((store.host(), store.pid()))
            original(host, path, log_file)

        remote.launch = launch
        supervisor.run(cron(runner_dir))

        assert seen == [(None, None)]

    def test_unreachable_probe_mutates_nothing(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)
        remote.unreachable = True

        with pytest.raises(TransientRemoteError):
            supervisor.run(cron(runner_dir))

        assert store.pid() == 4242
        assert store.host() == "node7"
        assert remote.launches == []

    def test_probe_timeout_propagates(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)

        with patch.object(remote, "probe_liveness", side_effect=RemoteTimeout("timed out")):
            with pytest.raises(RemoteTimeout):
                supervisor.run(cron(runner_dir))

        assert store.pid() == 4242


class TestHold:
    """Stop, hold and resume."""

    def test_stop_alive_runner(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))
        store = StateStore(runner_dir)
        host, pid = store.host(), store.pid()

        result = supervisor.run(interactive(Action.STOP, runner_dir))

        assert result.outcome == Outcome.STOPPED
        assert remote.stops == [(host, pid)]
        assert store.status() == RunnerStatus.STOPPED
        assert store.pid() is None
        assert store.host() is None

    def test_cron_is_noop_while_held(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))
        supervisor.run(interactive(Action.STOP, runner_dir))
        remote.probes.clear()

        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.HELD
        assert len(remote.launches) == 1
        assert remote.probes == []
        assert StateStore(runner_dir).status() == RunnerStatus.STOPPED

    def test_resume_does_not_start(self, supervisor, remote, runner_dir):
        StateStore(runner_dir).set_status(RunnerStatus.STOPPED)

        result = supervisor.run(interactive(Action.RESUME, runner_dir))

        assert result.outcome == Outcome.HOLD_RELEASED
        assert remote.launches == []
        assert StateStore(runner_dir).status() == RunnerStatus.RESUMING

    def test_resume_then_cron_starts(self, supervisor, remote, runner_dir):
        StateStore(runner_dir).set_status(RunnerStatus.STOPPED)
        supervisor.run(interactive(Action.RESUME, runner_dir))

        result = supervisor.run(cron(runner_dir))

        assert result.outcome == Outcome.STARTED
        assert len(remote.launches) == 1
        assert StateStore(runner_dir).status() == RunnerStatus.STARTED

    def test_resume_without_hold(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))

        result = supervisor.run(interactive(Action.RESUME, runner_dir))

        assert result.outcome == Outcome.NO_HOLD
        assert StateStore(runner_dir).status() == RunnerStatus.STARTED

    def test_stop_failure_leaves_state(self, supervisor, remote, runner_dir):
        supervisor.run(cron(runner_dir))
        store = StateStore(runner_dir)
        pid = store.pid()
        remote.stop_exit = 1

        with pytest.raises(StopFailure):
            supervisor.run(interactive(Action.STOP, runner_dir))

        assert store.status() == RunnerStatus.STARTED
        assert store.pid() == pid

    def test_stop_without_process_is_distinct_error(self, supervisor, remote, runner_dir):
        with pytest.raises(NotActiveError):
            supervisor.run(interactive(Action.STOP, runner_dir))
        assert remote.stops == []
        assert StateStore(runner_dir).status() == RunnerStatus.CONFIGURED

    def test_stop_with_dead_pid_does_not_start(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)

        with pytest.raises(NotActiveError):
            supervisor.run(interactive(Action.STOP, runner_dir))

        assert remote.launches == []
        assert remote.stops == []
        assert store.pid() is None
        assert store.status() == RunnerStatus.STARTED

    def test_stop_while_held_reports_hold(self, supervisor, remote, runner_dir):
        StateStore(runner_dir).set_status(RunnerStatus.STOPPED)
        result = supervisor.run(interactive(Action.STOP, runner_dir))
        assert result.outcome == Outcome.HELD
        assert remote.stops == []


class TestInfoAndList:
    """Read-only actions."""

    def test_info_does_not_probe(self, supervisor, remote, runner_dir):
        store = StateStore(runner_dir)
        store.set_status(RunnerStatus.STARTED)
        store.record_process("node7", 4242)

        result = supervisor.run(interactive(Action.INFO, runner_dir))

        assert result.outcome == Outcome.INFO
        assert result.record.pid == 4242
        assert result.record.host == "node7"
        assert remote.probes == []
        assert remote.launches == []

    def test_info_tails_latest_log(self, supervisor, config, runner_dir):
        config.log_dir.mkdir(parents=True)
        (config.log_dir / "my-runner.2024-01-01_000000.log").write_text("old\n")
        lines = "".join(f"line {i}\n" for i in range(50))
        (config.log_dir / "my-runner.2024-02-01_000000.log").write_text(lines)
        StateStore(runner_dir).set_status(RunnerStatus.STARTED)

        result = supervisor.run(interactive(Action.INFO, runner_dir))

        assert result.log_file.name == "my-runner.2024-02-01_000000.log"
        assert result.log_tail == [f"line {i}" for i in range(30, 50)]

    def test_info_when_held(self, supervisor, runner_dir):
        StateStore(runner_dir).set_status(RunnerStatus.STOPPED)
        result = supervisor.run(interactive(Action.INFO, runner_dir))
        assert result.outcome == Outcome.INFO
        assert result.record.status == RunnerStatus.STOPPED
        assert result.log_tail == []

    def test_list_reflects_registry(self, supervisor, registry, tmp_path, runner_dir):
        other = tmp_path / "other"
        other.mkdir()
        StateStore(runner_dir).set_status(RunnerStatus.STOPPED)
        registry.register("my-runner", runner_dir)
        registry.register("other", other)

        result = supervisor.run(RunnerContext(action=Action.LIST))

        assert result.outcome == Outcome.LISTED
        listed = {r.name: r for r in result.runners}
        assert set(listed) == {"my-runner", "other"}
        assert listed["my-runner"].status == "stopped"
        assert listed["other"].status == "configured"

    def test_list_tolerates_bad_state(self, supervisor, registry, runner_dir):
        (runner_dir / "cron-runner.status").write_text("bogus\n")
        registry.register("my-runner", runner_dir)

        result = supervisor.run(RunnerContext(action=Action.LIST))

        assert result.runners[0].status == "?"


class TestIdentityAndValidation:
    """Path/name resolution and input errors."""

    def test_lookup_by_name(self, supervisor, remote, registry, runner_dir):
        registry.register("ci", runner_dir)

        result = supervisor.run(cron(name="ci"))

        assert result.outcome == Outcome.STARTED
        assert remote.launches[0][1] == runner_dir

    def test_registered_name_used_for_path(self, supervisor, remote, registry, runner_dir):
        registry.register("ci", runner_dir)
        supervisor.run(cron(runner_dir))
        assert remote.launches[0][2].name.startswith("ci.")

    def test_unknown_name(self, supervisor):
        with pytest.raises(ConfigurationError, match="No runner registered"):
            supervisor.run(cron(name="nope"))

    def test_no_identity(self, supervisor):
        with pytest.raises(ConfigurationError):
            supervisor.run(cron())

    def test_missing_path(self, supervisor, tmp_path):
        with pytest.raises(ConfigurationError, match="does not exist"):
            supervisor.run(cron(tmp_path / "missing"))

    def test_not_a_runner_installation(self, supervisor, tmp_path):
        path = tmp_path / "empty"
        path.mkdir()
        with pytest.raises(ConfigurationError, match="not a runner installation"):
            supervisor.run(cron(path))

    def test_unknown_machine(self, supervisor, remote, runner_dir):
        with pytest.raises(ConfigurationError, match="Unknown machine"):
            supervisor.run(cron(runner_dir, machine="frontier"))
        assert remote.launches == []

    def test_machine_required(self, supervisor, runner_dir):
        with pytest.raises(ConfigurationError, match="--machine"):
            supervisor.run(cron(runner_dir, machine=None))

    def test_missing_runner_config(self, supervisor, remote, runner_dir):
        (runner_dir / ".runner").unlink()
        with pytest.raises(ConfigurationError, match=r"\.runner"):
            supervisor.run(cron(runner_dir))
        assert remote.launches == []

    def test_interactive_start_rejected(self, supervisor, runner_dir):
        ctx = RunnerContext(path=runner_dir, machine="derecho", interactive=True)
        with pytest.raises(ModeError):
            supervisor.run(ctx)

    def test_interactive_start_with_debug(self, supervisor, remote, runner_dir):
        ctx = RunnerContext(path=runner_dir, machine="derecho", interactive=True, debug=True)
        assert supervisor.run(ctx).outcome == Outcome.STARTED
        assert len(remote.launches) == 1
