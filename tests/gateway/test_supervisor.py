"""Tests for gateway/supervisor.py: the ensure_running state machine."""

import asyncio
import errno
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gateway.backup import BackupSynchronizer
from gateway.command_profile import CommandProfileResolver
from gateway.config import ReconcileInputs
from gateway.process import GatewayBinaryNotFound
from gateway.settings import SandboxSettings
from gateway.supervisor import GatewaySupervisor, SupervisorState

RUN_HELP = "Usage: openclaw gateway run\n  --port <port>\n  --token <token>\n"


class FakeProcess:
    _next_pid = 4000

    def __init__(self, argv, env):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = list(argv)
        self.env = dict(env or {})
        self.returncode = None

    async def wait(self):
        self.returncode = 0
        return 0


class FakeControl:
    """In-memory stand-in for GatewayProcessControl."""

    def __init__(self, port_open=False, pids=(), binary="/usr/local/bin/openclaw",
                 open_after_launch=False, launch_delay=0.0):
        self.port_open = port_open
        self.pids = list(pids)
        self.binary = binary
        self.open_after_launch = open_after_launch
        self.launch_delay = launch_delay
        self.launched = []
        self.terminated = 0
        self.cleared = []
        self.terminate_ok = True

    async def is_port_open(self, timeout=1.0):
        await asyncio.sleep(0)
        return self.port_open

    async def find_gateway_pids(self):
        return list(self.pids)

    async def terminate_gateway(self, settle_seconds=1.0):
        self.terminated += 1
        if self.terminate_ok:
            self.pids = []
        return self.terminate_ok

    def require_binary(self):
        if not self.binary:
            raise GatewayBinaryNotFound("openclaw binary not found")
        return self.binary

    def clear_lock_files(self, paths):
        self.cleared.extend(paths)

    async def launch(self, argv, env=None):
        await asyncio.sleep(self.launch_delay)
        proc = FakeProcess(argv, env)
        self.launched.append(proc)
        if self.open_after_launch:
            self.port_open = True
        return proc


def _settings(tmp_path) -> SandboxSettings:
    return SandboxSettings(
        config_dir=tmp_path / "config",
        backup_dir=tmp_path / "r2",
        skills_dir=tmp_path / "skills",
        openclaw_home_dir=tmp_path / "home",
        template_file=tmp_path / "template.json",
        log_dir=tmp_path / "logs",
        startup_timeout=0.2,
    )


def _resolver():
    async def probe(binary, subcommand):
        return RUN_HELP
    return CommandProfileResolver(probe)


def _supervisor(tmp_path, control, inputs=None, **kwargs):
    return GatewaySupervisor(
        _settings(tmp_path),
        control=control,
        resolver=kwargs.pop("resolver", None) or _resolver(),
        inputs_factory=lambda: inputs or ReconcileInputs(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Short-circuit
# ---------------------------------------------------------------------------


class TestPortOpen:
    @pytest.mark.asyncio
    async def test_no_side_effects_when_reachable(self, tmp_path):
        control = FakeControl(port_open=True, pids=[99])
        synchronizer = MagicMock(spec=BackupSynchronizer)
        reconciler = MagicMock()
        resolver = MagicMock(spec=CommandProfileResolver)
        sup = _supervisor(tmp_path, control, synchronizer=synchronizer,
                          reconciler=reconciler, resolver=resolver)

        outcome = await sup.ensure_running()

        assert outcome.state == SupervisorState.PORT_OPEN
        assert outcome.ok
        assert outcome.launched is False
        synchronizer.restore.assert_not_called()
        reconciler.run.assert_not_called()
        resolver.resolve.assert_not_called()
        assert control.launched == [] and control.terminated == 0
        assert not (tmp_path / "config").exists()


# ---------------------------------------------------------------------------
# Launch path
# ---------------------------------------------------------------------------


class TestLaunch:
    @pytest.mark.asyncio
    async def test_absent_launches_with_profile(self, tmp_path):
        control = FakeControl()
        sup = _supervisor(tmp_path, control, inputs=ReconcileInputs(gateway_token="tok"))

        outcome = await sup.ensure_running()

        assert outcome.state == SupervisorState.RUNNING
        assert outcome.launched is True
        assert control.terminated == 0
        proc = control.launched[0]
        assert proc.argv == [
            "/usr/local/bin/openclaw", "gateway", "run", "--port", "18789", "--token", "tok",
        ]
        config_file = str(tmp_path / "config" / "clawdbot.json")
        assert proc.env["OPENCLAW_CONFIG_PATH"] == config_file
        assert proc.env["CLAWDBOT_CONFIG_PATH"] == config_file
        assert tmp_path / "config" / "gateway.lock" in control.cleared
        assert sup.launch_count == 1
        assert sup.process is proc

    @pytest.mark.asyncio
    async def test_reconciles_config_before_launch(self, tmp_path):
        control = FakeControl()
        sup = _supervisor(tmp_path, control, inputs=ReconcileInputs(discord_bot_token="d"))
        await sup.ensure_running()
        data = json.loads((tmp_path / "config" / "clawdbot.json").read_text())
        assert data["gateway"]["port"] == 18789
        assert data["channels"]["discord"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_restores_before_reconciling(self, tmp_path):
        r2 = tmp_path / "r2"
        (r2 / "clawdbot").mkdir(parents=True)
        (r2 / ".last-sync").write_text("2024-01-01T00:00:00Z")
        (r2 / "clawdbot" / "clawdbot.json").write_text(json.dumps({"fromBackup": True}))
        control = FakeControl()
        sup = _supervisor(tmp_path, control)

        outcome = await sup.ensure_running()

        assert outcome.restore.restored == ["config"]
        data = json.loads((tmp_path / "config" / "clawdbot.json").read_text())
        assert data["fromBackup"] is True
        assert data["gateway"]["mode"] == "local"
        assert (tmp_path / "config" / ".last-sync").read_text() == "2024-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_stale_process_terminated_first(self, tmp_path):
        control = FakeControl(pids=[1234])
        sup = _supervisor(tmp_path, control)
        outcome = await sup.ensure_running()
        assert control.terminated == 1
        assert outcome.state == SupervisorState.RUNNING
        assert len(control.launched) == 1

    @pytest.mark.asyncio
    async def test_failed_termination_still_launches(self, tmp_path):
        control = FakeControl(pids=[1234])
        control.terminate_ok = False
        sup = _supervisor(tmp_path, control)
        outcome = await sup.ensure_running()
        assert outcome.state == SupervisorState.RUNNING
        assert len(control.launched) == 1

    @pytest.mark.asyncio
    async def test_missing_binary_fails(self, tmp_path):
        control = FakeControl(binary=None)
        sup = _supervisor(tmp_path, control)
        outcome = await sup.ensure_running()
        assert outcome.state == SupervisorState.FAILED
        assert not outcome.ok
        assert "not found" in outcome.error
        assert control.launched == []
        assert sup.state == SupervisorState.FAILED

    @pytest.mark.asyncio
    async def test_launch_oserror_fails(self, tmp_path):
        control = FakeControl()

        async def broken_launch(argv, env=None):
            raise PermissionError("exec format error")

        control.launch = broken_launch
        outcome = await _supervisor(tmp_path, control).ensure_running()
        assert outcome.state == SupervisorState.FAILED
        assert "exec format error" in outcome.error

    @pytest.mark.asyncio
    async def test_unreadable_backup_mount_still_launches(self, tmp_path, monkeypatch):
        r2 = tmp_path / "r2"
        (r2 / "clawdbot").mkdir(parents=True)
        (r2 / ".last-sync").write_text("2024-01-01T00:00:00Z")
        (r2 / "clawdbot" / "clawdbot.json").write_text("{}")
        real_is_file = Path.is_file

        def is_file(self, *args, **kwargs):
            if r2 in self.parents:
                raise OSError(errno.EIO, "Input/output error")
            return real_is_file(self, *args, **kwargs)

        monkeypatch.setattr(Path, "is_file", is_file)
        control = FakeControl()

        outcome = await _supervisor(tmp_path, control).ensure_running()

        assert outcome.state == SupervisorState.RUNNING
        assert outcome.restore.restored == []
        assert len(control.launched) == 1
        assert (tmp_path / "config" / "clawdbot.json").exists()


# ---------------------------------------------------------------------------
# Repeated and concurrent calls
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_callers_launch_once(self, tmp_path):
        control = FakeControl(launch_delay=0.05)
        sup = _supervisor(tmp_path, control)

        outcomes = await asyncio.gather(*(sup.ensure_running() for _ in range(8)))

        assert len(control.launched) == 1
        assert sum(o.launched for o in outcomes) == 1
        assert all(o.state == SupervisorState.RUNNING for o in outcomes)

    @pytest.mark.asyncio
    async def test_waiters_short_circuit_once_port_opens(self, tmp_path):
        control = FakeControl(launch_delay=0.05, open_after_launch=True)
        sup = _supervisor(tmp_path, control)

        outcomes = await asyncio.gather(*(sup.ensure_running() for _ in range(4)))

        assert len(control.launched) == 1
        states = sorted(o.state.value for o in outcomes)
        assert states == ["port_open", "port_open", "port_open", "running"]

    @pytest.mark.asyncio
    async def test_profile_resolved_once_across_cycles(self, tmp_path):
        calls = []

        async def probe(binary, subcommand):
            calls.append(subcommand)
            return RUN_HELP

        control = FakeControl()
        sup = _supervisor(tmp_path, control, resolver=CommandProfileResolver(probe))
        await sup.ensure_running()
        # the launched gateway died without ever listening
        sup.process.returncode = 1
        await sup.ensure_running()

        assert len(control.launched) == 2
        assert calls == [("gateway", "run")]


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_ready_when_port_opens(self, tmp_path):
        control = FakeControl(open_after_launch=True)
        sup = _supervisor(tmp_path, control)
        await sup.ensure_running()
        assert await sup.wait_until_ready(timeout=0.1) is True

    @pytest.mark.asyncio
    async def test_times_out(self, tmp_path):
        sup = _supervisor(tmp_path, FakeControl())
        assert await sup.wait_until_ready(timeout=0.05, interval=0.01) is False

    @pytest.mark.asyncio
    async def test_stops_early_when_process_exits(self, tmp_path):
        control = FakeControl()
        sup = _supervisor(tmp_path, control)
        await sup.ensure_running()
        sup.process.returncode = 2
        assert await sup.wait_until_ready(timeout=30) is False
