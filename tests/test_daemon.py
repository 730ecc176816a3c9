"""Tests for daemon event routing and lifecycle."""

import asyncio
import os
import signal
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest
from conftest import ROOT_PID, make_child, wait_until

from idle_suspend.classifier import PollVerdict
from idle_suspend.config import ActivityConfig, Config, IdleConfig
from idle_suspend.daemon import (
    Daemon,
    DaemonAlreadyRunning,
    probe_command,
    resolve_root_pid,
)
from idle_suspend.engine import ActionOutcome, ActivityObserved, Lifecycle, Tick
from idle_suspend.process import StaticSnapshotSource
from idle_suspend.socket_client import send_request

IDLE_VERDICT = PollVerdict(total_children=1, active_count=0)


def _config(**idle) -> Config:
    idle.setdefault("idle_timeout_secs", 10.0)
    idle.setdefault("countdown_secs", 5.0)
    return Config(idle=IdleConfig(**idle), activity=ActivityConfig(watch_tty_input=False))


def _daemon(config: Config | None = None) -> Daemon:
    invoker = MagicMock()
    invoker.run = AsyncMock(side_effect=lambda action: ActionOutcome(action, True))
    daemon = Daemon(
        config or _config(), ROOT_PID, source=StaticSnapshotSource(), invoker=invoker
    )
    daemon.request_classification = AsyncMock(return_value=IDLE_VERDICT)
    return daemon


async def _settle(daemon: Daemon) -> None:
    """Run spawned tasks and dispatch queued events until nothing is left."""
    while True:
        if daemon._tasks:
            await asyncio.gather(*list(daemon._tasks))
        if daemon._events.empty():
            return
        await daemon.dispatch(daemon._events.get_nowait())


async def _tick(daemon: Daemon) -> None:
    await daemon.dispatch(Tick())
    await _settle(daemon)


class TestResolveRootPid:
    def test_configured_pid_wins(self):
        assert resolve_root_pid(4242, {"TMUX": "/tmp/tmux-1000/default,777,0"}) == 4242

    def test_tmux_server_pid(self):
        assert resolve_root_pid(0, {"TMUX": "/tmp/tmux-1000/default,777,0"}) == 777

    def test_falls_back_to_grandparent(self):
        parent = MagicMock()
        parent.ppid.return_value = 555
        with patch("idle_suspend.daemon.psutil.Process", return_value=parent) as mock_proc:
            assert resolve_root_pid(0, {"TMUX": "garbage"}) == 555
        mock_proc.assert_called_once_with(os.getppid())

    def test_non_ascii_tmux_pid_is_ignored(self):
        parent = MagicMock()
        parent.ppid.return_value = 555
        with patch("idle_suspend.daemon.psutil.Process", return_value=parent):
            assert resolve_root_pid(0, {"TMUX": "/tmp/tmux-1000/default,²,0"}) == 555

    def test_grandparent_unavailable(self):
        with patch(
            "idle_suspend.daemon.psutil.Process", side_effect=psutil.NoSuchProcess(1)
        ):
            assert resolve_root_pid(0, {}) == os.getppid()


class TestProbeCommand:
    def test_defaults(self):
        assert probe_command(42, IdleConfig()) == [
            sys.executable,
            "-m",
            "idle_suspend.cli",
            "probe",
            "--root-pid",
            "42",
        ]

    def test_ignore_list_and_agent_toggle(self):
        command = probe_command(
            42, IdleConfig(ignore_processes=["vim", "htop"], claude_code_idle_detection=False)
        )
        assert command[6:] == ["--ignore", "htop", "--ignore", "vim", "--no-agent-detection"]


class TestRequestClassification:
    async def _run(self, script: str) -> PollVerdict | None:
        daemon = Daemon(_config(), ROOT_PID, source=StaticSnapshotSource(), invoker=MagicMock())
        with patch("idle_suspend.daemon.probe_command", return_value=["sh", "-c", script]):
            return await daemon.request_classification()

    @pytest.mark.asyncio
    async def test_parses_probe_output(self):
        verdict = await self._run("printf 'idle:1:bash\\nactive:2:make\\n'")
        assert verdict == PollVerdict(total_children=2, active_count=1, active_labels=("make",))

    @pytest.mark.asyncio
    async def test_failing_probe_gives_no_verdict(self):
        assert await self._run("echo broken >&2; exit 2") is None

    @pytest.mark.asyncio
    async def test_missing_probe_binary(self):
        daemon = Daemon(_config(), ROOT_PID, source=StaticSnapshotSource(), invoker=MagicMock())
        with patch("idle_suspend.daemon.probe_command", return_value=["/nonexistent/probe"]):
            assert await daemon.request_classification() is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_first_tick_does_not_probe(self):
        daemon = _daemon()
        await _tick(daemon)

        assert daemon.engine.state.lifecycle is Lifecycle.MONITORING
        daemon.request_classification.assert_not_called()

    @pytest.mark.asyncio
    async def test_idle_session_runs_action_once(self):
        daemon = _daemon()

        for _ in range(8):
            await _tick(daemon)

        daemon.invoker.run.assert_awaited_once_with("suspend")
        assert daemon.engine.state.suspend_command_sent

    @pytest.mark.asyncio
    async def test_poke_cancels_countdown(self):
        daemon = _daemon(_config(countdown_secs=30.0))
        for _ in range(3):
            await _tick(daemon)
        assert daemon.engine.state.countdown_active

        daemon._on_poke()
        await _settle(daemon)

        assert not daemon.engine.state.countdown_active
        assert not daemon.engine.state.is_idle
        daemon.invoker.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_probe_in_flight(self):
        daemon = _daemon()
        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return IDLE_VERDICT

        daemon.request_classification = AsyncMock(side_effect=slow_probe)
        await daemon.dispatch(Tick())
        await daemon.dispatch(Tick())
        await daemon.dispatch(Tick())
        await daemon.dispatch(Tick())
        await asyncio.sleep(0)

        assert daemon.request_classification.call_count == 1
        release.set()
        await _settle(daemon)
        assert daemon.engine.state.is_idle

    @pytest.mark.asyncio
    async def test_failed_probe_posts_nothing(self):
        daemon = _daemon()
        daemon.request_classification = AsyncMock(return_value=None)

        await _tick(daemon)
        await _tick(daemon)

        assert not daemon.engine.state.is_idle
        assert daemon._events.empty()

    @pytest.mark.asyncio
    async def test_tty_input_counts_as_activity(self):
        config = _config(idle_timeout_secs=100.0)
        config.activity = ActivityConfig(watch_tty_input=True)
        daemon = _daemon(config)
        daemon.source.tree[ROOT_PID] = [make_child()]
        daemon.tty_watcher = MagicMock()
        daemon.tty_watcher.check.return_value = False

        await _tick(daemon)
        await _tick(daemon)
        await _tick(daemon)
        assert daemon.engine.state.is_idle

        daemon.tty_watcher.check.return_value = True
        await _tick(daemon)

        assert not daemon.engine.state.is_idle
        assert daemon.engine.state.last_activity_poll_count == 3
        daemon.tty_watcher.check.assert_called_with([make_child()])

    @pytest.mark.asyncio
    async def test_consumer_survives_handler_errors(self):
        daemon = _daemon()
        daemon.engine.handle = MagicMock(side_effect=[RuntimeError("boom"), []])
        consumer = asyncio.create_task(daemon._consume())
        try:
            daemon.post(Tick())
            daemon.post(ActivityObserved())
            await wait_until(lambda: daemon.engine.handle.call_count == 2)
        finally:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)


class TestPidFile:
    def test_no_pid_file(self, patched_config_paths):
        assert _daemon()._check_already_running() is False

    def test_own_pid(self, patched_config_paths):
        daemon = _daemon()
        daemon._write_pid_file()
        assert daemon._check_already_running() is False

    def test_invalid_pid_file_is_removed(self, patched_config_paths):
        daemon = _daemon()
        daemon.config.pid_path.parent.mkdir(parents=True)
        daemon.config.pid_path.write_text("not-a-pid")

        assert daemon._check_already_running() is False
        assert not daemon.config.pid_path.exists()

    def test_dead_pid_is_stale(self, patched_config_paths):
        daemon = _daemon()
        daemon.config.pid_path.parent.mkdir(parents=True)
        daemon.config.pid_path.write_text("4242")

        with patch(
            "idle_suspend.daemon.psutil.Process", side_effect=psutil.NoSuchProcess(4242)
        ):
            assert daemon._check_already_running() is False
        assert not daemon.config.pid_path.exists()

    def test_reused_pid_is_stale(self, patched_config_paths):
        daemon = _daemon()
        daemon.config.pid_path.parent.mkdir(parents=True)
        daemon.config.pid_path.write_text("4242")
        other = MagicMock()
        other.cmdline.return_value = ["/usr/bin/vim", "notes.txt"]
        other.name.return_value = "vim"

        with patch("idle_suspend.daemon.psutil.Process", return_value=other):
            assert daemon._check_already_running() is False

    def test_live_daemon_detected(self, patched_config_paths):
        daemon = _daemon()
        daemon.config.pid_path.parent.mkdir(parents=True)
        daemon.config.pid_path.write_text("4242")
        other = MagicMock()
        other.cmdline.return_value = ["python", "-m", "idle_suspend.cli", "daemon"]

        with patch("idle_suspend.daemon.psutil.Process", return_value=other):
            assert daemon._check_already_running() is True
        assert daemon.config.pid_path.exists()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_serves_until_signal(self, patched_config_paths):
        daemon = _daemon()
        runner = asyncio.create_task(daemon.start())
        try:
            await wait_until(lambda: daemon.config.socket_path.exists(), timeout=2.0)
            assert daemon.config.pid_path.read_text() == str(os.getpid())

            reply = await send_request(daemon.config.socket_path, {"type": "status"})
            assert reply["type"] == "status"
            assert reply["state"]["idle_timeout_secs"] == 10.0

            daemon._handle_signal(signal.SIGTERM)
            await asyncio.wait_for(runner, timeout=2.0)
        finally:
            await daemon.stop()

        assert not daemon.config.pid_path.exists()
        assert not daemon.config.socket_path.exists()

    @pytest.mark.asyncio
    async def test_second_daemon_refuses_to_start(self, patched_config_paths):
        daemon = _daemon()
        daemon.config.pid_path.parent.mkdir(parents=True)
        daemon.config.pid_path.write_text("4242")
        other = MagicMock()
        other.cmdline.return_value = ["idle-suspend", "daemon"]

        with patch("idle_suspend.daemon.psutil.Process", return_value=other):
            with pytest.raises(DaemonAlreadyRunning):
                await daemon.start()
        await daemon.stop()

        assert daemon.config.pid_path.read_text() == "4242"
