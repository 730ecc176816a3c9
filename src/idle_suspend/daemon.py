"""Background daemon for idle-suspend.

All engine state changes happen in one consumer task that takes events off
a queue one at a time. Everything else only posts events: the tick timer,
classification probes and action commands (which run as subprocesses and
post their results when they finish), and the socket server and tty
watcher (which post user activity).
"""

import asyncio
import os
import signal
import sys

import psutil
import structlog

from idle_suspend import __version__
from idle_suspend.actions import SuspendInvoker
from idle_suspend.classifier import PollVerdict, parse_output
from idle_suspend.config import POLL_INTERVAL_SECS, Config, IdleConfig
from idle_suspend.engine import (
    ActivityObserved,
    ClassificationResult,
    Effect,
    Event,
    IdleEngine,
    InvokeAction,
    Lifecycle,
    RequestClassification,
    Tick,
)
from idle_suspend.logging import configure as configure_logging
from idle_suspend.process import ProcFsSource, ProcessSnapshotSource
from idle_suspend.socket_server import SocketServer
from idle_suspend.ttywatch import TtyInputWatcher

log = structlog.get_logger()

FIRST_TICK_DELAY_SECS = 1.0
PROBE_TIMEOUT_SECS = 10.0


class DaemonAlreadyRunning(RuntimeError):
    """Another idle-suspend daemon holds the PID file."""


def resolve_root_pid(configured: int, environ: dict[str, str] | None = None) -> int:
    """Pick the process whose children are the session's terminals.

    Order: explicit pid, tmux server from $TMUX, then the parent of the
    shell that started us (the multiplexer that spawned that shell).
    """
    if configured > 0:
        return configured

    env = os.environ if environ is None else environ
    tmux = env.get("TMUX", "")
    parts = tmux.split(",")
    if len(parts) >= 2 and parts[1].isascii() and parts[1].isdigit():
        return int(parts[1])

    try:
        return psutil.Process(os.getppid()).ppid()
    except psutil.Error:
        return os.getppid()


def probe_command(root_pid: int, idle: IdleConfig) -> list[str]:
    """Build the classification probe command line."""
    command = [sys.executable, "-m", "idle_suspend.cli", "probe", "--root-pid", str(root_pid)]
    for name in sorted(idle.ignore_set):
        command.extend(["--ignore", name])
    if not idle.claude_code_idle_detection:
        command.append("--no-agent-detection")
    return command


class Daemon:
    """Main daemon class: schedules ticks and serializes events into the engine."""

    def __init__(
        self,
        config: Config,
        root_pid: int,
        *,
        source: ProcessSnapshotSource | None = None,
        invoker: SuspendInvoker | None = None,
    ):
        self.config = config
        self.root_pid = root_pid
        self.engine = IdleEngine(config.idle)
        self.invoker = invoker or SuspendInvoker(config.actions)
        self.source = source or ProcFsSource()
        self.tty_watcher = TtyInputWatcher() if config.activity.watch_tty_input else None

        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._shutdown_event = asyncio.Event()
        self._tick_handle: asyncio.TimerHandle | None = None
        self._consumer_task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._tty_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._socket_server: SocketServer | None = None
        self._owns_pid_file = False

    # === Event plumbing ===

    def post(self, event: Event) -> None:
        """Queue an event for the consumer."""
        self._events.put_nowait(event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_tick(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._tick_handle = loop.call_later(delay, self._fire_tick)

    def _fire_tick(self) -> None:
        self._tick_handle = None
        if self._shutdown_event.is_set():
            return
        self.post(Tick())
        self._schedule_tick(POLL_INTERVAL_SECS)

    async def dispatch(self, event: Event) -> None:
        """Apply one event to the engine and start its effects."""
        effects = self.engine.handle(event)
        for effect in effects:
            self._perform(effect)

        if (
            isinstance(event, Tick)
            and self.tty_watcher is not None
            and self.engine.state.lifecycle is Lifecycle.MONITORING
        ):
            if self._tty_task is None or self._tty_task.done():
                self._tty_task = self._spawn(self._watch_tty())

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.dispatch(event)
            except Exception as e:
                log.exception("event_failed", event=type(event).__name__, error=str(e))

    def _perform(self, effect: Effect) -> None:
        if isinstance(effect, RequestClassification):
            if self._probe_task is not None and not self._probe_task.done():
                log.debug("classification_skipped", reason="previous probe still running")
                return
            self._probe_task = self._spawn(self._classify())
        elif isinstance(effect, InvokeAction):
            self._spawn(self._run_action(effect.action))

    # === Effects ===

    async def request_classification(self) -> PollVerdict | None:
        """Run the probe subprocess and parse its output.

        Returns:
            The verdict, or None if the probe could not be run
        """
        command = probe_command(self.root_pid, self.config.idle)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.error("probe_failed", error=str(e))
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=PROBE_TIMEOUT_SECS)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            log.warning("probe_timeout", timeout=PROBE_TIMEOUT_SECS)
            return None

        if proc.returncode != 0:
            log.warning(
                "probe_failed",
                returncode=proc.returncode,
                stderr=stderr.decode("utf-8", errors="replace").strip(),
            )
            return None

        return parse_output(stdout.decode("utf-8", errors="replace"))

    async def _classify(self) -> None:
        verdict = await self.request_classification()
        if verdict is not None:
            self.post(ClassificationResult(verdict))

    async def _run_action(self, action: str) -> None:
        outcome = await self.invoker.run(action)
        self.post(outcome)

    async def _watch_tty(self) -> None:
        assert self.tty_watcher is not None
        watcher = self.tty_watcher
        active = await asyncio.to_thread(
            lambda: watcher.check(self.source.children(self.root_pid))
        )
        if active:
            self.post(ActivityObserved(source="tty"))

    def _on_poke(self) -> None:
        self.post(ActivityObserved(source="poke"))

    # === Lifecycle ===

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        log.info(
            "daemon_starting",
            version=__version__,
            root_pid=self.root_pid,
            idle_timeout_secs=self.config.idle.idle_timeout_secs,
            countdown_secs=self.config.idle.countdown_secs,
            action=self.config.idle.suspend_action,
            ignore=sorted(self.config.idle.ignore_set),
            agent_detection=self.config.idle.claude_code_idle_detection,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            raise DaemonAlreadyRunning("Daemon is already running")
        self._write_pid_file()

        self._socket_server = SocketServer(
            socket_path=self.config.socket_path,
            on_activity=self._on_poke,
            get_snapshot=self.engine.snapshot,
        )
        await self._socket_server.start()

        self._consumer_task = asyncio.create_task(self._consume())
        self._schedule_tick(FIRST_TICK_DELAY_SECS)
        log.info("daemon_started")

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        self._shutdown_event.set()

        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        pending = list(self._tasks)
        if self._consumer_task is not None:
            pending.append(self._consumer_task)
            self._consumer_task = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False
        log.info("daemon_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another daemon is running.

        Verifies that the PID in the file belongs to an idle-suspend process,
        not just any process that reused the PID.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "idle-suspend" in cmdline_str or "idle_suspend" in cmdline_str:
                log.error("daemon_already_running", pid=pid)
                return True

            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return False

        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True


async def run_daemon(config: Config | None = None, root_pid: int | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        root_pid: Session root; resolved from config/environment if not provided
    """
    if config is None:
        config = Config.load()

    configure_logging(config)

    if root_pid is None:
        root_pid = resolve_root_pid(config.session.root_pid)

    daemon = Daemon(config, root_pid)

    try:
        await daemon.start()
    except DaemonAlreadyRunning:
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
