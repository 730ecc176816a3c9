"""Configuration system for idle-suspend."""

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import tomlkit

# Fixed tick interval. Not configurable: idle time is derived from tick counts.
POLL_INTERVAL_SECS = 5.0

SUSPEND_ACTIONS = ("suspend", "stop", "none")

_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


def _coerce_seconds(value: Any, default: float) -> float:
    """Parse a duration in seconds, falling back to default when unusable."""
    if isinstance(value, bool):
        return default
    try:
        seconds = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(seconds) or seconds < 0:
        return default
    return seconds


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return default


def _coerce_action(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in SUSPEND_ACTIONS:
        return value.strip().lower()
    return default


def _coerce_names(value: Any, default: list[str]) -> list[str]:
    """Accept a comma-separated string or a list of strings."""
    if isinstance(value, str):
        return [name.strip() for name in value.split(",") if name.strip()]
    if isinstance(value, list | tuple):
        return [str(name).strip() for name in value if str(name).strip()]
    return list(default)


def _coerce_command(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, list | tuple) and value and all(isinstance(v, str) for v in value):
        return [str(v) for v in value]
    if isinstance(value, str) and value.split():
        return value.split()
    return list(default)


@dataclass
class IdleConfig:
    """Idle detection and countdown configuration.

    Keys match the plain string map accepted by from_mapping().
    """

    idle_timeout_secs: float = 300.0  # Idle time before the countdown starts
    countdown_secs: float = 60.0  # Grace period before the action fires
    suspend_action: str = "suspend"  # suspend, stop, or none
    claude_code_idle_detection: bool = True  # Treat an agent tool at its prompt as idle
    ignore_processes: list[str] = field(default_factory=list)  # Foreground names always idle

    @property
    def ignore_set(self) -> frozenset[str]:
        return frozenset(self.ignore_processes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IdleConfig":
        """Build from a key/value map, silently defaulting anything unparseable."""
        d = cls()
        return cls(
            idle_timeout_secs=_coerce_seconds(
                data.get("idle_timeout_secs", d.idle_timeout_secs), d.idle_timeout_secs
            ),
            countdown_secs=_coerce_seconds(
                data.get("countdown_secs", d.countdown_secs), d.countdown_secs
            ),
            suspend_action=_coerce_action(
                data.get("suspend_action", d.suspend_action), d.suspend_action
            ),
            claude_code_idle_detection=_coerce_bool(
                data.get("claude_code_idle_detection", d.claude_code_idle_detection),
                d.claude_code_idle_detection,
            ),
            ignore_processes=_coerce_names(
                data.get("ignore_processes", d.ignore_processes), d.ignore_processes
            ),
        )


@dataclass
class SessionConfig:
    """Which terminal session to watch."""

    root_pid: int = 0  # 0 = auto-detect (tmux server, else the shell's parent)


@dataclass
class ActionsConfig:
    """External commands run when the countdown expires."""

    suspend_command: list[str] = field(default_factory=lambda: ["systemctl", "suspend"])
    stop_command: list[str] = field(default_factory=lambda: ["systemctl", "poweroff"])
    timeout_secs: float = 60.0  # Max seconds an action command may run

    def command_for(self, action: str) -> list[str] | None:
        """Return the command for an action, or None for 'none'."""
        if action == "suspend":
            return list(self.suspend_command)
        if action == "stop":
            return list(self.stop_command)
        return None


@dataclass
class ActivityConfig:
    """Sources of user activity besides explicit pokes."""

    watch_tty_input: bool = True  # Treat terminal reads (tty atime) as keystrokes


@dataclass
class SystemConfig:
    """Daemon housekeeping configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep
    log_level: str = "info"


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    idle: IdleConfig = field(default_factory=IdleConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    actions: ActionsConfig = field(default_factory=ActionsConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "idle-suspend"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "idle-suspend"

    @property
    def log_path(self) -> Path:
        """Daemon log path (JSON Lines)."""
        return self.state_dir / "daemon.log"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file and socket.

        Uses XDG_RUNTIME_DIR when set so both are cleared on logout.
        """
        base = os.environ.get("XDG_RUNTIME_DIR")
        if base:
            return Path(base) / "idle-suspend"
        return Path(f"/tmp/idle-suspend-{os.getuid()}")

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("idle", "session", "actions", "activity", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        A file that is not valid TOML is an error. Individual values that
        cannot be used fall back to their dataclass defaults.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            idle=IdleConfig.from_mapping(_section(data, "idle")),
            session=_load_session_config(_section(data, "session")),
            actions=_load_actions_config(_section(data, "actions")),
            activity=_load_activity_config(_section(data, "activity")),
            system=_load_system_config(_section(data, "system")),
        )


def _section(data: dict, name: str) -> dict:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def _load_session_config(data: dict) -> SessionConfig:
    d = SessionConfig()
    root_pid = data.get("root_pid", d.root_pid)
    if isinstance(root_pid, bool) or not isinstance(root_pid, int) or root_pid < 0:
        root_pid = d.root_pid
    return SessionConfig(root_pid=root_pid)


def _load_actions_config(data: dict) -> ActionsConfig:
    d = ActionsConfig()
    return ActionsConfig(
        suspend_command=_coerce_command(data.get("suspend_command"), d.suspend_command),
        stop_command=_coerce_command(data.get("stop_command"), d.stop_command),
        timeout_secs=_coerce_seconds(data.get("timeout_secs", d.timeout_secs), d.timeout_secs),
    )


def _load_activity_config(data: dict) -> ActivityConfig:
    d = ActivityConfig()
    return ActivityConfig(
        watch_tty_input=_coerce_bool(
            data.get("watch_tty_input", d.watch_tty_input), d.watch_tty_input
        ),
    )


def _load_system_config(data: dict) -> SystemConfig:
    d = SystemConfig()
    log_max_bytes = data.get("log_max_bytes", d.log_max_bytes)
    log_backup_count = data.get("log_backup_count", d.log_backup_count)
    log_level = data.get("log_level", d.log_level)
    if not isinstance(log_max_bytes, int) or log_max_bytes <= 0:
        log_max_bytes = d.log_max_bytes
    if not isinstance(log_backup_count, int) or log_backup_count < 0:
        log_backup_count = d.log_backup_count
    if not isinstance(log_level, str) or log_level.lower() not in {
        "debug",
        "info",
        "warning",
        "error",
    }:
        log_level = d.log_level
    return SystemConfig(
        log_max_bytes=log_max_bytes,
        log_backup_count=log_backup_count,
        log_level=log_level.lower(),
    )
