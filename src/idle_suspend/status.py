"""Single-line status text for status bars and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from rich.text import Text

LOADING_TEXT = "idle-suspend: loading..."

_VERBS = {"suspend": "SUSPENDING", "stop": "STOPPING", "none": "TIMING OUT"}
_NOUNS = {"suspend": "suspend", "stop": "stop", "none": "timeout"}

STYLE_TRIGGERED = "bold bright_white on red"
STYLE_COUNTDOWN = "bold black on yellow"
STYLE_IDLE = "green"
STYLE_ACTIVE = "blue"


@dataclass(frozen=True)
class StatusSnapshot:
    """Immutable view of engine state for rendering."""

    loading: bool = True
    is_idle: bool = False
    idle_elapsed_secs: float = 0.0
    countdown_active: bool = False
    countdown_remaining_secs: float = 0.0
    suspend_triggered: bool = False
    active_labels: tuple[str, ...] = field(default_factory=tuple)
    idle_timeout_secs: float = 300.0
    suspend_action: str = "suspend"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusSnapshot:
        """Build from IdleEngine.snapshot() output (possibly sent as JSON)."""
        d = cls()
        return cls(
            loading=data.get("lifecycle", "loading") == "loading",
            is_idle=bool(data.get("is_idle", d.is_idle)),
            idle_elapsed_secs=float(data.get("idle_elapsed_secs", d.idle_elapsed_secs)),
            countdown_active=bool(data.get("countdown_active", d.countdown_active)),
            countdown_remaining_secs=float(
                data.get("countdown_remaining_secs", d.countdown_remaining_secs)
            ),
            suspend_triggered=bool(data.get("suspend_triggered", d.suspend_triggered)),
            active_labels=tuple(data.get("active_labels", ())),
            idle_timeout_secs=float(data.get("idle_timeout_secs", d.idle_timeout_secs)),
            suspend_action=str(data.get("suspend_action", d.suspend_action)),
        )


def format_eta(seconds: float) -> str:
    """Format a non-negative duration as '4m05s' or '42s'."""
    total = int(max(0.0, seconds))
    mins, secs = divmod(total, 60)
    if mins > 0:
        return f"{mins}m{secs:02d}s"
    return f"{secs}s"


def _fit_left(msg: str, width: int) -> str:
    return msg[:width].ljust(width)


def _fit_center(msg: str, width: int) -> str:
    if len(msg) >= width:
        return msg[:width]
    padding = width - len(msg)
    left = padding // 2
    return " " * left + msg + " " * (padding - left)


def _message(snapshot: StatusSnapshot) -> tuple[str, str, bool]:
    """Return (text, style, centered) for a snapshot."""
    verb = _VERBS.get(snapshot.suspend_action, _VERBS["suspend"])

    if snapshot.loading:
        return LOADING_TEXT, "", False

    if snapshot.suspend_triggered:
        return f" {verb} NOW... ", STYLE_TRIGGERED, True

    if snapshot.countdown_active:
        remaining = int(max(0.0, snapshot.countdown_remaining_secs))
        return (
            f" {verb} in {remaining}s -- press any key to cancel ",
            STYLE_COUNTDOWN,
            True,
        )

    if snapshot.is_idle:
        noun = _NOUNS.get(snapshot.suspend_action, _NOUNS["suspend"])
        eta = format_eta(snapshot.idle_timeout_secs - snapshot.idle_elapsed_secs)
        return f" IDLE {int(snapshot.idle_elapsed_secs)}s | {noun} in {eta} ", STYLE_IDLE, False

    procs = ", ".join(snapshot.active_labels) if snapshot.active_labels else "..."
    return f" ACTIVE: {procs} ", STYLE_ACTIVE, False


def project_status(snapshot: StatusSnapshot, width: int) -> str:
    """Render a snapshot as exactly width characters (no wrapping, no colour)."""
    if width <= 0:
        return ""
    msg, _, centered = _message(snapshot)
    return _fit_center(msg, width) if centered else _fit_left(msg, width)


def styled_status(snapshot: StatusSnapshot, width: int) -> Text:
    """Same as project_status(), styled for a rich console."""
    _, style, _ = _message(snapshot)
    text = Text(project_status(snapshot, width), no_wrap=True, overflow="crop")
    if style:
        text.stylize(style)
    return text
