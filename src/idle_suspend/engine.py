"""Idle polling state machine.

The engine owns a single EngineState and applies one event at a time to it.
It never performs I/O itself: handle() returns effects (run a classification
probe, run the suspend action) which the daemon carries out, and whose
results come back later as further events.

Idle time is re-derived on every tick from the number of polls since the
last activity, never accumulated, so missed ticks or stale classification
results cannot make it drift.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum

import structlog

from idle_suspend.classifier import PollVerdict
from idle_suspend.config import POLL_INTERVAL_SECS, IdleConfig

log = structlog.get_logger()


class Lifecycle(Enum):
    LOADING = "loading"
    MONITORING = "monitoring"


@dataclass
class EngineState:
    """Mutable engine state. Only IdleEngine.handle() changes it."""

    lifecycle: Lifecycle = Lifecycle.LOADING
    is_idle: bool = False
    idle_elapsed_secs: float = 0.0
    countdown_active: bool = False
    countdown_remaining_secs: float = 0.0  # Meaningful only while countdown_active
    suspend_triggered: bool = False
    suspend_command_sent: bool = False  # Set at most once between activity resets
    poll_count: int = 0
    last_activity_poll_count: int = 0
    active_labels: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["lifecycle"] = self.lifecycle.value
        data["active_labels"] = list(self.active_labels)
        return data


# === Events ===


@dataclass(frozen=True)
class Tick:
    """Periodic timer fired."""


@dataclass(frozen=True)
class ClassificationResult:
    """A classification probe finished."""

    verdict: PollVerdict


@dataclass(frozen=True)
class ActivityObserved:
    """User input was observed."""

    source: str = "input"


@dataclass(frozen=True)
class ActionOutcome:
    """The suspend/stop command finished."""

    action: str
    success: bool
    output: str = ""


Event = Tick | ClassificationResult | ActivityObserved | ActionOutcome


# === Effects ===


@dataclass(frozen=True)
class RequestClassification:
    """Start a classification probe."""


@dataclass(frozen=True)
class InvokeAction:
    """Run the configured power action once."""

    action: str


Effect = RequestClassification | InvokeAction


class IdleEngine:
    """Applies events to EngineState and reports the effects to perform."""

    def __init__(self, config: IdleConfig, poll_interval: float = POLL_INTERVAL_SECS):
        self.config = config
        self.poll_interval = poll_interval
        self.state = EngineState()

    def handle(self, event: Event) -> list[Effect]:
        """Apply one event fully and return the effects it produces."""
        if isinstance(event, Tick):
            return self._on_tick()
        if isinstance(event, ClassificationResult):
            self._on_verdict(event.verdict)
            return []
        if isinstance(event, ActivityObserved):
            self._on_activity(event.source)
            return []
        if isinstance(event, ActionOutcome):
            self._on_action_outcome(event)
            return []
        raise TypeError(f"Unknown event: {event!r}")

    def snapshot(self) -> dict:
        """State plus the settings needed to render it."""
        data = self.state.to_dict()
        data["idle_timeout_secs"] = self.config.idle_timeout_secs
        data["countdown_secs"] = self.config.countdown_secs
        data["suspend_action"] = self.config.suspend_action
        return data

    def _on_tick(self) -> list[Effect]:
        state = self.state

        if state.lifecycle is Lifecycle.LOADING:
            self.state = EngineState(lifecycle=Lifecycle.MONITORING)
            log.info(
                "monitoring_started",
                idle_timeout_secs=self.config.idle_timeout_secs,
                countdown_secs=self.config.countdown_secs,
                action=self.config.suspend_action,
            )
            return []

        state.poll_count += 1
        if state.is_idle:
            state.idle_elapsed_secs = (
                state.poll_count - state.last_activity_poll_count
            ) * self.poll_interval

        effects: list[Effect] = []

        if state.countdown_active:
            state.countdown_remaining_secs -= self.poll_interval
            if state.countdown_remaining_secs <= 0:
                state.suspend_triggered = True
                state.countdown_active = False
                effects.extend(self._invoke_action())
        elif state.is_idle and state.idle_elapsed_secs >= self.config.idle_timeout_secs:
            state.countdown_active = True
            state.countdown_remaining_secs = self.config.countdown_secs
            log.info(
                "countdown_started",
                idle_elapsed_secs=state.idle_elapsed_secs,
                countdown_secs=self.config.countdown_secs,
            )

        effects.append(RequestClassification())
        return effects

    def _on_verdict(self, verdict: PollVerdict) -> None:
        state = self.state

        if verdict.inconclusive:
            log.debug("verdict_inconclusive", poll=state.poll_count)
            return

        state.active_labels = verdict.active_labels

        if verdict.active_count == 0:
            if not state.is_idle:
                state.is_idle = True
                log.info("idle_episode_started", poll=state.poll_count)
            return

        was_idle = state.is_idle
        was_counting = state.countdown_active
        state.is_idle = False
        state.idle_elapsed_secs = 0.0
        state.last_activity_poll_count = state.poll_count
        state.countdown_active = False

        if was_counting:
            log.info("countdown_cancelled", reason="process", active=list(verdict.active_labels))
        elif was_idle:
            log.info("activity_detected", active=list(verdict.active_labels))

    def _on_activity(self, source: str) -> None:
        state = self.state
        was_pending = state.is_idle or state.countdown_active or state.suspend_triggered

        state.last_activity_poll_count = state.poll_count
        state.idle_elapsed_secs = 0.0
        state.is_idle = False
        state.countdown_active = False
        state.countdown_remaining_secs = 0.0
        state.suspend_triggered = False
        state.suspend_command_sent = False

        if was_pending:
            log.info("activity_reset", source=source, poll=state.poll_count)
        else:
            log.debug("activity_reset", source=source, poll=state.poll_count)

    def _invoke_action(self) -> list[Effect]:
        state = self.state
        action = self.config.suspend_action

        if state.suspend_command_sent:
            log.info("suspend_already_sent", action=action)
            return []
        state.suspend_command_sent = True

        log.warning("suspend_triggered", action=action, idle_elapsed_secs=state.idle_elapsed_secs)
        if action == "none":
            log.info("suspend_skipped", reason="action is none")
            return []
        return [InvokeAction(action)]

    def _on_action_outcome(self, outcome: ActionOutcome) -> None:
        if outcome.success:
            log.info("action_succeeded", action=outcome.action)
        else:
            log.error("action_failed", action=outcome.action, output=outcome.output)
