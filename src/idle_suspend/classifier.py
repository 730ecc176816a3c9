"""Foreground classification of a terminal session's children.

Each direct child of the session root (normally one shell per pane) is
classified by comparing its process group with its terminal's foreground
process group:

- child owns the foreground group: the shell is at its prompt -> idle
- another process owns it: something was launched from the shell -> active,
  unless that process is ignore-listed, or is an agent tool sitting at its
  own prompt with no children of its own

Results travel between the probe and the daemon as text lines of the form
``status:pid:label``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from idle_suspend.config import IdleConfig
from idle_suspend.process import ChildProcessState, ForegroundProcess, ProcessSnapshotSource

# Agent tool signature: the tool's own binary name, or a JS runtime whose
# command line carries the tool's package name.
AGENT_TOOL_NAME = "claude"
AGENT_RUNTIME_NAMES = frozenset({"node"})
AGENT_PACKAGE_MARKERS = ("@anthropic-ai/claude-code", "claude-code")

# Label for an active terminal whose foreground process could not be read.
UNKNOWN_LABEL = "unknown"

STATUS_IDLE = "idle"
STATUS_ACTIVE = "active"

SUFFIX_IGNORED = "(ignored)"
SUFFIX_AGENT_IDLE = "(idle)"
SUFFIX_AGENT_WORKING = "(working)"


class IdleReason(Enum):
    """Why a child was classified idle."""

    NONE = "none"
    IGNORED = "ignored"
    AGENT_TOOL_IDLE = "agent-tool-idle"


@dataclass(frozen=True)
class Idle:
    reason: IdleReason = IdleReason.NONE
    label: str = ""


@dataclass(frozen=True)
class Active:
    label: str


Classification = Idle | Active


@dataclass(frozen=True)
class ClassifiedChild:
    """A classification tagged with the child it belongs to."""

    pid: int
    classification: Classification


@dataclass(frozen=True)
class ClassifierConfig:
    ignore_set: frozenset[str] = frozenset()
    agent_detection_enabled: bool = True

    @classmethod
    def from_idle_config(cls, config: IdleConfig) -> ClassifierConfig:
        return cls(
            ignore_set=config.ignore_set,
            agent_detection_enabled=config.claude_code_idle_detection,
        )


@dataclass(frozen=True)
class PollVerdict:
    """Aggregate of one poll's classifications.

    total_children == 0 is inconclusive: it says nothing about idleness.
    """

    total_children: int = 0
    active_count: int = 0
    active_labels: tuple[str, ...] = field(default_factory=tuple)

    @property
    def inconclusive(self) -> bool:
        return self.total_children == 0

    @property
    def idle(self) -> bool:
        return self.total_children > 0 and self.active_count == 0


def is_agent_tool(process: ForegroundProcess) -> bool:
    """Check whether a foreground process looks like an agentic coding tool."""
    if process.name == AGENT_TOOL_NAME:
        return True
    if process.name in AGENT_RUNTIME_NAMES:
        joined = " ".join(process.cmdline)
        return any(marker in joined for marker in AGENT_PACKAGE_MARKERS)
    return False


def classify_child(
    child: ChildProcessState,
    source: ProcessSnapshotSource,
    config: ClassifierConfig,
) -> Classification | None:
    """Classify one child of the session root.

    Args:
        child: OS state of the child
        source: Used to resolve the foreground process and, for agent
            tools only, whether it currently has children
        config: Ignore list and agent detection toggle

    Returns:
        The classification, or None if the child has no controlling
        terminal and must not be counted at all
    """
    if child.tty is None:
        return None

    if child.is_foreground:
        return Idle(IdleReason.NONE, child.name)

    foreground = source.foreground(child.tpgid)
    if foreground is None:
        return Active(UNKNOWN_LABEL)

    if foreground.name in config.ignore_set:
        return Idle(IdleReason.IGNORED, foreground.name + SUFFIX_IGNORED)

    if config.agent_detection_enabled and is_agent_tool(foreground):
        if source.has_children(foreground.pid):
            return Active(foreground.name + SUFFIX_AGENT_WORKING)
        return Idle(IdleReason.AGENT_TOOL_IDLE, foreground.name + SUFFIX_AGENT_IDLE)

    return Active(foreground.name)


def classify_session(
    root_pid: int,
    source: ProcessSnapshotSource,
    config: ClassifierConfig,
) -> list[ClassifiedChild]:
    """Classify every counted child of root_pid, in enumeration order."""
    results = []
    for child in source.children(root_pid):
        classification = classify_child(child, source, config)
        if classification is not None:
            results.append(ClassifiedChild(child.pid, classification))
    return results


def aggregate(classifications: Iterable[Classification]) -> PollVerdict:
    """Reduce one poll's classifications to a verdict.

    Active labels keep encounter order and are not deduplicated. The
    UNKNOWN_LABEL placeholder and empty labels still count as active but
    are left out of active_labels.
    """
    total = 0
    active = 0
    labels: list[str] = []
    for classification in classifications:
        total += 1
        if isinstance(classification, Active):
            active += 1
            label = classification.label.strip()
            if label and label != UNKNOWN_LABEL:
                labels.append(label)
    return PollVerdict(total_children=total, active_count=active, active_labels=tuple(labels))


# === Line protocol ===


def format_line(child: ClassifiedChild) -> str:
    """Encode one classified child as ``status:pid:label``.

    Line breaks in the label become spaces: one child is always one line.
    """
    classification = child.classification
    label = " ".join(classification.label.splitlines())
    if isinstance(classification, Active):
        return f"{STATUS_ACTIVE}:{child.pid}:{label}"
    return f"{STATUS_IDLE}:{child.pid}:{label}"


def _idle_reason_from_label(label: str) -> IdleReason:
    if label.endswith(SUFFIX_IGNORED):
        return IdleReason.IGNORED
    if label.endswith(SUFFIX_AGENT_IDLE):
        return IdleReason.AGENT_TOOL_IDLE
    return IdleReason.NONE


def parse_line(line: str) -> ClassifiedChild | None:
    """Decode one ``status:pid:label`` line.

    Returns:
        The classified child, or None for empty, short, or malformed lines
    """
    line = line.strip()
    if not line:
        return None

    parts = line.split(":", 2)
    if len(parts) < 3:
        return None

    status, pid_text, label = parts
    if not (pid_text.isascii() and pid_text.isdigit()):
        return None
    label = label.strip()

    if status == STATUS_ACTIVE:
        return ClassifiedChild(int(pid_text), Active(label))
    if status == STATUS_IDLE:
        return ClassifiedChild(int(pid_text), Idle(_idle_reason_from_label(label), label))
    return None


def parse_output(text: str) -> PollVerdict:
    """Parse a probe's full output into a verdict, skipping bad lines."""
    children = (parse_line(line) for line in text.splitlines())
    return aggregate(child.classification for child in children if child is not None)


def probe_session(
    root_pid: int,
    source: ProcessSnapshotSource,
    config: ClassifierConfig,
) -> str:
    """Classify a session and render the result in the line protocol."""
    return "\n".join(format_line(child) for child in classify_session(root_pid, source, config))
