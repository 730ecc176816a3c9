"""Process snapshots of a terminal session.

A snapshot source answers three questions about the live process table:
which processes are direct children of the session root, which process
holds a terminal's foreground process group, and whether a process has
children of its own. ProcFsSource answers them from /proc (Linux);
StaticSnapshotSource answers them from in-memory tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import psutil
import structlog

log = structlog.get_logger()

# Linux tty driver majors (Documentation/admin-guide/devices.txt)
_TTY_MAJOR = 4
_PTS_MAJOR_FIRST = 136
_PTS_MAJOR_LAST = 143


@dataclass(frozen=True)
class ChildProcessState:
    """OS state of one direct child of the session root.

    tty is None when the process has no controlling terminal.
    """

    pid: int
    name: str
    tty: int | None
    pgrp: int
    tpgid: int

    @property
    def is_foreground(self) -> bool:
        """True when this process's group owns its terminal."""
        return self.pgrp == self.tpgid


@dataclass(frozen=True)
class ForegroundProcess:
    """The process holding a terminal's foreground process group."""

    pid: int
    name: str
    cmdline: tuple[str, ...] = ()


class ProcessSnapshotSource(Protocol):
    """Read-only view of the process table used by the classifier."""

    def children(self, root_pid: int) -> list[ChildProcessState]: ...

    def foreground(self, pgid: int) -> ForegroundProcess | None: ...

    def has_children(self, pid: int) -> bool: ...


def parse_stat(text: str) -> tuple[str, int, int, int] | None:
    """Parse /proc/<pid>/stat into (name, pgrp, tty_nr, tpgid).

    The command name sits between the first '(' and the last ')' and may
    itself contain spaces or parentheses.

    Returns:
        Parsed fields, or None if the line is malformed
    """
    start = text.find("(")
    end = text.rfind(")")
    if start < 0 or end < start:
        return None

    name = text[start + 1 : end]
    rest = text[end + 1 :].split()
    # rest: state ppid pgrp session tty_nr tpgid ...
    if len(rest) < 6:
        return None

    try:
        pgrp = int(rest[2])
        tty_nr = int(rest[4])
        tpgid = int(rest[5])
    except ValueError:
        return None

    return name, pgrp, tty_nr, tpgid


def tty_device_path(tty_nr: int) -> Path | None:
    """Map a stat tty_nr to its device node, or None if unrecognised."""
    major = (tty_nr >> 8) & 0xFFF
    minor = (tty_nr & 0xFF) | ((tty_nr >> 12) & 0xFFF00)

    if _PTS_MAJOR_FIRST <= major <= _PTS_MAJOR_LAST:
        return Path("/dev/pts") / str((major - _PTS_MAJOR_FIRST) * 256 + minor)
    if major == _TTY_MAJOR and minor < 64:
        return Path(f"/dev/tty{minor}")
    return None


class ProcFsSource:
    """Snapshot source backed by /proc and psutil."""

    def __init__(self, proc_root: Path = Path("/proc")):
        self.proc_root = proc_root

    def _read(self, pid: int, name: str) -> str | None:
        try:
            return (self.proc_root / str(pid) / name).read_text(errors="replace")
        except (FileNotFoundError, ProcessLookupError, PermissionError):
            return None

    def child_pids(self, root_pid: int) -> list[int]:
        """Direct children of root_pid, empty if the root is gone."""
        try:
            return [p.pid for p in psutil.Process(root_pid).children(recursive=False)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            log.debug("root_process_unavailable", root_pid=root_pid)
            return []

    def state(self, pid: int) -> ChildProcessState | None:
        """Read one process's terminal state, None if it vanished."""
        text = self._read(pid, "stat")
        if text is None:
            return None

        parsed = parse_stat(text)
        if parsed is None:
            log.debug("stat_unparseable", pid=pid)
            return None

        name, pgrp, tty_nr, tpgid = parsed
        has_tty = tty_nr != 0 and tpgid > 0
        return ChildProcessState(
            pid=pid,
            name=name,
            tty=tty_nr if has_tty else None,
            pgrp=pgrp,
            tpgid=tpgid,
        )

    def children(self, root_pid: int) -> list[ChildProcessState]:
        states = []
        for pid in self.child_pids(root_pid):
            child = self.state(pid)
            if child is not None:
                states.append(child)
        return states

    def foreground(self, pgid: int) -> ForegroundProcess | None:
        comm = self._read(pgid, "comm")
        if comm is None:
            return None

        raw_cmdline = self._read(pgid, "cmdline") or ""
        cmdline = tuple(arg for arg in raw_cmdline.split("\0") if arg)
        return ForegroundProcess(pid=pgid, name=comm.strip(), cmdline=cmdline)

    def has_children(self, pid: int) -> bool:
        try:
            return bool(psutil.Process(pid).children(recursive=False))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False


@dataclass
class StaticSnapshotSource:
    """In-memory snapshot source.

    Tables are plain attributes so callers can change them between polls,
    e.g. to simulate a foreground process spawning a child.
    """

    tree: dict[int, list[ChildProcessState]] = field(default_factory=dict)
    processes: dict[int, ForegroundProcess] = field(default_factory=dict)
    busy: set[int] = field(default_factory=set)

    def children(self, root_pid: int) -> list[ChildProcessState]:
        return list(self.tree.get(root_pid, []))

    def foreground(self, pgid: int) -> ForegroundProcess | None:
        return self.processes.get(pgid)

    def has_children(self, pid: int) -> bool:
        return pid in self.busy
