"""Keystroke detection from terminal device access times.

The kernel bumps a tty's atime when input is read from it (the same signal
`w` uses for its IDLE column). It is coarse (several seconds) but needs no
hooks in the shell or multiplexer.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import structlog

from idle_suspend.process import ChildProcessState, tty_device_path

log = structlog.get_logger()


class TtyInputWatcher:
    """Reports whether any watched terminal was read since the last check."""

    def __init__(self, resolve: Callable[[int], Path | None] = tty_device_path):
        self._resolve = resolve
        self._last_atime: dict[Path, float] = {}

    def check(self, children: Iterable[ChildProcessState]) -> bool:
        """Compare current atimes with the previous check.

        A device seen for the first time only records its baseline.
        Devices no longer attached to any child are forgotten.
        """
        seen: dict[Path, float] = {}
        activity = False

        for child in children:
            if child.tty is None:
                continue
            path = self._resolve(child.tty)
            if path is None or path in seen:
                continue
            try:
                atime = path.stat().st_atime
            except OSError:
                continue

            seen[path] = atime
            previous = self._last_atime.get(path)
            if previous is not None and atime > previous:
                log.debug("tty_input_seen", tty=str(path))
                activity = True

        self._last_atime = seen
        return activity
