"""Shared test fixtures for idle-suspend."""

import asyncio
import tempfile
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest

from idle_suspend.config import Config
from idle_suspend.process import ChildProcessState, ForegroundProcess, StaticSnapshotSource

ROOT_PID = 100
PTS_0 = (136 << 8) | 0  # tty_nr of /dev/pts/0


def make_child(
    pid: int = 200,
    name: str = "bash",
    tty: int | None = PTS_0,
    pgrp: int | None = None,
    tpgid: int | None = None,
) -> ChildProcessState:
    """Create a ChildProcessState. By default the child owns its terminal."""
    pgrp = pid if pgrp is None else pgrp
    tpgid = pgrp if tpgid is None else tpgid
    return ChildProcessState(pid=pid, name=name, tty=tty, pgrp=pgrp, tpgid=tpgid)


def make_busy_child(
    pid: int,
    fg_pid: int,
    fg_name: str,
    source: StaticSnapshotSource,
    cmdline: tuple[str, ...] = (),
) -> ChildProcessState:
    """Create a shell child whose terminal is held by another process."""
    source.processes[fg_pid] = ForegroundProcess(
        pid=fg_pid, name=fg_name, cmdline=cmdline or (fg_name,)
    )
    return make_child(pid=pid, pgrp=pid, tpgid=fg_pid)


@pytest.fixture
def source() -> StaticSnapshotSource:
    return StaticSnapshotSource()


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104 characters and pytest's
    tmp_path can exceed that, so use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="is_") as tmpdir:
        yield Path(tmpdir)


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "runtime_dir",
        new_callable=lambda: property(lambda self: base_path / "run")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch Config paths into a short temporary directory."""
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
