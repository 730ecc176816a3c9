"""Runs the power action (suspend or stop) when a countdown expires."""

from __future__ import annotations

import asyncio

import structlog

from idle_suspend.config import ActionsConfig
from idle_suspend.engine import ActionOutcome

log = structlog.get_logger()


class SuspendInvoker:
    """Executes the configured command for an action.

    Each call runs the command once. The engine decides whether a call
    happens at all; this class never retries.
    """

    def __init__(self, config: ActionsConfig):
        self.config = config

    async def run(self, action: str) -> ActionOutcome:
        """Run the command for action and report how it went.

        Args:
            action: "suspend" or "stop"

        Returns:
            ActionOutcome with success flag and captured output
        """
        command = self.config.command_for(action)
        if command is None:
            return ActionOutcome(action=action, success=True, output="no command for action")

        log.info("action_starting", action=action, command=" ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            return ActionOutcome(action=action, success=False, output=str(e))

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.timeout_secs
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # Exited between timeout and kill
            await proc.wait()
            return ActionOutcome(
                action=action,
                success=False,
                output=f"timed out after {self.config.timeout_secs:.0f}s",
            )

        output = stdout.decode("utf-8", errors="replace").strip() if stdout else ""
        if proc.returncode != 0:
            return ActionOutcome(
                action=action,
                success=False,
                output=output or f"exit status {proc.returncode}",
            )
        return ActionOutcome(action=action, success=True, output=output)
