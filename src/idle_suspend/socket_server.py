"""Unix socket server for activity pokes and status queries.

Protocol: newline-delimited JSON, one reply per request.

Requests:
- {"type": "activity"}: user input observed -> {"type": "ack"}
- {"type": "status"}: -> {"type": "status", "state": {...engine snapshot...}}
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger()


class SocketServer:
    """Unix domain socket server feeding the daemon's event queue."""

    def __init__(
        self,
        socket_path: Path,
        on_activity: Callable[[], None],
        get_snapshot: Callable[[], dict[str, Any]],
    ) -> None:
        self.socket_path = socket_path
        self._on_activity = on_activity
        self._get_snapshot = get_snapshot
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Owner only: pokes can postpone a suspend
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    def _reply_for(self, line: bytes) -> dict[str, Any]:
        try:
            msg = json.loads(line.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("invalid_client_message")
            return {"type": "error", "error": "invalid json"}

        msg_type = msg.get("type") if isinstance(msg, dict) else None
        if msg_type == "activity":
            self._on_activity()
            return {"type": "ack"}
        if msg_type == "status":
            return {"type": "status", "state": self._get_snapshot()}

        log.warning("unknown_client_message", msg_type=msg_type)
        return {"type": "error", "error": f"unknown message type: {msg_type!r}"}

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Answer requests until the client disconnects."""
        self._clients.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ConnectionError:
                    break
                if not line:
                    break
                if not line.strip():
                    continue

                reply = self._reply_for(line)
                writer.write(json.dumps(reply).encode() + b"\n")
                await writer.drain()
        except ConnectionError:
            log.debug("socket_client_dropped")
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
