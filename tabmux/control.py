"""Unix control socket for tabmux.

control.sock: receives tool-call events from the chat backend (one-shot
connections). Each connection sends one JSON line and disconnects:

    {"type": "tool_call", "agent_id": "...", "user_id": "...",
     "conversation_id": "...", "tool_name": "browser_tabs",
     "arguments": {"action": "new"}, "content": [{"type": "text", ...}]}
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable

log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("agent_id", "user_id", "conversation_id", "tool_name")


class ControlServer:
    """Receives tool-call events on control.sock and hands them to a callback."""

    def __init__(
        self,
        sock_path: Path,
        on_tool_call: Callable[[dict], Awaitable[None]],
    ) -> None:
        self.sock_path = sock_path
        self._on_tool_call = on_tool_call
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        sock_path = str(self.sock_path)
        self.sock_path.parent.mkdir(parents=True, exist_ok=True)
        self.sock_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=sock_path
        )
        log.info("control.sock listening", extra={"path": sock_path})

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        self.sock_path.unlink(missing_ok=True)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            if not line:
                return
            try:
                msg = json.loads(line.decode())
            except json.JSONDecodeError:
                log.warning("control: invalid JSON")
                return
            if not isinstance(msg, dict):
                log.warning("control: message is not an object")
                return
            msg_type = msg.get("type")
            if msg_type == "tool_call":
                missing = [f for f in REQUIRED_FIELDS if not isinstance(msg.get(f), str)]
                if missing:
                    log.warning("control: tool_call missing fields", extra={"missing": missing})
                    return
                await self._on_tool_call(msg)
            else:
                log.warning("control: unknown message type", extra={"type": msg_type})
        except asyncio.TimeoutError:
            log.warning("control: connection timed out")
        except Exception as e:
            log.error("control: error handling message", extra={"error": str(e)})
        finally:
            try:
                writer.close()
            except Exception:
                pass
