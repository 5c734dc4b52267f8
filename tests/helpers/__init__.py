"""Test helpers for tabmux."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

AGENT = "agent-1"
USER = "user-1"
CONV = "conv-1"


async def send_control_message(sock_path: Path, payload: dict | bytes, timeout: float = 2.0) -> None:
    """Connect to control.sock, send one line, and disconnect."""
    reader, writer = await asyncio.wait_for(
        asyncio.open_unix_connection(str(sock_path)),
        timeout=timeout,
    )
    data = payload if isinstance(payload, bytes) else json.dumps(payload).encode() + b"\n"
    writer.write(data)
    await writer.drain()
    await reader.read()  # server closes after handling
    writer.close()
    await writer.wait_closed()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
