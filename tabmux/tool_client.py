"""MCP client access to an agent's browser tool server.

Each (agent, user) gets one long-lived SSE session from the gateway. The
session's transport contexts are entered and exited by a dedicated task
(``_serve``): anyio cancel scopes must be closed by the task that opened
them, and callers arrive from arbitrary tasks.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from mcp import ClientSession
from mcp.client.sse import sse_client

from tabmux.errors import ToolCallFailed

log = logging.getLogger(__name__)

# Seconds allowed for the SSE handshake and session initialisation.
CONNECT_TIMEOUT = 10.0


@dataclass
class ToolCallResult:
    is_error: bool = False
    content: list[dict] = field(default_factory=list)


class BrowserToolClient(Protocol):
    async def list_tools(self) -> list[str]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult: ...


class McpToolClient:
    """BrowserToolClient over an MCP SSE session."""

    def __init__(self, url: str, headers: dict[str, str] | None = None) -> None:
        self.url = url
        self._headers = headers
        self._session: ClientSession | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tool_names: list[str] | None = None

    async def connect(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._serve())
        ready = asyncio.create_task(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, self._task},
                timeout=CONNECT_TIMEOUT,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
        if not self._ready.is_set():
            task, self._task = self._task, None
            if task in done:
                exc = task.exception()
                raise ConnectionError(f"cannot connect to {self.url}: {exc}") from exc
            task.cancel()
            raise ConnectionError(f"timed out connecting to {self.url}")
        log.info("browser tool session open", extra={"url": self.url})

    async def _serve(self) -> None:
        async with sse_client(self.url, headers=self._headers) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                self._session = session
                self._ready.set()
                await self._closing.wait()
        self._session = None

    async def aclose(self) -> None:
        if self._task is None:
            return
        self._closing.set()
        task, self._task = self._task, None
        try:
            await task
        except Exception as e:
            log.warning("browser tool session closed uncleanly", extra={"error": str(e)})
        log.info("browser tool session closed", extra={"url": self.url})

    @property
    def connected(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    def _require_session(self, tool_name: str) -> ClientSession:
        if not self.connected:
            raise ToolCallFailed(tool_name, "browser tool session is not connected")
        return self._session

    async def list_tools(self) -> list[str]:
        if self._tool_names is None:
            session = self._require_session("list_tools")
            result = await session.list_tools()
            self._tool_names = [tool.name for tool in result.tools]
        return list(self._tool_names)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        session = self._require_session(name)
        try:
            result = await session.call_tool(name, arguments)
        except Exception as e:
            raise ToolCallFailed(name, str(e)) from e
        return ToolCallResult(
            is_error=bool(result.isError),
            content=[item.model_dump() for item in result.content],
        )


ClientFactory = Callable[[str, str], McpToolClient]


class McpClientPool:
    """Hands out one connected McpToolClient per (agent, user).

    A client whose session has died is replaced on the next request. Each
    pair connects under its own lock, so one slow gateway stalls only its
    own callers.
    """

    def __init__(self, url_template: str, factory: ClientFactory | None = None) -> None:
        self._url_template = url_template
        self._factory = factory or self._default_factory
        self._clients: dict[tuple[str, str], McpToolClient] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _default_factory(self, agent_id: str, user_id: str) -> McpToolClient:
        url = self._url_template.format(agent_id=agent_id, user_id=user_id)
        return McpToolClient(url, headers={"X-User-Id": user_id})

    async def get(self, agent_id: str, user_id: str) -> McpToolClient | None:
        """Connected client for the pair, or None when the gateway is unreachable."""
        key = (agent_id, user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            client = self._clients.get(key)
            if client is not None and client.connected:
                return client
            if client is not None:
                await client.aclose()
                del self._clients[key]

            client = self._factory(agent_id, user_id)
            try:
                await client.connect()
            except ConnectionError as e:
                log.warning(
                    "browser tool gateway unreachable",
                    extra={"agent_id": agent_id, "user_id": user_id, "error": str(e)},
                )
                return None
            self._clients[key] = client
            return client

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
