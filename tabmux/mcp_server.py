"""MCP server exposing per-conversation browser tab tools.

Transport: SSE over HTTP on <host>:<port> (127.0.0.1:8765 by default).
Chat backends connect to http://<host>:<port>/sse.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any

import uvicorn
from mcp.server.fastmcp import FastMCP

from tabmux.engine import BrowserTabEngine
from tabmux.errors import ToolUnavailable

log = logging.getLogger(__name__)


def _unavailable(e: ToolUnavailable) -> dict:
    log.warning("tool unavailable", extra={"capability": e.capability})
    return {"success": False, "error": str(e)}


def create_server(engine: BrowserTabEngine) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    mcp = FastMCP("tabmux")

    @mcp.tool()
    async def select_tab(agent_id: str, user_id: str, conversation_id: str) -> dict:
        """Select the conversation's own browser tab, creating it if needed.

        Returns {"success", "tab_index", "error"}.
        """
        return asdict(await engine.select_or_create_tab(agent_id, user_id, conversation_id))

    @mcp.tool()
    async def activate_tab(agent_id: str, user_id: str, conversation_id: str) -> dict:
        """Like select_tab, but fails when the browser has no tabs tool."""
        try:
            result = await engine.activate_tab(agent_id, user_id, conversation_id)
        except ToolUnavailable as e:
            return _unavailable(e)
        return asdict(result)

    @mcp.tool()
    async def navigate(agent_id: str, user_id: str, conversation_id: str, url: str) -> dict:
        """Open url in the conversation's tab and record it in its history."""
        try:
            result = await engine.navigate(agent_id, user_id, conversation_id, url)
        except ToolUnavailable as e:
            return _unavailable(e)
        return asdict(result)

    @mcp.tool()
    async def navigate_back(agent_id: str, user_id: str, conversation_id: str) -> dict:
        """Go one step back in the conversation tab's history."""
        try:
            result = await engine.navigate_back(agent_id, user_id, conversation_id)
        except ToolUnavailable as e:
            return _unavailable(e)
        return asdict(result)

    @mcp.tool()
    async def navigate_forward(agent_id: str, user_id: str, conversation_id: str) -> dict:
        """Go one step forward in the conversation tab's history."""
        try:
            result = await engine.navigate_forward(agent_id, user_id, conversation_id)
        except ToolUnavailable as e:
            return _unavailable(e)
        return asdict(result)

    @mcp.tool()
    async def close_tab(agent_id: str, user_id: str, conversation_id: str) -> dict:
        """Close the conversation's tabs and forget its browser state. Always succeeds."""
        return asdict(await engine.close_tab(agent_id, user_id, conversation_id))

    @mcp.tool()
    async def list_tabs(agent_id: str, user_id: str) -> dict:
        """List the browser's physical tabs (may be up to a few seconds old)."""
        try:
            result = await engine.list_tabs(agent_id, user_id)
        except ToolUnavailable as e:
            return _unavailable(e)
        return asdict(result)

    @mcp.tool()
    async def sync_tool_call(
        agent_id: str,
        user_id: str,
        conversation_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        content: list[dict[str, Any]] | None = None,
    ) -> str:
        """Report a browser tool call the AI made directly, so tab state follows it.

        Returns 'ok'; unrecognised or ambiguous calls are ignored.
        """
        await engine.sync_from_tool_call(
            agent_id, user_id, conversation_id, tool_name, arguments, content or []
        )
        log.info("tool call synced", extra={"tool_name": tool_name})
        return "ok"

    return mcp


async def run_server(
    mcp: FastMCP,
    host: str,
    port: int,
    ready_event: asyncio.Event | None = None,
) -> None:
    """Serve *mcp* over SSE until cancelled.

    *ready_event* is set once startup has finished, also when the port could
    not be bound, so the daemon never waits on a server that will not come.
    """
    server = uvicorn.Server(
        uvicorn.Config(mcp.sse_app(), host=host, port=port, log_level="warning", access_log=False)
    )

    # server.serve() split open so readiness can be signalled after startup.
    server.config.load()
    server.lifespan = server.config.lifespan_class(server.config)
    await server.startup()
    if ready_event is not None:
        ready_event.set()
    if server.should_exit:
        log.error("MCP server failed to start", extra={"host": host, "port": port})
        return
    log.info("MCP server listening", extra={"url": f"http://{host}:{port}/sse"})
    await server.main_loop()
    await server.shutdown()
