"""tabmux daemon: main orchestrator.

Startup sequence:
1. Logging configuration
2. State store and browser tool client pool
3. Reconciliation engine
4. control.sock for tool-call events
5. MCP server (started alongside, see _run_daemon_and_mcp)
"""
from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import structlog

from tabmux import config as config_module
from tabmux.config import Config
from tabmux.control import ControlServer
from tabmux.engine import BrowserTabEngine
from tabmux.mcp_server import create_server, run_server
from tabmux.state_manager import BrowserStateManager, SqliteStateStore
from tabmux.tool_client import McpClientPool

log = structlog.get_logger(__name__)


def _configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")


class Daemon:
    """Owns the engine and every long-lived resource around it."""

    def __init__(
        self,
        cfg: Config,
        pool: Optional[McpClientPool] = None,
        mcp_ready: Optional[asyncio.Event] = None,
    ) -> None:
        self.cfg = cfg
        self._mcp_ready = mcp_ready
        self._pool = pool or McpClientPool(cfg.gateway_url)
        self._running = False

        self.engine = BrowserTabEngine(
            BrowserStateManager(SqliteStateStore(cfg.db_path)),
            self._pool.get,
            cache_ttl=cfg.tabs_cache_ttl,
            tool_call_timeout=cfg.tool_call_timeout,
            cleanup_orphaned_tabs=cfg.cleanup_orphaned_tabs,
        )
        self._control: Optional[ControlServer] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create runtime directories and start the control socket."""
        self.cfg.runtime_dir.mkdir(parents=True, exist_ok=True)
        self.cfg.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._control = ControlServer(self.cfg.control_sock, on_tool_call=self._on_tool_call)
        await self._control.start()

        if self._mcp_ready is not None:
            await self._mcp_ready.wait()
            log.info("MCP server ready", url=self.cfg.mcp_url)

        self._running = True
        log.info(
            "daemon started",
            project=self.cfg.project_name,
            control_sock=str(self.cfg.control_sock),
            db_path=str(self.cfg.db_path),
        )

    async def run(self) -> None:
        """Start daemon and run until SIGTERM/SIGINT."""
        await self.start()

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        loop.add_signal_handler(signal.SIGINT, stop_event.set)

        await stop_event.wait()
        await self.stop()

    async def stop(self) -> None:
        """Graceful shutdown: stop ingesting, let selections settle, close sessions."""
        self._running = False
        log.info("daemon stopping")

        if self._control:
            await self._control.stop()
        await self.engine.aclose()
        await self._pool.aclose()

        log.info("daemon stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_tool_call(self, msg: dict) -> None:
        """Called when the chat backend reports a browser tool call."""
        log.info(
            "tool call event received",
            agent_id=msg["agent_id"],
            conversation_id=msg["conversation_id"],
            tool_name=msg["tool_name"],
        )
        arguments = msg.get("arguments")
        await self.engine.sync_from_tool_call(
            msg["agent_id"],
            msg["user_id"],
            msg["conversation_id"],
            msg["tool_name"],
            arguments if isinstance(arguments, dict) else {},
            msg.get("content") or [],
        )


# ------------------------------------------------------------------
# Entrypoint
# ------------------------------------------------------------------


async def _run_daemon_and_mcp(cfg: Config) -> None:
    """Run the daemon alongside the MCP server."""
    mcp_ready = asyncio.Event()
    daemon = Daemon(cfg, mcp_ready=mcp_ready)
    mcp = create_server(daemon.engine)

    async with asyncio.TaskGroup() as tg:
        server_task = tg.create_task(
            run_server(mcp, host=cfg.server_host, port=cfg.server_port, ready_event=mcp_ready)
        )
        await daemon.run()
        server_task.cancel()


def main(project_root: Path | None = None) -> None:
    """CLI entrypoint: tabmux"""
    _configure_logging()
    cfg = config_module.load(project_root)
    asyncio.run(_run_daemon_and_mcp(cfg))


if __name__ == "__main__":
    main()
