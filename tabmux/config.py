"""Load and provide tabmux configuration from tabmux.toml."""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from tabmux.paths import STATE_DB

DEFAULT_GATEWAY_URL = "http://127.0.0.1:9000/agents/{agent_id}/sse"


@dataclass
class Config:
    project_name: str
    runtime_dir: Path
    db_path: Path
    project_root: Path
    gateway_url: str = DEFAULT_GATEWAY_URL  # {agent_id} / {user_id} are substituted per client
    tool_call_timeout: float = 30.0
    tabs_cache_ttl: float = 3.0
    cleanup_orphaned_tabs: bool = False  # close every tab but 0 on first use after restart
    server_host: str = "127.0.0.1"
    server_port: int = 8765

    @property
    def control_sock(self) -> Path:
        return self.runtime_dir / "control.sock"

    @property
    def mcp_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}/sse"


def load(project_root: Path | None = None) -> Config:
    """Load config from tabmux.toml; all fields have defaults.

    Raises ValueError for values that cannot work at runtime.
    """
    if project_root is None:
        project_root = Path.cwd()

    toml_path = project_root / "tabmux.toml"
    data: dict = {}
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)

    project = data.get("project", {})
    runtime = data.get("runtime", {})
    storage = data.get("storage", {})
    gateway = data.get("gateway", {})
    tabs = data.get("tabs", {})
    server = data.get("server", {})

    project_name = project.get("name") or os.path.basename(project_root)

    cfg = Config(
        project_name=project_name,
        runtime_dir=Path(runtime.get("dir", "/tmp/tabmux")),
        db_path=Path(storage.get("db_path", str(STATE_DB))).expanduser(),
        project_root=project_root.resolve(),
        gateway_url=gateway.get("url", DEFAULT_GATEWAY_URL),
        tool_call_timeout=float(gateway.get("tool_call_timeout", 30.0)),
        tabs_cache_ttl=float(tabs.get("cache_ttl", 3.0)),
        cleanup_orphaned_tabs=bool(tabs.get("cleanup_orphaned_tabs", False)),
        server_host=server.get("host", "127.0.0.1"),
        server_port=int(server.get("port", 8765)),
    )
    _check(cfg)
    return cfg


def _check(cfg: Config) -> None:
    if cfg.tabs_cache_ttl < 0:
        raise ValueError(f"tabs.cache_ttl must be >= 0, got {cfg.tabs_cache_ttl}")
    if cfg.tool_call_timeout <= 0:
        raise ValueError(
            f"gateway.tool_call_timeout must be > 0, got {cfg.tool_call_timeout}"
        )
    if not 0 < cfg.server_port < 65536:
        raise ValueError(f"server.port out of range: {cfg.server_port}")
