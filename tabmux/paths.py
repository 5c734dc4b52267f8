"""Central data path configuration for tabmux.

Persisted browser state lives outside the repo under ~/.tabmux/data/.
Override via TABMUX_DATA_DIR environment variable if needed.
"""
from __future__ import annotations

import os
from pathlib import Path

DATA_ROOT = Path(
    os.environ.get("TABMUX_DATA_DIR", str(Path.home() / ".tabmux" / "data"))
)

STATE_DB = DATA_ROOT / "browser_state.db"
