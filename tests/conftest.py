"""Shared test fixtures for tabmux.

Fixture tiers:
  test_config    isolated Config (tmp runtime dir and database)
  state_manager  BrowserStateManager over a tmp sqlite database
  browser        FakeBrowser with a single blank tab
  engine         BrowserTabEngine wired to state_manager and browser
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest

from tabmux.config import Config
from tabmux.engine import BrowserTabEngine
from tabmux.state_manager import BrowserStateManager, ConversationKey, SqliteStateStore
from tests.helpers import AGENT, CONV, USER, FakeClock
from tests.helpers.fake_browser import FakeBrowser

REPO_ROOT = Path(__file__).parent.parent


# ---------------------------------------------------------------------------
# Config fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Isolated Config for a single test: tmp runtime dir and database."""
    runtime = tmp_path / "runtime"
    runtime.mkdir()
    return Config(
        project_name=f"test-{os.getpid()}",
        runtime_dir=runtime,
        db_path=tmp_path / "data" / "browser_state.db",
        project_root=REPO_ROOT,
        tool_call_timeout=2.0,      # short for tests
    )


# ---------------------------------------------------------------------------
# State / browser / engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def state_manager(test_config: Config) -> BrowserStateManager:
    return BrowserStateManager(SqliteStateStore(test_config.db_path))


@pytest.fixture
def key() -> ConversationKey:
    return ConversationKey(AGENT, USER, CONV)


@pytest.fixture
def browser() -> FakeBrowser:
    """One physical tab, blank, at index 0."""
    return FakeBrowser()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_engine(state_manager: BrowserStateManager, test_config: Config, clock: FakeClock):
    """Factory fixture: engine bound to a given FakeBrowser (or None for no client)."""

    def _factory(browser: FakeBrowser | None, **kwargs) -> BrowserTabEngine:
        async def provider(agent_id: str, user_id: str):
            return browser

        kwargs.setdefault("tool_call_timeout", test_config.tool_call_timeout)
        kwargs.setdefault("clock", clock)
        return BrowserTabEngine(state_manager, provider, **kwargs)

    return _factory


@pytest.fixture
async def engine(make_engine, browser: FakeBrowser) -> AsyncGenerator[BrowserTabEngine, None]:
    e = make_engine(browser)
    yield e
    await e.aclose()
