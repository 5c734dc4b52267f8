"""Tab selection and recovery against a scripted browser.

Layer: Integration (engine + sqlite state + FakeBrowser).
"""
import asyncio
import json

from tabmux.conversion import create_initial_state
from tabmux.state_manager import SqliteStateStore
from tabmux.state_types import BrowserState, BrowserTabState
from tests.helpers import AGENT, CONV, USER
from tests.helpers.fake_browser import FakeBrowser


async def _state(state_manager, key):
    return (await state_manager.get_or_load(key)).value


def _stored(tab_id="t", url="https://stored", index=None, history=None):
    history = tuple(history or (url,))
    tab = BrowserTabState(id=tab_id, index=index, current=history[-1], history=history, history_cursor=len(history) - 1)
    return BrowserState(active_tab_id=tab_id, tab_order=(tab_id,), tabs=(tab,))


# ---------------------------------------------------------------------------
# No stored state
# ---------------------------------------------------------------------------

async def test_first_use_reuses_blank_tab(engine, browser, state_manager, key):
    """A lone about:blank tab at index 0 is reused; no "new" call."""
    result = await engine.select_or_create_tab(AGENT, USER, CONV)

    assert result.success and result.tab_index == 0
    assert browser.actions("new") == []
    assert browser.actions("select") == [{"action": "select", "index": 0}]
    state = await _state(state_manager, key)
    assert state.active_tab.index == 0
    assert state.active_tab.history == ("about:blank",)


async def test_first_use_creates_tab_when_none_blank(make_engine, state_manager, key):
    browser = FakeBrowser(["https://someone-else"])
    engine = make_engine(browser)

    result = await engine.select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    assert len(browser.actions("new")) == 1
    assert browser.current == 1
    assert (await _state(state_manager, key)).active_tab.index == 1


async def test_new_index_found_by_listing_diff(make_engine):
    """Before [1, 4], after [1, 4, 7]: the new tab is 7."""
    browser = FakeBrowser({1: "https://a", 4: "https://b"}, current=1)
    browser.new_indices = [7]
    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 7
    assert browser.actions("select")[-1] == {"action": "select", "index": 7}


async def test_new_index_may_reuse_a_low_number(make_engine):
    """Before [5, 7], after [5, 7, 3]: the new tab is 3, not max + 1."""
    browser = FakeBrowser({5: "https://a", 7: "https://b"}, current=5)
    browser.new_indices = [3]
    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)
    assert result.tab_index == 3


async def test_concurrent_selection_opens_one_tab(make_engine):
    browser = FakeBrowser(["https://busy"], delay=0.01)
    engine = make_engine(browser)

    first, second = await asyncio.gather(
        engine.select_or_create_tab(AGENT, USER, CONV),
        engine.select_or_create_tab(AGENT, USER, CONV),
    )

    assert len(browser.actions("new")) == 1
    assert first.tab_index == second.tab_index == 1


async def test_conversations_get_their_own_tabs(make_engine):
    browser = FakeBrowser(["https://busy"])
    engine = make_engine(browser)

    a = await engine.select_or_create_tab(AGENT, USER, "conv-a")
    b = await engine.select_or_create_tab(AGENT, USER, "conv-b")
    again = await engine.select_or_create_tab(AGENT, USER, "conv-a")

    assert a.tab_index == 1
    # conv-a's tab is still blank, so conv-b reuses it.
    assert b.tab_index == 1
    assert again.tab_index == 1
    assert len(browser.actions("new")) == 1


# ---------------------------------------------------------------------------
# Stored state, index known
# ---------------------------------------------------------------------------

async def test_verified_index_is_reused(engine, browser):
    await engine.select_or_create_tab(AGENT, USER, CONV)
    result = await engine.select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 0
    assert browser.actions("new") == []
    assert len(browser.actions("select")) == 2


async def test_live_navigation_is_folded_into_history(make_engine, state_manager, key):
    """Stored https://a at index 2; the page shows https://x (clicked link)."""
    browser = FakeBrowser({0: "https://z", 2: "https://x"}, current=2, listing_format="object")
    await state_manager.set(key, _stored(url="https://a", index=2))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 2
    tab = (await _state(state_manager, key)).active_tab
    assert tab.current == "https://x"
    assert tab.history == ("https://a", "https://x")


async def test_stale_current_index_triggers_url_recovery(make_engine, state_manager, key):
    """Stored index 1 -> https://stored; the browser still reports 0 as current,
    index 1 serves another page and index 3 serves ours."""
    browser = FakeBrowser({0: "https://home", 1: "https://wrong", 3: "https://stored"})
    browser.stuck_current = 0
    await state_manager.set(key, _stored(index=1))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 3
    assert browser.actions("select")[-1] == {"action": "select", "index": 3}
    assert (await _state(state_manager, key)).active_tab.index == 3
    assert browser.actions("new") == []


async def test_reused_index_is_not_mistaken_for_navigation(make_engine, state_manager, key):
    """Index 1 now serves https://b while https://a lives at index 3."""
    browser = FakeBrowser({0: "https://home", 1: "https://b", 3: "https://a"})
    await state_manager.set(key, _stored(url="https://a", index=1))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 3
    tab = (await _state(state_manager, key)).active_tab
    assert tab.index == 3
    assert tab.history == ("https://a",)


async def test_wiped_page_is_restored(make_engine, state_manager, key):
    """Index still valid but the tool restarted and the page is blank."""
    browser = FakeBrowser(["about:blank"])
    await state_manager.set(key, _stored(url="https://a", index=0))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 0
    assert browser.navigations() == ["https://a"]
    assert (await _state(state_manager, key)).active_tab.current == "https://a"


async def test_failed_select_falls_back_to_recovery(make_engine, state_manager, key):
    browser = FakeBrowser(["https://a"])
    await state_manager.set(key, _stored(url="https://a", index=5))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 0
    assert (await _state(state_manager, key)).active_tab.index == 0


# ---------------------------------------------------------------------------
# Stored state after restart (no index)
# ---------------------------------------------------------------------------

async def test_restart_recovers_by_url(make_engine, state_manager, key):
    browser = FakeBrowser(["https://other", "https://stored"])
    await state_manager.set(key, _stored())

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    assert browser.navigations() == []


async def test_restart_recovers_url_with_parentheses_from_text_listing(make_engine, state_manager, key):
    wiki = "https://en.wikipedia.org/wiki/Python_(programming_language)"
    browser = FakeBrowser(["https://other", wiki], listing_format="text")
    await state_manager.set(key, _stored(url=wiki))

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    assert browser.actions("new") == []
    assert browser.navigations() == []
    assert (await _state(state_manager, key)).active_tab.index == 1


async def test_restart_reuses_blank_tab_and_restores_url(make_engine, state_manager, key):
    """Two live tabs for one stored tab: counts differ, blank tab 0 is reused."""
    browser = FakeBrowser(["about:blank", "https://other"])
    await state_manager.set(key, _stored())

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 0
    assert browser.actions("new") == []
    assert browser.navigations() == ["https://stored"]
    assert browser.urls[0] == "https://stored"
    assert (await _state(state_manager, key)).active_tab.index == 0


async def test_restart_creates_tab_and_restores_url(make_engine, state_manager, key):
    browser = FakeBrowser(["https://other"])
    await state_manager.set(key, _stored())

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    assert len(browser.actions("new")) == 1
    assert browser.urls == {0: "https://other", 1: "https://stored"}


async def test_recovery_clears_unverified_indices_of_other_tabs(make_engine, state_manager, key):
    state = BrowserState(
        active_tab_id="b",
        tab_order=("a", "b"),
        tabs=(
            BrowserTabState(id="a", index=0, current="https://a", history=("https://a",), history_cursor=0),
            BrowserTabState(id="b", index=None, current="https://b", history=("https://b",), history_cursor=0),
        ),
    )
    await state_manager.set(key, state)
    browser = FakeBrowser(["https://a", "https://b"])

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    stored = await _state(state_manager, key)
    assert [t.index for t in stored.tabs] == [None, 1]


async def test_invalid_stored_state_is_discarded(make_engine, state_manager, test_config, key):
    await SqliteStateStore(test_config.db_path).save(key, json.dumps({
        "active_tab_id": "ghost",
        "tab_order": ["t"],
        "tabs": {"t": {"current": "https://a", "history": ["https://a"], "history_cursor": 0}},
    }))

    result = await make_engine(FakeBrowser()).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 0
    state = await _state(state_manager, key)
    assert state.active_tab_id != "ghost"
    assert state.active_tab.current == "about:blank"


# ---------------------------------------------------------------------------
# Degraded modes and failures
# ---------------------------------------------------------------------------

async def test_no_tabs_tool_shares_tab_zero(make_engine, state_manager, key):
    browser = FakeBrowser(tool_names=["browser_navigate", "browser_snapshot"])
    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.success and result.tab_index == 0
    assert browser.calls == []
    assert await _state(state_manager, key) is None


async def test_no_client_is_unsuccessful(make_engine):
    result = await make_engine(None).select_or_create_tab(AGENT, USER, CONV)
    assert not result.success
    assert "unavailable" in result.error


async def test_tool_error_persists_nothing(engine, browser, state_manager, key):
    browser.fail("browser_tabs", "list", "browser crashed")
    result = await engine.select_or_create_tab(AGENT, USER, CONV)

    assert not result.success
    assert "browser crashed" in result.error
    assert await _state(state_manager, key) is None


async def test_tool_timeout_is_a_failure(make_engine, state_manager, key):
    browser = FakeBrowser(delay=0.2)
    result = await make_engine(browser, tool_call_timeout=0.05).select_or_create_tab(AGENT, USER, CONV)

    assert not result.success
    assert "timed out" in result.error
    assert await _state(state_manager, key) is None


async def test_selection_after_failure_retries_cleanly(engine, browser):
    browser.fail("browser_tabs", "select")
    assert not (await engine.select_or_create_tab(AGENT, USER, CONV)).success
    assert (await engine.select_or_create_tab(AGENT, USER, CONV)).tab_index == 0


async def test_orphaned_tabs_closed_once_per_agent(make_engine):
    browser = FakeBrowser(["about:blank", "https://a", "https://b"])
    engine = make_engine(browser, cleanup_orphaned_tabs=True)

    await engine.select_or_create_tab(AGENT, USER, "conv-a")
    assert browser.actions("close") == [
        {"action": "close", "index": 2},
        {"action": "close", "index": 1},
    ]
    assert browser.urls == {0: "about:blank"}

    await engine.select_or_create_tab(AGENT, USER, "conv-b")
    assert len(browser.actions("close")) == 2


async def test_restart_state_without_index_from_initial_state(make_engine, state_manager, key):
    """create_initial_state without index behaves like a reloaded state."""
    await state_manager.set(key, create_initial_state("t", "about:blank"))
    browser = FakeBrowser(["https://x", "about:blank"])

    result = await make_engine(browser).select_or_create_tab(AGENT, USER, CONV)

    assert result.tab_index == 1
    assert browser.navigations() == []
