"""Conversion between runtime and persisted browser state.

Physical indices never cross a restart, so the persisted form drops them and
every tab comes back with ``index=None``.
"""
from __future__ import annotations

import uuid

from tabmux.state_types import (
    BrowserState,
    BrowserTabId,
    BrowserTabState,
    PersistedBrowserState,
    PersistedBrowserTabState,
)


def generate_tab_id() -> BrowserTabId:
    return uuid.uuid4().hex


def create_initial_state(
    tab_id: BrowserTabId, url: str, index: int | None = None
) -> BrowserState:
    """Single-tab state whose only tab is active."""
    tab = BrowserTabState(
        id=tab_id, index=index, current=url, history=(url,), history_cursor=0
    )
    return BrowserState(active_tab_id=tab_id, tab_order=(tab_id,), tabs=(tab,))


def to_persisted_state(state: BrowserState) -> PersistedBrowserState:
    return PersistedBrowserState(
        active_tab_id=state.active_tab_id,
        tab_order=state.tab_order,
        tabs={
            tab.id: PersistedBrowserTabState(
                current=tab.current,
                history=tab.history,
                history_cursor=tab.history_cursor,
            )
            for tab in state.tabs
        },
    )


def to_runtime_state(persisted: PersistedBrowserState) -> BrowserState:
    """Rebuild runtime state; tabs follow tab_order, then any unlisted ids."""
    ordered_ids = [tab_id for tab_id in persisted.tab_order if tab_id in persisted.tabs]
    ordered_ids += [tab_id for tab_id in persisted.tabs if tab_id not in ordered_ids]
    tabs = tuple(
        BrowserTabState(
            id=tab_id,
            index=None,
            current=persisted.tabs[tab_id].current,
            history=persisted.tabs[tab_id].history,
            history_cursor=persisted.tabs[tab_id].history_cursor,
        )
        for tab_id in ordered_ids
    )
    return BrowserState(
        active_tab_id=persisted.active_tab_id,
        tab_order=persisted.tab_order,
        tabs=tabs,
    )


def persisted_to_dict(persisted: PersistedBrowserState) -> dict:
    return {
        "active_tab_id": persisted.active_tab_id,
        "tab_order": list(persisted.tab_order),
        "tabs": {
            tab_id: {
                "current": tab.current,
                "history": list(tab.history),
                "history_cursor": tab.history_cursor,
            }
            for tab_id, tab in persisted.tabs.items()
        },
    }


def persisted_from_dict(data: dict) -> PersistedBrowserState:
    """Parse the stored JSON shape. Raises ValueError on malformed payloads."""
    if not isinstance(data, dict):
        raise ValueError(f"persisted state must be an object, got {type(data).__name__}")
    try:
        active_tab_id = data["active_tab_id"]
        tab_order = data["tab_order"]
        raw_tabs = data["tabs"]
    except KeyError as e:
        raise ValueError(f"persisted state missing field {e.args[0]!r}") from e

    if not isinstance(active_tab_id, str):
        raise ValueError("active_tab_id must be a string")
    if not isinstance(tab_order, list) or not all(isinstance(t, str) for t in tab_order):
        raise ValueError("tab_order must be a list of strings")
    if not isinstance(raw_tabs, dict):
        raise ValueError("tabs must be an object keyed by tab id")

    tabs: dict[BrowserTabId, PersistedBrowserTabState] = {}
    for tab_id, raw in raw_tabs.items():
        if not isinstance(raw, dict):
            raise ValueError(f"tab {tab_id!r} must be an object")
        current = raw.get("current")
        history = raw.get("history")
        cursor = raw.get("history_cursor")
        if not isinstance(current, str):
            raise ValueError(f"tab {tab_id!r}: current must be a string")
        if not isinstance(history, list) or not all(isinstance(u, str) for u in history):
            raise ValueError(f"tab {tab_id!r}: history must be a list of strings")
        if not isinstance(cursor, int) or isinstance(cursor, bool):
            raise ValueError(f"tab {tab_id!r}: history_cursor must be an integer")
        tabs[tab_id] = PersistedBrowserTabState(
            current=current, history=tuple(history), history_cursor=cursor
        )

    return PersistedBrowserState(
        active_tab_id=active_tab_id, tab_order=tuple(tab_order), tabs=tabs
    )
