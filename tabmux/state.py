"""Pure state transitions for a conversation's browser tabs.

Every function takes a BrowserState and returns a new one wrapped in Ok, or
an Err(BrowserStateError). Inputs are never mutated.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Callable, Iterable, TypeVar

from tabmux.state_types import (
    BrowserState,
    BrowserStateError,
    BrowserStateUpdate,
    BrowserTabId,
    BrowserTabState,
    BrowserTabsListEntry,
    Err,
    NavigateEffect,
    Ok,
    Result,
)

V = TypeVar("V")


def duplicate_values(values: Iterable[V]) -> list[V]:
    """Return each value that appears more than once, in first-repeat order."""
    seen: set = set()
    duplicates: list[V] = []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates


def _update_tab(
    tabs: tuple[BrowserTabState, ...],
    tab_id: BrowserTabId,
    updater: Callable[[BrowserTabState], BrowserTabState],
) -> tuple[BrowserTabState, ...]:
    return tuple(updater(tab) if tab.id == tab_id else tab for tab in tabs)


def resolve_index_for_tab(
    state: BrowserState, tab_id: BrowserTabId
) -> Result[int, BrowserStateError]:
    tab = state.find_tab(tab_id)
    if tab is None:
        return Err(BrowserStateError("TabNotFound", tab_id=tab_id))
    if tab.index is None:
        return Err(BrowserStateError("TabIndexUnavailable", tab_id=tab_id))
    return Ok(tab.index)


def resolve_tab_id_for_index(
    state: BrowserState, index: int
) -> Result[BrowserTabId, BrowserStateError]:
    for tab in state.tabs:
        if tab.index is not None and tab.index == index:
            return Ok(tab.id)
    return Err(BrowserStateError("TabIndexNotFound", index=index))


def apply_tabs_list(
    state: BrowserState, entries: list[BrowserTabsListEntry]
) -> Result[BrowserState, BrowserStateError]:
    """Re-zip a fresh tab listing against the tabs in tab order.

    The listing must have exactly one entry per logical tab; the entry marked
    current (if any) becomes the active tab.
    """
    if len(entries) != len(state.tabs):
        return Err(
            BrowserStateError(
                "TabCountMismatch", expected=len(state.tabs), actual=len(entries)
            )
        )

    duplicates = duplicate_values(entry.index for entry in entries)
    if duplicates:
        return Err(BrowserStateError("DuplicateTabIndex", indices=tuple(duplicates)))

    current = [entry for entry in entries if entry.is_current]
    if len(current) > 1:
        return Err(
            BrowserStateError(
                "MultipleCurrentTabs", indices=tuple(e.index for e in current)
            )
        )

    index_by_tab = {
        tab_id: entry.index for tab_id, entry in zip(state.tab_order, entries)
    }
    tabs = tuple(
        replace(tab, index=index_by_tab[tab.id]) if tab.id in index_by_tab else tab
        for tab in state.tabs
    )

    active_tab_id = state.active_tab_id
    if current:
        position = entries.index(current[0])
        active_tab_id = state.tab_order[position]

    return Ok(replace(state, active_tab_id=active_tab_id, tabs=tabs))


def apply_tabs_create(
    state: BrowserState, tab_id: BrowserTabId, index: int, url: str
) -> Result[BrowserState, BrowserStateError]:
    """Append a freshly opened tab and make it active.

    A tab that still claims ``index`` has gone stale and loses its index.
    """
    if state.find_tab(tab_id) is not None:
        return Err(BrowserStateError("DuplicateTabId", tab_id=tab_id))

    tabs = tuple(
        replace(tab, index=None) if tab.index == index else tab for tab in state.tabs
    )
    new_tab = BrowserTabState(
        id=tab_id, index=index, current=url, history=(url,), history_cursor=0
    )
    return Ok(
        BrowserState(
            active_tab_id=tab_id,
            tab_order=state.tab_order + (tab_id,),
            tabs=tabs + (new_tab,),
        )
    )


def apply_tabs_close(
    state: BrowserState, index: int
) -> Result[BrowserState, BrowserStateError]:
    """Remove the tab at physical ``index``; higher indices shift down by one."""
    resolved = resolve_tab_id_for_index(state, index)
    if isinstance(resolved, Err):
        return resolved
    closed_id = resolved.value

    if len(state.tabs) <= 1:
        return Err(BrowserStateError("CannotCloseLastTab"))

    remaining = tuple(
        replace(tab, index=tab.index - 1)
        if tab.index is not None and tab.index > index
        else tab
        for tab in state.tabs
        if tab.id != closed_id
    )
    remaining_order = tuple(tab_id for tab_id in state.tab_order if tab_id != closed_id)

    active_tab_id = state.active_tab_id
    if state.active_tab_id == closed_id:
        same_slot = [tab.id for tab in remaining if tab.index == index]
        if same_slot:
            active_tab_id = same_slot[0]
        else:
            position = state.tab_order.index(closed_id)
            if position > 0:
                active_tab_id = remaining_order[position - 1]
            else:
                active_tab_id = remaining_order[0]

    return Ok(
        BrowserState(
            active_tab_id=active_tab_id, tab_order=remaining_order, tabs=remaining
        )
    )


def apply_tabs_select(
    state: BrowserState, index: int
) -> Result[BrowserState, BrowserStateError]:
    resolved = resolve_tab_id_for_index(state, index)
    if isinstance(resolved, Err):
        return resolved
    return Ok(replace(state, active_tab_id=resolved.value))


def assign_tab_index(
    state: BrowserState, tab_id: BrowserTabId, index: int
) -> Result[BrowserState, BrowserStateError]:
    """Pin ``tab_id`` to a re-discovered physical index and make it active.

    Every other tab's index is cleared: nothing has verified them.
    """
    if state.find_tab(tab_id) is None:
        return Err(BrowserStateError("TabNotFound", tab_id=tab_id))
    tabs = tuple(
        replace(tab, index=index if tab.id == tab_id else None) for tab in state.tabs
    )
    return Ok(replace(state, active_tab_id=tab_id, tabs=tabs))


def apply_navigate(
    state: BrowserState, tab_id: BrowserTabId, url: str
) -> Result[BrowserState, BrowserStateError]:
    """Record a navigation; forward history past the cursor is discarded."""
    tab = state.find_tab(tab_id)
    if tab is None:
        return Err(BrowserStateError("TabNotFound", tab_id=tab_id))

    history = tab.history[: tab.history_cursor + 1] + (url,)
    updated = replace(tab, current=url, history=history, history_cursor=len(history) - 1)
    return Ok(replace(state, tabs=_update_tab(state.tabs, tab_id, lambda _: updated)))


def _move_cursor(
    state: BrowserState, tab_id: BrowserTabId, step: int
) -> Result[BrowserStateUpdate, BrowserStateError]:
    tab = state.find_tab(tab_id)
    if tab is None:
        return Err(BrowserStateError("TabNotFound", tab_id=tab_id))

    cursor = tab.history_cursor + step
    if cursor < 0:
        return Err(BrowserStateError("NoBackHistory", tab_id=tab_id))
    if cursor >= len(tab.history):
        return Err(BrowserStateError("NoForwardHistory", tab_id=tab_id))

    url = tab.history[cursor]
    updated = replace(tab, current=url, history_cursor=cursor)
    return Ok(
        BrowserStateUpdate(
            state=replace(state, tabs=_update_tab(state.tabs, tab_id, lambda _: updated)),
            effect=NavigateEffect(tab_id=tab_id, url=url),
        )
    )


def apply_back(
    state: BrowserState, tab_id: BrowserTabId
) -> Result[BrowserStateUpdate, BrowserStateError]:
    return _move_cursor(state, tab_id, -1)


def apply_forward(
    state: BrowserState, tab_id: BrowserTabId
) -> Result[BrowserStateUpdate, BrowserStateError]:
    return _move_cursor(state, tab_id, 1)
