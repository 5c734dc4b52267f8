"""Structural invariant checks for BrowserState.

Checks run in a fixed order and the first violation wins, so a state with
several problems always reports the same one.
"""
from __future__ import annotations

from tabmux.state import duplicate_values
from tabmux.state_types import BrowserState, BrowserStateError, Err, Ok, Result


def validate_browser_state(state: BrowserState) -> Result[BrowserState, BrowserStateError]:
    tab_ids = [tab.id for tab in state.tabs]

    duplicate_ids = duplicate_values(tab_ids)
    if duplicate_ids:
        return Err(
            BrowserStateError(
                "DuplicateTabId", tab_id=duplicate_ids[0], tab_ids=tuple(duplicate_ids)
            )
        )

    duplicate_order = duplicate_values(state.tab_order)
    if duplicate_order:
        return Err(
            BrowserStateError("DuplicateTabOrder", tab_ids=tuple(duplicate_order))
        )

    if set(state.tab_order) != set(tab_ids):
        mismatched = sorted(set(state.tab_order) ^ set(tab_ids))
        return Err(BrowserStateError("TabOrderMismatch", tab_ids=tuple(mismatched)))

    if state.active_tab_id not in tab_ids:
        return Err(BrowserStateError("ActiveTabMissing", tab_id=state.active_tab_id))

    for tab in state.tabs:
        if not 0 <= tab.history_cursor < len(tab.history):
            return Err(
                BrowserStateError(
                    "HistoryCursorOutOfBounds",
                    tab_id=tab.id,
                    index=tab.history_cursor,
                    expected=len(tab.history),
                )
            )

    duplicate_indices = duplicate_values(
        tab.index for tab in state.tabs if tab.index is not None
    )
    if duplicate_indices:
        return Err(
            BrowserStateError("DuplicateTabIndex", indices=tuple(duplicate_indices))
        )

    return Ok(state)
