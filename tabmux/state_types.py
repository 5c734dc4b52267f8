"""Browser tab state model.

A conversation owns a BrowserState: an ordered set of logical tabs, each with
its own navigation history. Physical tab indices (the numbers the browser tool
uses to address tabs) are runtime-only and may be unknown (None); they never
survive a process restart.

Fallible functions return Ok(value) / Err(error) instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")

BrowserTabId = str

BLANK_URL = "about:blank"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class BrowserTabState:
    id: BrowserTabId
    index: int | None
    current: str
    history: tuple[str, ...]
    history_cursor: int


@dataclass(frozen=True)
class BrowserState:
    active_tab_id: BrowserTabId
    tab_order: tuple[BrowserTabId, ...]
    tabs: tuple[BrowserTabState, ...]

    def find_tab(self, tab_id: BrowserTabId) -> BrowserTabState | None:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    @property
    def active_tab(self) -> BrowserTabState | None:
        return self.find_tab(self.active_tab_id)


@dataclass(frozen=True)
class BrowserTabsListEntry:
    index: int
    is_current: bool


@dataclass(frozen=True)
class NavigateEffect:
    tab_id: BrowserTabId
    url: str


BrowserEffect = NavigateEffect


@dataclass(frozen=True)
class BrowserStateUpdate:
    state: BrowserState
    effect: BrowserEffect


ErrorKind = Literal[
    "ActiveTabMissing",
    "DuplicateTabId",
    "DuplicateTabOrder",
    "TabOrderMismatch",
    "DuplicateTabIndex",
    "TabCountMismatch",
    "MultipleCurrentTabs",
    "HistoryCursorOutOfBounds",
    "CannotCloseLastTab",
    "NoBackHistory",
    "NoForwardHistory",
    "TabIndexUnavailable",
    "TabNotFound",
    "TabIndexNotFound",
]


@dataclass(frozen=True)
class BrowserStateError:
    """A violated invariant or a rejected transition.

    Only the context fields relevant to ``kind`` are set.
    """

    kind: ErrorKind
    tab_id: BrowserTabId | None = None
    tab_ids: tuple[BrowserTabId, ...] = ()
    index: int | None = None
    indices: tuple[int, ...] = ()
    expected: int | None = None
    actual: int | None = None

    def __str__(self) -> str:
        details = []
        if self.tab_id is not None:
            details.append(f"tab_id={self.tab_id}")
        if self.tab_ids:
            details.append(f"tab_ids={list(self.tab_ids)}")
        if self.index is not None:
            details.append(f"index={self.index}")
        if self.indices:
            details.append(f"indices={list(self.indices)}")
        if self.expected is not None:
            details.append(f"expected={self.expected}")
        if self.actual is not None:
            details.append(f"actual={self.actual}")
        if not details:
            return self.kind
        return f"{self.kind} ({', '.join(details)})"


# --- Persisted form ----------------------------------------------------------


@dataclass(frozen=True)
class PersistedBrowserTabState:
    current: str
    history: tuple[str, ...]
    history_cursor: int


@dataclass(frozen=True)
class PersistedBrowserState:
    active_tab_id: BrowserTabId
    tab_order: tuple[BrowserTabId, ...]
    tabs: dict[BrowserTabId, PersistedBrowserTabState] = field(default_factory=dict)
