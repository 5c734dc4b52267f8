"""Parse browser tool results and recognise browser tool names.

The tabs tool answers ``list`` in one of three shapes, depending on the
server build:

* a JSON array of tab objects::

      [{"index": 0, "title": "Home", "url": "https://a", "current": true}]

* a JSON object carrying the current index separately::

      {"currentIndex": 1, "tabs": [{"index": 0, "url": "..."}, ...]}

* markdown-ish text, one tab per line::

      - 0: [Home] (https://a)
      - 1: (current) [Docs] (https://b)

Parsing is best effort. Entries without a usable index are dropped, and a
title or URL that cannot be read is left as None.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from tabmux.state_types import BLANK_URL, BrowserTabsListEntry

_INDEX_KEYS = ("index", "id", "tabIndex")
_CURRENT_FLAG_KEYS = ("current", "isCurrent", "is_current", "active", "selected")
_CURRENT_INDEX_KEYS = ("currentIndex", "current_index", "selectedIndex", "selected_index")

_LINE_RE = re.compile(r"^\s*-?\s*(\d+)\s*:(.*)$")
_CURRENT_MARKER = "(current)"
_TITLE_RE = re.compile(r"\[(.*)\]")
_NAMESPACE_RE = re.compile(r"^(?:\w+?__)?browser_")


@dataclass(frozen=True)
class TabInfo:
    index: int
    title: str | None = None
    url: str | None = None
    is_current: bool = False


@dataclass(frozen=True)
class TabsListing:
    tabs: tuple[TabInfo, ...] = ()
    current_index: int | None = None

    @property
    def current_url(self) -> str | None:
        if self.current_index is not None:
            for tab in self.tabs:
                if tab.index == self.current_index:
                    return tab.url
        for tab in self.tabs:
            if tab.is_current:
                return tab.url
        return None

    @property
    def indices(self) -> list[int]:
        return [tab.index for tab in self.tabs]

    def max_index(self) -> int:
        """Largest listed index, or -1 for an empty listing."""
        return max(self.indices, default=-1)

    def entries(self) -> list[BrowserTabsListEntry]:
        return [
            BrowserTabsListEntry(index=tab.index, is_current=tab.index == self.current_index)
            for tab in self.tabs
        ]

    def find_by_url(self, url: str) -> TabInfo | None:
        for tab in self.tabs:
            if tab.url == url:
                return tab
        return None

    def find_by_index(self, index: int) -> TabInfo | None:
        for tab in self.tabs:
            if tab.index == index:
                return tab
        return None

    def find_blank(self) -> TabInfo | None:
        """First tab known to show a blank page."""
        for tab in self.tabs:
            if tab.url is not None and is_blank_url(tab.url):
                return tab
        return None


def is_blank_url(url: str | None) -> bool:
    return url is not None and url.strip() in ("", BLANK_URL)


def extract_text_content(content: Any) -> str:
    """Join the text of every ``{"type": "text"}`` item of a tool result."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        item["text"]
        for item in content
        if isinstance(item, dict)
        and item.get("type") == "text"
        and isinstance(item.get("text"), str)
    ]
    return "\n".join(parts)


def parse_tab_index_value(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def is_current_tab_flag(flag: Any, candidate_index: int | None) -> bool:
    """Interpret the many spellings of "this tab is current".

    Booleans and the strings "true"/"1" are plain flags. Any other integer is
    taken to be the current index and compared against the candidate's.
    """
    if flag is True:
        return True
    if flag is None or flag is False:
        return False
    if isinstance(flag, str):
        normalized = flag.strip().lower()
        if normalized == "true":
            return True
        numeric = parse_tab_index_value(normalized)
    elif isinstance(flag, int):
        numeric = flag
    else:
        return False

    if numeric == 1:
        return True
    if numeric == 0 or numeric is None or candidate_index is None:
        return False
    return numeric == candidate_index


def _first_present(data: dict, keys: Iterable[str]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _tab_from_json(item: Any) -> TabInfo | None:
    if not isinstance(item, dict):
        return None
    index = parse_tab_index_value(_first_present(item, _INDEX_KEYS))
    if index is None:
        return None
    title = item.get("title")
    url = item.get("url")
    return TabInfo(
        index=index,
        title=title if isinstance(title, str) else None,
        url=url if isinstance(url, str) else None,
        is_current=is_current_tab_flag(_first_present(item, _CURRENT_FLAG_KEYS), index),
    )


def _listing_from_json_tabs(items: list, current_index: int | None) -> TabsListing:
    tabs = [tab for tab in (_tab_from_json(item) for item in items) if tab is not None]
    if current_index is None:
        flagged = [tab.index for tab in tabs if tab.is_current]
        if flagged:
            current_index = flagged[0]
    return TabsListing(tabs=tuple(tabs), current_index=current_index)


def _trailing_url(text: str) -> str | None:
    """Return the trailing ``(url)`` group; the URL may contain balanced parens."""
    text = text.rstrip()
    if not text.endswith(")"):
        return None
    depth = 0
    for start in range(len(text) - 1, -1, -1):
        char = text[start]
        if char.isspace():
            return None
        if char == ")":
            depth += 1
        elif char == "(":
            depth -= 1
            if depth == 0:
                if start > 0 and not text[start - 1].isspace():
                    return None
                return text[start + 1:-1] or None
    return None


def _parse_text_lines(text: str) -> TabsListing:
    tabs: list[TabInfo] = []
    current_index = None
    for line in text.splitlines():
        match = _LINE_RE.match(line)
        if match is None:
            continue
        index = int(match.group(1))
        rest = match.group(2)
        is_current = _CURRENT_MARKER in rest
        rest = rest.replace(_CURRENT_MARKER, "", 1)

        title_match = _TITLE_RE.search(rest)
        if title_match is not None:
            rest_after_title = rest[title_match.end():]
        else:
            rest_after_title = rest
        url = _trailing_url(rest_after_title)

        tabs.append(
            TabInfo(
                index=index,
                title=title_match.group(1) if title_match else None,
                url=url,
                is_current=is_current,
            )
        )
        if is_current and current_index is None:
            current_index = index
    return TabsListing(tabs=tuple(tabs), current_index=current_index)


def parse_tabs_listing(content: Any) -> TabsListing:
    text = extract_text_content(content)
    if not text.strip():
        return TabsListing()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, list):
        return _listing_from_json_tabs(parsed, None)
    if isinstance(parsed, dict):
        current_index = parse_tab_index_value(_first_present(parsed, _CURRENT_INDEX_KEYS))
        tabs = parsed.get("tabs")
        if isinstance(tabs, list):
            return _listing_from_json_tabs(tabs, current_index)
        return TabsListing(current_index=current_index)

    return _parse_text_lines(text)


def extract_current_tab_index(content: Any) -> int | None:
    return parse_tabs_listing(content).current_index


# --- Tool names --------------------------------------------------------------


def is_tabs_tool(name: str) -> bool:
    return "browser_tabs" in name


def is_navigate_back_tool(name: str) -> bool:
    return "browser_navigate_back" in name


def is_navigate_tool(name: str) -> bool:
    if "browser_navigate" in name:
        return not (is_navigate_back_tool(name) or "browser_navigate_forward" in name)
    return name.endswith("__navigate")


def is_browser_tool(name: str) -> bool:
    """True for ``browser_*`` tools, optionally namespaced as ``server__browser_*``."""
    return _NAMESPACE_RE.match(name) is not None


def find_tool(names: Iterable[str], matcher: Callable[[str], bool]) -> str | None:
    for name in names:
        if matcher(name):
            return name
    return None
