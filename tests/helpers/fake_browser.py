"""fake_browser: scripted stand-in for a Playwright-style MCP browser server.

Simulates the observable tool surface (not a real browser):

  browser_tabs           action = list | new | select | close
  browser_navigate       url
  browser_navigate_back  (no arguments)

Physical tabs are kept by index. Knobs for drift scenarios:

  listing_format   "json" (array), "object" ({currentIndex, tabs}) or "text"
  new_indices      indices handed to successive "new" calls (default: max + 1)
  stuck_current    index that listings report as current regardless of select
  redirects        url -> url the page actually lands on
  fail(...)        make the next matching call return isError
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

from tabmux.tool_client import ToolCallResult

DEFAULT_TOOLS = ["browser_tabs", "browser_navigate", "browser_navigate_back", "browser_snapshot"]


@dataclass
class FakeTab:
    url: str = "about:blank"
    title: str = ""
    history: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history = [self.url]


def _text(text: str) -> list[dict]:
    return [{"type": "text", "text": text}]


class FakeBrowser:
    def __init__(
        self,
        urls: list[str] | dict[int, str] | None = None,
        current: int = 0,
        tool_names: list[str] | None = None,
        listing_format: str = "json",
        delay: float = 0.0,
    ) -> None:
        if urls is None:
            urls = ["about:blank"]
        if isinstance(urls, list):
            urls = dict(enumerate(urls))
        self.tabs: dict[int, FakeTab] = {i: FakeTab(url=u) for i, u in urls.items()}
        self.current = current
        self.tool_names = list(DEFAULT_TOOLS if tool_names is None else tool_names)
        self.listing_format = listing_format
        self.delay = delay
        self.new_indices: list[int] = []
        self.stuck_current: int | None = None
        self.redirects: dict[str, str] = {}
        self.calls: list[tuple[str, dict]] = []
        self._failures: list[tuple[str, str | None, str]] = []

    # -- scripting ---------------------------------------------------------

    def fail(self, tool: str, action: str | None = None, message: str = "boom") -> None:
        """Make the next call of tool (and action, for browser_tabs) fail."""
        self._failures.append((tool, action, message))

    def actions(self, action: str) -> list[dict]:
        """Arguments of every browser_tabs call with the given action."""
        return [args for name, args in self.calls if name == "browser_tabs" and args.get("action") == action]

    def navigations(self) -> list[str]:
        return [args["url"] for name, args in self.calls if name == "browser_navigate"]

    @property
    def urls(self) -> dict[int, str]:
        return {i: tab.url for i, tab in sorted(self.tabs.items())}

    # -- BrowserToolClient ---------------------------------------------------

    async def list_tools(self) -> list[str]:
        return list(self.tool_names)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        self.calls.append((name, dict(arguments)))
        if self.delay:
            await asyncio.sleep(self.delay)

        for i, (tool, action, message) in enumerate(self._failures):
            if tool == name and (action is None or action == arguments.get("action")):
                del self._failures[i]
                return ToolCallResult(is_error=True, content=_text(message))

        if name == "browser_tabs":
            return self._tabs(arguments)
        if name == "browser_navigate":
            return self._navigate(arguments["url"])
        if name == "browser_navigate_back":
            return self._back()
        return ToolCallResult(is_error=True, content=_text(f"unknown tool {name}"))

    # -- tool behaviour ------------------------------------------------------

    def _tabs(self, arguments: dict[str, Any]) -> ToolCallResult:
        action = arguments.get("action")
        if action == "list":
            return self._listing()
        if action == "new":
            index = self.new_indices.pop(0) if self.new_indices else max(self.tabs, default=-1) + 1
            self.tabs[index] = FakeTab()
            self.current = index
            return self._listing()
        if action == "select":
            index = arguments.get("index")
            if index not in self.tabs:
                return ToolCallResult(is_error=True, content=_text(f"Tab {index} not found"))
            self.current = index
            return self._listing()
        if action == "close":
            index = arguments.get("index", self.current)
            if index not in self.tabs:
                return ToolCallResult(is_error=True, content=_text(f"Tab {index} not found"))
            del self.tabs[index]
            self.tabs = {(i - 1 if i > index else i): tab for i, tab in sorted(self.tabs.items())}
            if self.current > index or self.current not in self.tabs:
                self.current = max(self.current - 1, 0)
            return self._listing()
        return ToolCallResult(is_error=True, content=_text(f"unknown action {action}"))

    def _navigate(self, url: str) -> ToolCallResult:
        tab = self.tabs[self.current]
        tab.url = self.redirects.get(url, url)
        tab.history.append(tab.url)
        return ToolCallResult(content=_text(f"### Page state\n- Page URL: {tab.url}"))

    def _back(self) -> ToolCallResult:
        tab = self.tabs[self.current]
        if len(tab.history) > 1:
            tab.history.pop()
            tab.url = tab.history[-1]
        return ToolCallResult(content=_text(f"### Page state\n- Page URL: {tab.url}"))

    def _listing(self) -> ToolCallResult:
        current = self.current if self.stuck_current is None else self.stuck_current
        items = sorted(self.tabs.items())
        if self.listing_format == "text":
            lines = ["### Open tabs"]
            for i, tab in items:
                marker = "(current) " if i == current else ""
                lines.append(f"- {i}: {marker}[{tab.title}] ({tab.url})")
            return ToolCallResult(content=_text("\n".join(lines)))

        tabs = [{"index": i, "title": tab.title, "url": tab.url} for i, tab in items]
        if self.listing_format == "object":
            return ToolCallResult(content=_text(json.dumps({"currentIndex": current, "tabs": tabs})))
        for entry in tabs:
            entry["current"] = entry["index"] == current
        return ToolCallResult(content=_text(json.dumps(tabs)))
