"""Short-lived cache of tab listings per (agent, user, tool).

Listings go stale the moment anything touches the browser, so entries live
for a few seconds and are dropped after every mutating tool call. Mutating
decisions never read from here; they ask the tool with force_refresh.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, NamedTuple

from tabmux.tabs_parser import TabsListing

DEFAULT_TTL = 3.0


class CacheKey(NamedTuple):
    agent_id: str
    user_id: str
    tool_name: str


@dataclass
class _Entry:
    listing: TabsListing
    stored_at: float


class TabsListCache:
    def __init__(
        self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}

    def get(self, key: CacheKey) -> TabsListing | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self._ttl:
            del self._entries[key]
            return None
        return entry.listing

    def set(self, key: CacheKey, listing: TabsListing) -> None:
        self._entries[key] = _Entry(listing=listing, stored_at=self._clock())

    def invalidate(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def invalidate_agent(self, agent_id: str, user_id: str) -> None:
        """Drop every tool's listing for one (agent, user)."""
        for key in [k for k in self._entries if k.agent_id == agent_id and k.user_id == user_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
