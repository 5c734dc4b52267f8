"""Reconciliation engine: one stable logical tab per conversation.

The browser tool addresses tabs only by physical index, and indices shift
whenever any tab opens or closes, whoever opened or closed it. Every pass
therefore re-verifies the stored index against a fresh listing before
trusting it:

1. no tabs tool: every conversation shares tab 0;
2. load stored state (unreadable or invalid state is discarded);
3. select the stored index and confirm the browser agrees;
4. otherwise recover: a tab already showing our URL, then a blank tab,
   then a brand new tab;
5. with no stored state at all, reuse a blank tab or open one.

Every success path persists before returning. Tool failures come back as
unsuccessful results with nothing persisted.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from tabmux.conversion import create_initial_state, generate_tab_id
from tabmux.errors import StateStoreError, TabmuxError, ToolCallFailed, ToolUnavailable
from tabmux.selection_lock import SelectionLock
from tabmux.state import (
    apply_back,
    apply_forward,
    apply_navigate,
    apply_tabs_close,
    apply_tabs_create,
    apply_tabs_list,
    apply_tabs_select,
    assign_tab_index,
)
from tabmux.state_manager import BrowserStateManager, ConversationKey
from tabmux.state_types import BLANK_URL, BrowserState, BrowserTabState, Err
from tabmux.tabs_cache import DEFAULT_TTL, CacheKey, TabsListCache
from tabmux.tabs_parser import (
    TabsListing,
    extract_current_tab_index,
    extract_text_content,
    find_tool,
    is_blank_url,
    is_browser_tool,
    is_navigate_back_tool,
    is_navigate_tool,
    is_tabs_tool,
    parse_tab_index_value,
    parse_tabs_listing,
)
from tabmux.tool_client import BrowserToolClient, ToolCallResult
from tabmux.validation import validate_browser_state

log = structlog.get_logger(__name__)

ClientProvider = Callable[[str, str], Awaitable[Optional[BrowserToolClient]]]

MUTATING_TAB_ACTIONS = ("new", "select", "close")


@dataclass
class TabResult:
    success: bool
    tab_index: int | None = None
    tabs: list[dict] | None = None
    error: str | None = None


@dataclass
class NavigateResult:
    success: bool
    url: str | None = None
    error: str | None = None


@dataclass
class AvailabilityResult:
    available: bool
    tools: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class _Toolset:
    """One agent's browser client and the tool names resolved for it."""

    agent_id: str
    user_id: str
    client: BrowserToolClient
    tool_names: list[str]
    tabs_tool: str | None
    navigate_tool: str | None
    back_tool: str | None


class BrowserTabEngine:
    def __init__(
        self,
        state_manager: BrowserStateManager,
        client_provider: ClientProvider,
        *,
        cache_ttl: float = DEFAULT_TTL,
        tool_call_timeout: float = 30.0,
        cleanup_orphaned_tabs: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._states = state_manager
        self._client_provider = client_provider
        self._cache = TabsListCache(ttl=cache_ttl, clock=clock)
        self._lock: SelectionLock[TabResult] = SelectionLock()
        self._timeout = tool_call_timeout
        self._cleanup_orphaned = cleanup_orphaned_tabs
        self._cleaned_up: set[tuple[str, str]] = set()

    @property
    def cache(self) -> TabsListCache:
        return self._cache

    async def aclose(self) -> None:
        """Wait for in-flight selections, then drop cached listings."""
        await self._lock.wait_idle()
        self._cache.clear()

    # ------------------------------------------------------------------
    # Tool plumbing
    # ------------------------------------------------------------------

    async def _open(self, agent_id: str, user_id: str) -> _Toolset | None:
        client = await self._client_provider(agent_id, user_id)
        if client is None:
            return None
        try:
            names = await asyncio.wait_for(client.list_tools(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ToolCallFailed("list_tools", f"timed out after {self._timeout}s") from e
        except ToolCallFailed:
            raise
        except Exception as e:
            raise ToolCallFailed("list_tools", str(e)) from e
        return _Toolset(
            agent_id=agent_id,
            user_id=user_id,
            client=client,
            tool_names=names,
            tabs_tool=find_tool(names, is_tabs_tool),
            navigate_tool=find_tool(names, is_navigate_tool),
            back_tool=find_tool(names, is_navigate_back_tool),
        )

    async def _call(
        self, tools: _Toolset, name: str, arguments: dict[str, Any]
    ) -> ToolCallResult:
        try:
            result = await asyncio.wait_for(
                tools.client.call_tool(name, arguments), timeout=self._timeout
            )
        except asyncio.TimeoutError as e:
            raise ToolCallFailed(name, f"timed out after {self._timeout}s") from e
        except ToolCallFailed:
            raise
        except Exception as e:
            raise ToolCallFailed(name, str(e)) from e
        if result.is_error:
            raise ToolCallFailed(
                name, extract_text_content(result.content) or "tool reported an error"
            )
        return result

    async def _mutate(
        self, tools: _Toolset, name: str, arguments: dict[str, Any]
    ) -> ToolCallResult:
        try:
            return await self._call(tools, name, arguments)
        finally:
            self._cache.invalidate_agent(tools.agent_id, tools.user_id)

    async def _list(self, tools: _Toolset, force_refresh: bool = False) -> TabsListing:
        key = CacheKey(tools.agent_id, tools.user_id, tools.tabs_tool)
        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
        result = await self._call(tools, tools.tabs_tool, {"action": "list"})
        listing = parse_tabs_listing(result.content)
        self._cache.set(key, listing)
        return listing

    async def _select_index(self, tools: _Toolset, index: int) -> None:
        await self._mutate(tools, tools.tabs_tool, {"action": "select", "index": index})

    async def _restore_url(self, tools: _Toolset, url: str) -> None:
        if is_blank_url(url):
            return
        if tools.navigate_tool is None:
            log.warning("cannot restore url: no navigate tool", agent_id=tools.agent_id)
            return
        await self._mutate(tools, tools.navigate_tool, {"url": url})

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    async def _load_state(self, key: ConversationKey) -> BrowserState | None:
        """Stored state, or None when absent or untrustworthy."""
        loaded = await self._states.get_or_load(key)
        if isinstance(loaded, Err):
            log.warning(
                "browser state load failed, starting fresh",
                conversation_id=key.conversation_id,
                error=str(loaded.error),
            )
            return None
        state = loaded.value
        if state is None:
            return None

        validated = validate_browser_state(state)
        if isinstance(validated, Err):
            log.warning(
                "stored browser state rejected",
                kind="StateInvariantViolation",
                conversation_id=key.conversation_id,
                error=str(validated.error),
            )
            await self._states.clear(key)
            return None
        return state

    async def _persist(self, key: ConversationKey, state: BrowserState) -> None:
        saved = await self._states.set(key, state)
        if isinstance(saved, Err):
            raise StateStoreError(str(saved.error))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_or_create_tab(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> TabResult:
        """Make sure the conversation's own tab is the selected one."""
        key = ConversationKey(agent_id, user_id, conversation_id)
        return await self._lock.run(key, lambda: self._select_or_create(key))

    async def _select_or_create(self, key: ConversationKey) -> TabResult:
        try:
            tools = await self._open(key.agent_id, key.user_id)
            if tools is None:
                return TabResult(success=False, error="browser tool client unavailable")
            if tools.tabs_tool is None:
                log.info(
                    "no tabs tool, using shared browser tab",
                    agent_id=key.agent_id,
                    conversation_id=key.conversation_id,
                )
                return TabResult(success=True, tab_index=0)

            await self._cleanup_orphaned_tabs(tools)

            state = await self._load_state(key)
            if state is None:
                index = await self._bootstrap(tools, key)
            else:
                index = await self._reconcile(tools, key, state)
        except TabmuxError as e:
            log.error(
                "tab select/create failed",
                agent_id=key.agent_id,
                conversation_id=key.conversation_id,
                error=str(e),
            )
            return TabResult(success=False, error=str(e))
        return TabResult(success=True, tab_index=index)

    async def _reconcile(
        self, tools: _Toolset, key: ConversationKey, state: BrowserState
    ) -> int:
        tab = state.active_tab
        if tab.index is not None:
            index = await self._verify(tools, key, state, tab)
            if index is not None:
                return index
        return await self._recover(tools, key, state, tab)

    async def _verify(
        self,
        tools: _Toolset,
        key: ConversationKey,
        state: BrowserState,
        tab: BrowserTabState,
    ) -> int | None:
        """Select the stored index and check the browser agrees.

        Returns the index on success, None when the selection is stale.
        """
        try:
            await self._select_index(tools, tab.index)
        except ToolCallFailed as e:
            log.info(
                "stale selection",
                reason="select_failed",
                conversation_id=key.conversation_id,
                tab_index=tab.index,
                error=str(e),
            )
            return None

        listing = await self._list(tools, force_refresh=True)
        reported = listing.current_index
        if reported is not None and reported != tab.index:
            log.info(
                "stale selection",
                reason="index_mismatch",
                conversation_id=key.conversation_id,
                expected=tab.index,
                reported=reported,
            )
            return None

        live = listing.find_by_index(tab.index)
        if listing.tabs and live is None:
            log.info(
                "stale selection",
                reason="index_missing",
                conversation_id=key.conversation_id,
                tab_index=tab.index,
            )
            return None
        live_url = live.url if live is not None else listing.current_url

        if live_url is not None and live_url != tab.current and not is_blank_url(tab.current):
            elsewhere = listing.find_by_url(tab.current)
            if elsewhere is not None and elsewhere.index != tab.index:
                # The index was reused; our page lives on at another index.
                log.info(
                    "stale selection",
                    reason="index_reused",
                    conversation_id=key.conversation_id,
                    tab_index=tab.index,
                )
                return None

        state = await self._fold_live_url(tools, state, tab, live_url)
        await self._persist(key, state)
        log.info(
            "switched to existing tab",
            agent_id=key.agent_id,
            conversation_id=key.conversation_id,
            tab_index=tab.index,
            action="switch_to_existing_tab",
        )
        return tab.index

    async def _fold_live_url(
        self,
        tools: _Toolset,
        state: BrowserState,
        tab: BrowserTabState,
        live_url: str | None,
    ) -> BrowserState:
        if live_url is None or live_url == tab.current:
            return state
        if is_blank_url(live_url) and not is_blank_url(tab.current):
            # Tool restarted: index kept, content wiped.
            await self._restore_url(tools, tab.current)
            return state
        folded = apply_navigate(state, tab.id, live_url)
        if isinstance(folded, Err):
            return state
        return folded.value

    async def _recover(
        self,
        tools: _Toolset,
        key: ConversationKey,
        state: BrowserState,
        tab: BrowserTabState,
    ) -> int:
        listing = await self._list(tools, force_refresh=True)

        method = None
        index = None
        if not is_blank_url(tab.current):
            match = listing.find_by_url(tab.current)
            if match is not None:
                method, index = "url_match", match.index
                await self._select_index(tools, index)

        if index is None:
            blank = listing.find_blank()
            if blank is not None:
                method, index = "blank_reuse", blank.index
                await self._select_index(tools, index)
                await self._restore_url(tools, tab.current)

        if index is None:
            method = "create"
            index = await self._create_tab(tools, listing)
            await self._restore_url(tools, tab.current)

        assigned = assign_tab_index(state, tab.id, index)
        if isinstance(assigned, Err):
            raise StateStoreError(str(assigned.error))
        await self._persist(key, assigned.value)
        log.info(
            "tab recovered",
            agent_id=key.agent_id,
            conversation_id=key.conversation_id,
            tab_index=index,
            action=method,
        )
        return index

    async def _bootstrap(self, tools: _Toolset, key: ConversationKey) -> int:
        listing = await self._list(tools, force_refresh=True)
        blank = listing.find_blank()
        if blank is not None:
            index = blank.index
            await self._select_index(tools, index)
            action = "reuse_blank_tab"
        else:
            index = await self._create_tab(tools, listing)
            action = "created_new_tab"

        tab_id = generate_tab_id()
        await self._persist(key, create_initial_state(tab_id, BLANK_URL, index))
        log.info(
            "tab assigned to conversation",
            agent_id=key.agent_id,
            conversation_id=key.conversation_id,
            tab_id=tab_id,
            tab_index=index,
            action=action,
        )
        return index

    async def _create_tab(self, tools: _Toolset, before: TabsListing) -> int:
        """Open a tab and work out its index from the listings around it."""
        created = await self._mutate(tools, tools.tabs_tool, {"action": "new"})
        after = await self._list(tools, force_refresh=True)

        expected = before.max_index() + 1
        new_indices = sorted(set(after.indices) - set(before.indices))
        if len(new_indices) == 1:
            index = new_indices[0]
        elif new_indices:
            index = expected if expected in new_indices else new_indices[-1]
        else:
            reported = extract_current_tab_index(created.content)
            if reported is not None:
                index = reported
            elif after.tabs:
                index = after.max_index()
            else:
                index = expected

        await self._select_index(tools, index)
        return index

    async def _cleanup_orphaned_tabs(self, tools: _Toolset) -> None:
        """Close every tab but 0, once per (agent, user) per engine."""
        pair = (tools.agent_id, tools.user_id)
        if not self._cleanup_orphaned or pair in self._cleaned_up:
            return
        self._cleaned_up.add(pair)

        try:
            listing = await self._list(tools, force_refresh=True)
        except ToolCallFailed as e:
            log.warning("orphaned tab cleanup: list failed", agent_id=tools.agent_id, error=str(e))
            return

        closable = sorted((i for i in listing.indices if i != 0), reverse=True)
        if not closable:
            return
        log.info("closing orphaned tabs", agent_id=tools.agent_id, tab_count=len(closable))
        for index in closable:
            try:
                await self._mutate(tools, tools.tabs_tool, {"action": "close", "index": index})
            except ToolCallFailed as e:
                log.warning(
                    "failed to close orphaned tab",
                    agent_id=tools.agent_id,
                    tab_index=index,
                    error=str(e),
                )

    async def activate_tab(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> TabResult:
        """Like select_or_create_tab, but a missing tabs tool is an error."""
        tools = await self._require_tools(agent_id, user_id)
        if tools.tabs_tool is None:
            raise ToolUnavailable("tabs")
        return await self.select_or_create_tab(agent_id, user_id, conversation_id)

    async def _require_tools(self, agent_id: str, user_id: str) -> _Toolset:
        tools = await self._open(agent_id, user_id)
        if tools is None:
            raise ToolCallFailed("connect", "browser tool client unavailable")
        return tools

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def navigate(
        self, agent_id: str, user_id: str, conversation_id: str, url: str
    ) -> NavigateResult:
        try:
            tools = await self._require_tools(agent_id, user_id)
        except ToolCallFailed as e:
            return NavigateResult(success=False, error=str(e))
        if tools.navigate_tool is None:
            raise ToolUnavailable("navigate")

        selected = await self.select_or_create_tab(agent_id, user_id, conversation_id)
        if not selected.success:
            return NavigateResult(success=False, error=selected.error)

        key = ConversationKey(agent_id, user_id, conversation_id)
        try:
            await self._mutate(tools, tools.navigate_tool, {"url": url})
            state = await self._load_state(key)
            if state is not None:
                folded = apply_navigate(state, state.active_tab_id, url)
                if isinstance(folded, Err):
                    raise StateStoreError(str(folded.error))
                await self._persist(key, folded.value)
        except TabmuxError as e:
            log.error(
                "navigate failed",
                agent_id=agent_id,
                conversation_id=conversation_id,
                url=url,
                error=str(e),
            )
            return NavigateResult(success=False, error=str(e))

        log.info("navigated", agent_id=agent_id, conversation_id=conversation_id, url=url)
        return NavigateResult(success=True, url=url)

    async def navigate_back(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> NavigateResult:
        return await self._step_history(agent_id, user_id, conversation_id, forward=False)

    async def navigate_forward(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> NavigateResult:
        return await self._step_history(agent_id, user_id, conversation_id, forward=True)

    async def _step_history(
        self, agent_id: str, user_id: str, conversation_id: str, forward: bool
    ) -> NavigateResult:
        direction = "navigate_forward" if forward else "navigate_back"
        try:
            tools = await self._require_tools(agent_id, user_id)
        except ToolCallFailed as e:
            return NavigateResult(success=False, error=str(e))
        if tools.navigate_tool is None and (forward or tools.back_tool is None):
            raise ToolUnavailable(direction)

        selected = await self.select_or_create_tab(agent_id, user_id, conversation_id)
        if not selected.success:
            return NavigateResult(success=False, error=selected.error)

        key = ConversationKey(agent_id, user_id, conversation_id)
        try:
            state = await self._load_state(key)
            if state is None:
                return await self._step_shared_tab(tools, forward)

            step = apply_forward if forward else apply_back
            update = step(state, state.active_tab_id)
            if isinstance(update, Err):
                return NavigateResult(success=False, error=str(update.error))

            url = update.value.effect.url
            if tools.navigate_tool is not None:
                await self._mutate(tools, tools.navigate_tool, {"url": url})
            else:
                await self._mutate(tools, tools.back_tool, {})
            await self._persist(key, update.value.state)
        except TabmuxError as e:
            log.error(
                f"{direction} failed",
                agent_id=agent_id,
                conversation_id=conversation_id,
                error=str(e),
            )
            return NavigateResult(success=False, error=str(e))

        log.info(direction, agent_id=agent_id, conversation_id=conversation_id, url=url)
        return NavigateResult(success=True, url=url)

    async def _step_shared_tab(self, tools: _Toolset, forward: bool) -> NavigateResult:
        """History steps without per-conversation state: only the tool can go back."""
        if forward or tools.back_tool is None:
            return NavigateResult(success=False, error="NoForwardHistory" if forward else "NoBackHistory")
        await self._mutate(tools, tools.back_tool, {})
        url = None
        if tools.tabs_tool is not None:
            url = (await self._list(tools, force_refresh=True)).current_url
        return NavigateResult(success=True, url=url)

    # ------------------------------------------------------------------
    # Close / inspection
    # ------------------------------------------------------------------

    async def close_tab(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> TabResult:
        """Close the conversation's tabs and forget them. Never fails."""
        key = ConversationKey(agent_id, user_id, conversation_id)
        closed: list[int] = []
        try:
            tools = await self._open(agent_id, user_id)
            state = await self._load_state(key)
            if tools is not None and tools.tabs_tool is not None and state is not None:
                listing = await self._list(tools, force_refresh=True)
                remaining = len(listing.tabs)
                for index in _verified_indices(state, listing):
                    if remaining <= 1:
                        break
                    try:
                        await self._mutate(
                            tools, tools.tabs_tool, {"action": "close", "index": index}
                        )
                    except ToolCallFailed as e:
                        log.warning(
                            "failed to close tab",
                            conversation_id=conversation_id,
                            tab_index=index,
                            error=str(e),
                        )
                        continue
                    closed.append(index)
                    remaining -= 1
        except TabmuxError as e:
            log.warning(
                "close_tab: browser cleanup incomplete",
                conversation_id=conversation_id,
                error=str(e),
            )
        finally:
            await self._states.clear(key)
            self._cache.invalidate_agent(agent_id, user_id)

        log.info("conversation tabs closed", conversation_id=conversation_id, closed=closed)
        return TabResult(success=True)

    async def list_tabs(self, agent_id: str, user_id: str) -> TabResult:
        try:
            tools = await self._require_tools(agent_id, user_id)
            if tools.tabs_tool is None:
                raise ToolUnavailable("tabs")
            listing = await self._list(tools)
        except ToolCallFailed as e:
            return TabResult(success=False, error=str(e))
        return TabResult(
            success=True,
            tab_index=listing.current_index,
            tabs=[asdict(tab) for tab in listing.tabs],
        )

    async def get_current_url(
        self, agent_id: str, user_id: str, force_refresh: bool = False
    ) -> str | None:
        """URL of the browser's current tab; None when it cannot be read."""
        try:
            tools = await self._open(agent_id, user_id)
            if tools is None or tools.tabs_tool is None:
                return None
            listing = await self._list(tools, force_refresh=force_refresh)
        except ToolCallFailed as e:
            log.debug("current url unavailable", agent_id=agent_id, error=str(e))
            return None
        return listing.current_url

    async def check_availability(self, agent_id: str, user_id: str) -> AvailabilityResult:
        try:
            tools = await self._open(agent_id, user_id)
        except ToolCallFailed as e:
            return AvailabilityResult(available=False, error=str(e))
        if tools is None:
            return AvailabilityResult(available=False, error="browser tool client unavailable")
        browser_tools = [name for name in tools.tool_names if is_browser_tool(name)]
        return AvailabilityResult(available=bool(browser_tools), tools=browser_tools)

    # ------------------------------------------------------------------
    # AI-driven tool calls
    # ------------------------------------------------------------------

    async def sync_from_tool_call(
        self,
        agent_id: str,
        user_id: str,
        conversation_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None,
        content: Any,
    ) -> None:
        """Fold a tool call the AI made directly into the conversation's state."""
        arguments = arguments or {}
        if is_tabs_tool(tool_name):
            await self.sync_tab_mapping_from_tabs_tool_call(
                agent_id, user_id, conversation_id, arguments, content
            )
        elif is_navigate_back_tool(tool_name):
            await self.sync_navigate_back_from_tool_call(agent_id, user_id, conversation_id)
        elif is_navigate_tool(tool_name):
            url = arguments.get("url")
            await self.sync_navigation_from_tool_call(
                agent_id, user_id, conversation_id, url if isinstance(url, str) else None
            )
        else:
            log.debug("tool call not tracked", tool_name=tool_name)

    async def sync_tab_mapping_from_tabs_tool_call(
        self,
        agent_id: str,
        user_id: str,
        conversation_id: str,
        tool_arguments: dict[str, Any],
        tool_result_content: Any,
    ) -> None:
        key = ConversationKey(agent_id, user_id, conversation_id)
        action = tool_arguments.get("action")
        if action in MUTATING_TAB_ACTIONS:
            self._cache.invalidate_agent(agent_id, user_id)

        try:
            if action == "list":
                await self._sync_list(key, tool_result_content)
            elif action == "new":
                await self._sync_new(key, tool_result_content)
            elif action == "select":
                await self._sync_select(key, tool_arguments, tool_result_content)
            elif action == "close":
                await self._sync_close(key, tool_arguments)
            else:
                log.debug("tabs action not tracked", action=action)
        except Exception as e:
            log.error(
                "tab sync failed",
                agent_id=agent_id,
                conversation_id=conversation_id,
                action=action,
                error=str(e),
            )

    def _ambiguous(self, key: ConversationKey, action: str, missing: str) -> None:
        log.info(
            "ambiguous tool call ignored",
            kind="AmbiguousSync",
            conversation_id=key.conversation_id,
            action=action,
            missing=missing,
        )

    async def _sync_list(self, key: ConversationKey, content: Any) -> None:
        state = await self._load_state(key)
        if state is None:
            return
        entries = parse_tabs_listing(content).entries()
        if len(entries) != len(state.tabs):
            log.debug(
                "tab count differs, list sync skipped",
                conversation_id=key.conversation_id,
                listed=len(entries),
                known=len(state.tabs),
            )
            return
        synced = apply_tabs_list(state, entries)
        if isinstance(synced, Err):
            log.info("list sync rejected", conversation_id=key.conversation_id, error=str(synced.error))
            return
        await self._persist(key, synced.value)

    async def _sync_new(self, key: ConversationKey, content: Any) -> None:
        listing = parse_tabs_listing(content)
        index = listing.current_index
        if index is None:
            self._ambiguous(key, "new", "index")
            return
        url = listing.current_url or BLANK_URL
        tab_id = generate_tab_id()

        state = await self._load_state(key)
        if state is None:
            new_state = create_initial_state(tab_id, url, index)
        else:
            created = apply_tabs_create(state, tab_id, index, url)
            if isinstance(created, Err):
                log.info("new tab sync rejected", conversation_id=key.conversation_id, error=str(created.error))
                return
            new_state = created.value
        await self._persist(key, new_state)
        log.info(
            "synced AI-created tab",
            conversation_id=key.conversation_id,
            tab_id=tab_id,
            tab_index=index,
            action="new",
        )

    async def _sync_select(
        self, key: ConversationKey, arguments: dict[str, Any], content: Any
    ) -> None:
        index = parse_tab_index_value(arguments.get("index"))
        if index is None:
            index = extract_current_tab_index(content)
        if index is None:
            self._ambiguous(key, "select", "index")
            return
        state = await self._load_state(key)
        if state is None:
            return
        selected = apply_tabs_select(state, index)
        if isinstance(selected, Err):
            log.debug("selected tab not owned by conversation", conversation_id=key.conversation_id, tab_index=index)
            return
        await self._persist(key, selected.value)

    async def _sync_close(self, key: ConversationKey, arguments: dict[str, Any]) -> None:
        state = await self._load_state(key)
        if state is None:
            return
        index = parse_tab_index_value(arguments.get("index"))
        if index is None:
            # Closing without an index closes the current tab.
            index = state.active_tab.index
        if index is None:
            self._ambiguous(key, "close", "index")
            return
        closed = apply_tabs_close(state, index)
        if isinstance(closed, Err):
            if closed.error.kind == "CannotCloseLastTab":
                await self._states.clear(key)
                log.info("last tab closed, state cleared", conversation_id=key.conversation_id)
            else:
                log.debug("closed tab not owned by conversation", conversation_id=key.conversation_id, tab_index=index)
            return
        await self._persist(key, closed.value)

    async def _live_url(self, agent_id: str, user_id: str) -> str | None:
        return await self.get_current_url(agent_id, user_id, force_refresh=True)

    async def sync_navigation_from_tool_call(
        self, agent_id: str, user_id: str, conversation_id: str, url: str | None
    ) -> None:
        """Record an AI navigation using the URL the page actually landed on."""
        key = ConversationKey(agent_id, user_id, conversation_id)
        try:
            state = await self._load_state(key)
            if state is None:
                return
            resolved = await self._live_url(agent_id, user_id) or url
            if resolved is None:
                self._ambiguous(key, "navigate", "url")
                return
            if resolved == state.active_tab.current:
                return
            folded = apply_navigate(state, state.active_tab_id, resolved)
            if isinstance(folded, Err):
                return
            await self._persist(key, folded.value)
        except Exception as e:
            log.error(
                "navigation sync failed",
                agent_id=agent_id,
                conversation_id=conversation_id,
                error=str(e),
            )

    async def sync_navigate_back_from_tool_call(
        self, agent_id: str, user_id: str, conversation_id: str
    ) -> None:
        key = ConversationKey(agent_id, user_id, conversation_id)
        try:
            state = await self._load_state(key)
            if state is None:
                return
            live_url = await self._live_url(agent_id, user_id)
            if live_url is None:
                self._ambiguous(key, "navigate_back", "url")
                return
            tab = state.active_tab
            if tab.history_cursor > 0 and tab.history[tab.history_cursor - 1] == live_url:
                stepped = apply_back(state, tab.id)
                new_state = stepped.value.state if not isinstance(stepped, Err) else None
            elif live_url != tab.current:
                folded = apply_navigate(state, tab.id, live_url)
                new_state = folded.value if not isinstance(folded, Err) else None
            else:
                return
            if new_state is not None:
                await self._persist(key, new_state)
        except Exception as e:
            log.error(
                "navigate back sync failed",
                agent_id=agent_id,
                conversation_id=conversation_id,
                error=str(e),
            )


def _verified_indices(state: BrowserState, listing: TabsListing) -> list[int]:
    """Indices that provably still show one of the conversation's tabs, highest first."""
    indices: set[int] = set()
    for tab in state.tabs:
        if tab.index is not None:
            live = listing.find_by_index(tab.index)
            if live is not None and live.url == tab.current:
                indices.add(tab.index)
                continue
        if not is_blank_url(tab.current):
            match = listing.find_by_url(tab.current)
            if match is not None:
                indices.add(match.index)
    return sorted(indices, reverse=True)
