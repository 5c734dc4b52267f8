"""Persistence of per-conversation browser state.

Storage: sqlite database at ~/.tabmux/data/browser_state.db (see paths.py),
one row per (agent_id, user_id, conversation_id) holding the persisted JSON.

The manager keeps the runtime state of every conversation it has seen in
memory, so physical indices survive between requests of one process. Only
the persisted form (no indices) reaches the database.

sqlite calls block; they run in the default executor so a slow disk never
stalls the event loop.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, NamedTuple, Protocol

from tabmux.conversion import (
    persisted_from_dict,
    persisted_to_dict,
    to_persisted_state,
    to_runtime_state,
)
from tabmux.paths import STATE_DB
from tabmux.state_types import BrowserState, Err, Ok, Result
from tabmux.validation import validate_browser_state

log = logging.getLogger(__name__)

StateManagerErrorKind = Literal["DatabaseError", "StateError"]


class ConversationKey(NamedTuple):
    agent_id: str
    user_id: str
    conversation_id: str


@dataclass(frozen=True)
class StateManagerError:
    kind: StateManagerErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class StateStore(Protocol):
    async def load(self, key: ConversationKey) -> str | None: ...

    async def save(self, key: ConversationKey, payload: str) -> None: ...

    async def delete(self, key: ConversationKey) -> None: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS browser_state (
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    state TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (agent_id, user_id, conversation_id)
)
"""


class SqliteStateStore:
    """sqlite-backed StateStore. A fresh connection is opened per call."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or STATE_DB
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        if not self._initialized:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path))
        if not self._initialized:
            with conn:
                conn.execute(_SCHEMA)
            self._initialized = True
        return conn

    def _load_sync(self, key: ConversationKey) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT state FROM browser_state"
                " WHERE agent_id = ? AND user_id = ? AND conversation_id = ?",
                tuple(key),
            ).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def _save_sync(self, key: ConversationKey, payload: str) -> None:
        now = time.strftime("%Y-%m-%dT%H:%M:%S%z")
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO browser_state"
                    " (agent_id, user_id, conversation_id, state, updated_at)"
                    " VALUES (?, ?, ?, ?, ?)"
                    " ON CONFLICT (agent_id, user_id, conversation_id)"
                    " DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at",
                    (*key, payload, now),
                )
        finally:
            conn.close()

    def _delete_sync(self, key: ConversationKey) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM browser_state"
                    " WHERE agent_id = ? AND user_id = ? AND conversation_id = ?",
                    tuple(key),
                )
        finally:
            conn.close()

    async def load(self, key: ConversationKey) -> str | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_sync, key)

    async def save(self, key: ConversationKey, payload: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, key, payload)

    async def delete(self, key: ConversationKey) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._delete_sync, key)


class BrowserStateManager:
    """Load, validate and persist conversation state through a StateStore."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._runtime: dict[ConversationKey, BrowserState] = {}

    async def get_or_load(
        self, key: ConversationKey
    ) -> Result[BrowserState | None, StateManagerError]:
        """Return the conversation's state, None if nothing was ever stored.

        The returned state is not validated; callers decide what to do with a
        state that breaks invariants.
        """
        cached = self._runtime.get(key)
        if cached is not None:
            return Ok(cached)

        try:
            payload = await self._store.load(key)
        except (sqlite3.Error, OSError) as e:
            log.error(
                "state load failed",
                extra={"conversation_id": key.conversation_id, "error": str(e)},
            )
            return Err(StateManagerError("DatabaseError", str(e)))

        if payload is None:
            return Ok(None)

        try:
            persisted = persisted_from_dict(json.loads(payload))
        except (json.JSONDecodeError, ValueError) as e:
            log.warning(
                "stored state unreadable",
                extra={"conversation_id": key.conversation_id, "error": str(e)},
            )
            return Err(StateManagerError("StateError", str(e)))

        state = to_runtime_state(persisted)
        self._runtime[key] = state
        return Ok(state)

    async def set(
        self, key: ConversationKey, state: BrowserState
    ) -> Result[BrowserState, StateManagerError]:
        validated = validate_browser_state(state)
        if isinstance(validated, Err):
            return Err(StateManagerError("StateError", str(validated.error)))

        payload = json.dumps(persisted_to_dict(to_persisted_state(state)))
        try:
            await self._store.save(key, payload)
        except (sqlite3.Error, OSError) as e:
            log.error(
                "state save failed",
                extra={"conversation_id": key.conversation_id, "error": str(e)},
            )
            return Err(StateManagerError("DatabaseError", str(e)))

        self._runtime[key] = state
        log.debug(
            "state saved",
            extra={"conversation_id": key.conversation_id, "tab_count": len(state.tabs)},
        )
        return Ok(state)

    async def clear(self, key: ConversationKey) -> Result[None, StateManagerError]:
        self._runtime.pop(key, None)
        try:
            await self._store.delete(key)
        except (sqlite3.Error, OSError) as e:
            log.error(
                "state delete failed",
                extra={"conversation_id": key.conversation_id, "error": str(e)},
            )
            return Err(StateManagerError("DatabaseError", str(e)))
        return Ok(None)

    def forget(self, key: ConversationKey) -> None:
        """Drop the in-memory copy only, as a process restart would."""
        self._runtime.pop(key, None)
