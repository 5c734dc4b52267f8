"""Exceptions raised across tabmux."""
from __future__ import annotations


class TabmuxError(Exception):
    """Base class for tabmux errors."""


class ToolUnavailable(TabmuxError):
    """The agent's browser server exposes no tool for a required capability."""

    def __init__(self, capability: str) -> None:
        super().__init__(f"no browser tool available for {capability}")
        self.capability = capability


class ToolCallFailed(TabmuxError):
    """A browser tool call returned an error, timed out, or lost its transport."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message


class StateStoreError(TabmuxError):
    """Browser state could not be persisted."""
