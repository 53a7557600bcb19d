"""Exception hierarchy for the orchestration core.

Specific exceptions for each failure mode. Only ConcurrentTurnError
is raised across the SessionController boundary; everything else is
recovered at the turn level and reported through events.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class TransportError(OrchestrationError):
    """The streaming connection to the remote agent failed."""
    def __init__(self, reason: str, status: int | None = None):
        self.reason = reason
        self.status = status
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"Transport failure: {prefix}{reason}")


class DecodeError(OrchestrationError):
    """A single streamed event could not be decoded."""
    def __init__(self, event_type: str, reason: str):
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Cannot decode event '{event_type}': {reason}")


class ToolExecutionError(OrchestrationError):
    """A tool invocation failed to produce a usable result."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")


class UnknownToolError(ToolExecutionError):
    """No capability provider is registered for the tool name."""
    def __init__(self, tool_name: str):
        super().__init__(tool_name, "unknown tool")


class PermissionDenied(OrchestrationError):
    """A tool invocation was refused by policy or by the user."""
    def __init__(self, tool_name: str, reason: str = "denied by user"):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Permission denied for '{tool_name}': {reason}")


class BudgetExceeded(OrchestrationError):
    """Cumulative session cost is above the configured ceiling."""
    def __init__(self, cost: float, ceiling: float):
        self.cost = cost
        self.ceiling = ceiling
        super().__init__(
            f"Session cost ${cost:.4f} exceeds budget ${ceiling:.2f}"
        )


class TurnLimitExceeded(OrchestrationError):
    """The query used more model turns than allowed."""
    def __init__(self, turns: int, max_turns: int):
        self.turns = turns
        self.max_turns = max_turns
        super().__init__(f"Turn count {turns} exceeds limit {max_turns}")


class ConcurrentTurnError(OrchestrationError):
    """A turn is already active for the conversation."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"Conversation {conversation_id} already has an active turn"
        )


class VaultPathError(OrchestrationError):
    """A path resolved outside the sandboxed document tree."""
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path escapes the vault: {path}")


class SettingsError(OrchestrationError):
    """The settings file could not be read or parsed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid settings file {path}: {reason}")
