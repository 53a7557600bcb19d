"""Event types emitted by the session controller.

Each event is a typed dataclass; ``event_to_dict`` / ``dict_to_event``
convert to and from the plain dict form used on the wire and in logs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class OrchestratorEvent:
    """Base event from the orchestration core."""
    event_type: str = ""
    conversation_id: str | None = None


@dataclass
class MessageCreated(OrchestratorEvent):
    event_type: str = "message_created"
    message_id: str = ""
    role: str = ""
    content: str = ""


@dataclass
class MessageUpdated(OrchestratorEvent):
    """Carries only the appended delta; consumers concatenate."""
    event_type: str = "message_updated"
    message_id: str = ""
    delta: str = ""
    streaming: bool = True
    error: str | None = None


@dataclass
class ToolCallCreated(OrchestratorEvent):
    event_type: str = "tool_call_created"
    message_id: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_subagent: bool = False


@dataclass
class ToolCallUpdated(OrchestratorEvent):
    event_type: str = "tool_call_updated"
    tool_call_id: str = ""
    status: str = ""
    output: str | None = None
    error: str | None = None


@dataclass
class SubagentProgressEvent(OrchestratorEvent):
    event_type: str = "subagent_progress"
    tool_call_id: str = ""
    status: str = ""
    message: str = ""
    subagent_type: str = ""


@dataclass
class TurnCompleted(OrchestratorEvent):
    event_type: str = "turn_completed"
    cost_usd: float = 0.0
    turns: int = 0


@dataclass
class TurnFailed(OrchestratorEvent):
    """A turn ended or suspended without completing.

    ``recoverable`` is True for budget and turn-limit suspensions that
    wait on ``confirm_continue``.
    """
    event_type: str = "turn_failed"
    reason: str = ""
    error: str | None = None
    recoverable: bool = False


@dataclass
class ApprovalRequested(OrchestratorEvent):
    """The turn is blocked until ``resolve_approval(tool_call_id, ...)``.

    ``parent_tool_call_id`` is set when the request comes from a
    delegated sub-conversation.
    """
    event_type: str = "approval_requested"
    tool_call_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    parent_tool_call_id: str | None = None


_EVENT_MAP: dict[str, type[OrchestratorEvent]] = {
    "message_created": MessageCreated,
    "message_updated": MessageUpdated,
    "tool_call_created": ToolCallCreated,
    "tool_call_updated": ToolCallUpdated,
    "subagent_progress": SubagentProgressEvent,
    "turn_completed": TurnCompleted,
    "turn_failed": TurnFailed,
    "approval_requested": ApprovalRequested,
}


def event_to_dict(event: OrchestratorEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> OrchestratorEvent:
    """Convert a plain event dict back to its typed dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, OrchestratorEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
