"""Lifecycle state machines for tool calls, subagents, and turns.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Tool calls:

    PENDING ──> RUNNING ──┬──> SUCCESS
       │                  └──> ERROR
       └──> ERROR  (denied, interrupted, malformed input)

Subagents:

    STARTING ──> RUNNING <──> THINKING
        │           │            │
        └───────────┴────────────┴──> COMPLETED | INTERRUPTED | ERROR

Turns:

    IDLE ──> STREAMING ──┬──> AWAITING_APPROVAL <──> EXECUTING_TOOL
                         │            │                    │
                         │            └──> STREAMING <─────┘
                         ├──> COMPLETED
                         ├──> FAILED ──> STREAMING  (budget continuation)
                         └──> CANCELLED

    Any non-terminal state ──> CANCELLED | FAILED
"""
from __future__ import annotations

from datetime import datetime, timezone

from .models import (
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolStatus,
    TurnState,
)

TOOL_TRANSITIONS: dict[ToolStatus, set[ToolStatus]] = {
    ToolStatus.PENDING: {ToolStatus.RUNNING, ToolStatus.ERROR},
    ToolStatus.RUNNING: {ToolStatus.SUCCESS, ToolStatus.ERROR},
    ToolStatus.SUCCESS: set(),
    ToolStatus.ERROR: set(),
}

_SUBAGENT_TERMINAL = {
    SubagentStatus.COMPLETED,
    SubagentStatus.INTERRUPTED,
    SubagentStatus.ERROR,
}

SUBAGENT_TRANSITIONS: dict[SubagentStatus, set[SubagentStatus]] = {
    SubagentStatus.STARTING: {SubagentStatus.RUNNING, SubagentStatus.THINKING}
    | _SUBAGENT_TERMINAL,
    SubagentStatus.RUNNING: {SubagentStatus.THINKING} | _SUBAGENT_TERMINAL,
    SubagentStatus.THINKING: {SubagentStatus.RUNNING} | _SUBAGENT_TERMINAL,
    SubagentStatus.COMPLETED: set(),
    SubagentStatus.INTERRUPTED: set(),
    SubagentStatus.ERROR: set(),
}

TURN_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {
        TurnState.STREAMING,
        TurnState.FAILED,
        TurnState.CANCELLED,
    },
    TurnState.STREAMING: {
        TurnState.AWAITING_APPROVAL,
        TurnState.EXECUTING_TOOL,
        TurnState.COMPLETED,
        TurnState.FAILED,
        TurnState.CANCELLED,
    },
    TurnState.AWAITING_APPROVAL: {
        TurnState.EXECUTING_TOOL,
        TurnState.STREAMING,
        TurnState.FAILED,
        TurnState.CANCELLED,
    },
    TurnState.EXECUTING_TOOL: {
        TurnState.AWAITING_APPROVAL,
        TurnState.STREAMING,
        TurnState.FAILED,
        TurnState.CANCELLED,
    },
    TurnState.FAILED: {
        TurnState.STREAMING,  # continue anyway after a budget suspension
        TurnState.CANCELLED,
    },
    TurnState.COMPLETED: set(),
    TurnState.CANCELLED: set(),
}


def _check(kind: str, table: dict, current, target) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid {kind} transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_tool_transition(current: ToolStatus, target: ToolStatus) -> None:
    """Validate a tool call status change. Raises ValueError if invalid."""
    _check("tool call", TOOL_TRANSITIONS, current, target)


def validate_subagent_transition(
    current: SubagentStatus, target: SubagentStatus,
) -> None:
    _check("subagent", SUBAGENT_TRANSITIONS, current, target)


def validate_turn_transition(current: TurnState, target: TurnState) -> None:
    _check("turn", TURN_TRANSITIONS, current, target)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mark_running(call: ToolCall) -> None:
    validate_tool_transition(call.status, ToolStatus.RUNNING)
    call.status = ToolStatus.RUNNING
    call.started_at = _utcnow()


def mark_success(call: ToolCall, output: str) -> None:
    validate_tool_transition(call.status, ToolStatus.SUCCESS)
    call.status = ToolStatus.SUCCESS
    call.output = output
    call.ended_at = _utcnow()
    call.subagent = None


def mark_error(call: ToolCall, error: str, output: str | None = None) -> None:
    validate_tool_transition(call.status, ToolStatus.ERROR)
    call.status = ToolStatus.ERROR
    call.error = error
    if output is not None:
        call.output = output
    call.ended_at = _utcnow()
    call.subagent = None


def advance_subagent(
    progress: SubagentProgress,
    status: SubagentStatus,
    message: str = "",
) -> bool:
    """Move a subagent to ``status``.

    Returns False (no change) when the progress record is already
    terminal, since terminal states are sinks. Raises ValueError for
    any other invalid transition.
    """
    if progress.is_terminal:
        return False
    if status == progress.status:
        if message and message != progress.message:
            progress.message = message
            return True
        return False
    validate_subagent_transition(progress.status, status)
    progress.status = status
    if message:
        progress.message = message
    return True
