"""Core data models for the orchestration core.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(str, Enum):
    """ToolCall lifecycle states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SubagentStatus(str, Enum):
    """Delegated sub-conversation states. Terminal states are sinks."""
    STARTING = "starting"
    RUNNING = "running"
    THINKING = "thinking"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class TurnState(str, Enum):
    """SessionController turn states. See lifecycle.py."""
    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PermissionDecision(str, Enum):
    """Outcome of the permission gate."""
    ALLOW = "allow"
    DENY = "deny"
    ASK_USER = "ask_user"


class ApprovalDecision(str, Enum):
    """User answer to an approval request."""
    ALLOW = "allow"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


class BudgetStatus(str, Enum):
    OK = "ok"
    BUDGET_EXCEEDED = "budget_exceeded"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"


class ToolProvider(str, Enum):
    """Which capability provider serves a tool."""
    BUILTIN = "builtin"
    ENVIRONMENT = "environment"
    DELEGATION = "delegation"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


class ToolKind(str, Enum):
    """What a tool does, as far as the permission gate cares."""
    READ = "read"
    WRITE = "write"
    SEARCH = "search"
    SHELL = "shell"
    ENVIRONMENT = "environment"
    DELEGATION = "delegation"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


class ModelTier(str, Enum):
    SONNET = "sonnet"
    OPUS = "opus"
    HAIKU = "haiku"


MODEL_IDS: dict[ModelTier, str] = {
    ModelTier.SONNET: "claude-sonnet-4-5",
    ModelTier.OPUS: "claude-opus-4-6",
    ModelTier.HAIKU: "claude-haiku-4-5",
}


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ToolIdentity:
    """Tool identity resolved once when a ToolCall is created.

    Downstream components branch on ``provider`` and ``kind`` instead
    of matching tool-name strings.
    """
    name: str
    provider: ToolProvider
    kind: ToolKind
    server: str | None = None
    operation: str | None = None

    @property
    def is_vault_read(self) -> bool:
        return self.kind in (ToolKind.READ, ToolKind.SEARCH)

    @property
    def is_vault_write(self) -> bool:
        return self.kind == ToolKind.WRITE


@dataclass
class SubagentProgress:
    status: SubagentStatus = SubagentStatus.STARTING
    message: str = ""
    subagent_type: str = "unknown"
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            SubagentStatus.COMPLETED,
            SubagentStatus.INTERRUPTED,
            SubagentStatus.ERROR,
        )


@dataclass
class ToolCall:
    """A tool invocation requested by the remote agent."""
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    output: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    is_subagent: bool = False
    subagent: SubagentProgress | None = None
    identity: ToolIdentity | None = None

    @property
    def is_complete(self) -> bool:
        return self.status in (ToolStatus.SUCCESS, ToolStatus.ERROR)


@dataclass
class ChatMessage:
    """One user or assistant message.

    Content is an append-only buffer while streaming; ``finalize()``
    makes the message immutable.
    """
    role: MessageRole
    content: str = ""
    id: str = field(default_factory=_make_id)
    tool_calls: list[ToolCall] = field(default_factory=list)
    streaming: bool = False
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    finalized: bool = False

    def append(self, delta: str) -> None:
        if self.finalized:
            raise ValueError(f"Message {self.id} is finalized")
        self.content += delta

    def attach(self, call: ToolCall) -> None:
        if self.finalized:
            raise ValueError(f"Message {self.id} is finalized")
        self.tool_calls.append(call)

    def finalize(self) -> None:
        self.streaming = False
        self.finalized = True

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        for call in self.tool_calls:
            if call.id == tool_call_id:
                return call
        return None


@dataclass
class Conversation:
    """A conversation with its display messages and provider history."""
    id: str = field(default_factory=_make_id)
    title: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    messages: list[ChatMessage] = field(default_factory=list)
    # Provider-format messages (user text, assistant blocks,
    # tool_result blocks) replayed to the remote agent.
    history: list[dict[str, Any]] = field(default_factory=list)

    def add_message(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        self.touch()
        return message

    def touch(self) -> None:
        self.updated_at = _utcnow()

    @property
    def last_assistant_message(self) -> ChatMessage | None:
        for message in reversed(self.messages):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None


@dataclass
class SessionPolicy:
    """Permission and limit settings for one session.

    ``always_allowed_tools`` is shared by reference with nested
    subagent policies and only grows through an AllowAlways decision.
    """
    auto_approve_vault_reads: bool = True
    auto_approve_vault_writes: bool = False
    require_bash_approval: bool = True
    always_allowed_tools: set[str] = field(default_factory=set)
    max_budget_per_session: float = 10.0
    max_turns: int = 50


@dataclass
class SessionAccounting:
    """Per-conversation cost and turn counters, reset per query."""
    total_cost_usd: float = 0.0
    turns: int = 0
    budget_acknowledged: bool = False
    extra_turns: int = 0

    def reset(self) -> None:
        self.total_cost_usd = 0.0
        self.turns = 0
        self.budget_acknowledged = False
        self.extra_turns = 0


@dataclass
class McpServerConfig:
    """External capability server registration."""
    id: str
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    enabled: bool = True


@dataclass
class Usage:
    """Token usage reported with a model response."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )


@dataclass
class ToolResult:
    """Normalized outcome of executing one tool call."""
    tool_call_id: str
    content: str = ""
    is_error: bool = False

    def to_block(self) -> dict[str, Any]:
        """Render as a provider tool_result content block."""
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_call_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


@dataclass
class TurnOutcome:
    """Final result of one turn, returned by TurnHandle.wait()."""
    conversation_id: str
    state: TurnState
    reason: str | None = None
    error: str | None = None
    cost_usd: float = 0.0
    turns: int = 0
    final_text: str = ""
