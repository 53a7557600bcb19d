"""Vault agent engine: streaming turns, tool gating, subagents, budgets."""
from .models import (
    ApprovalDecision,
    ChatMessage,
    Conversation,
    McpServerConfig,
    MessageRole,
    ModelTier,
    PermissionDecision,
    SessionAccounting,
    SessionPolicy,
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolIdentity,
    ToolResult,
    ToolStatus,
    TurnOutcome,
    TurnState,
)
from .config import EngineConfig, EventHandlers
from .errors import (
    BudgetExceeded,
    ConcurrentTurnError,
    DecodeError,
    OrchestrationError,
    PermissionDenied,
    SettingsError,
    ToolExecutionError,
    TransportError,
    TurnLimitExceeded,
    UnknownToolError,
    VaultPathError,
)

__all__ = [
    # Controller (lazy import)
    "SessionController",
    "TurnHandle",
    # Components (lazy import)
    "ProtocolEventDecoder",
    "ToolExecutor",
    "CapabilityProvider",
    "BudgetEnforcer",
    "SubagentTracker",
    "decide",
    "classify_tool",
    # Transport (lazy import)
    "AgentTransport",
    "MessagesApiTransport",
    "TurnRequest",
    # Settings (lazy import)
    "SessionSettings",
    "load_settings",
    "save_settings",
    # Models
    "ApprovalDecision",
    "ChatMessage",
    "Conversation",
    "McpServerConfig",
    "MessageRole",
    "ModelTier",
    "PermissionDecision",
    "SessionAccounting",
    "SessionPolicy",
    "SubagentProgress",
    "SubagentStatus",
    "ToolCall",
    "ToolIdentity",
    "ToolResult",
    "ToolStatus",
    "TurnOutcome",
    "TurnState",
    # Config
    "EngineConfig",
    "EventHandlers",
    # Errors
    "BudgetExceeded",
    "ConcurrentTurnError",
    "DecodeError",
    "OrchestrationError",
    "PermissionDenied",
    "SettingsError",
    "ToolExecutionError",
    "TransportError",
    "TurnLimitExceeded",
    "UnknownToolError",
    "VaultPathError",
]


def __getattr__(name: str):
    if name == "SessionController":
        from .controller import SessionController
        return SessionController
    if name == "TurnHandle":
        from .controller import TurnHandle
        return TurnHandle
    if name == "ProtocolEventDecoder":
        from .decoder import ProtocolEventDecoder
        return ProtocolEventDecoder
    if name == "ToolExecutor":
        from .executor import ToolExecutor
        return ToolExecutor
    if name == "CapabilityProvider":
        from .executor import CapabilityProvider
        return CapabilityProvider
    if name == "BudgetEnforcer":
        from .budget import BudgetEnforcer
        return BudgetEnforcer
    if name == "SubagentTracker":
        from .subagents import SubagentTracker
        return SubagentTracker
    if name == "decide":
        from .permissions import decide
        return decide
    if name == "classify_tool":
        from .permissions import classify_tool
        return classify_tool
    if name in ("AgentTransport", "MessagesApiTransport", "TurnRequest"):
        from . import transport
        return getattr(transport, name)
    if name in ("SessionSettings", "load_settings", "save_settings"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
