"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via VAULTAGENT_* env vars.
User-facing settings (policy, model tier, capability servers) live in
the YAML settings file, see yaml_config.py.
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vaultagent.adapters.events import OrchestratorEvent

logger = logging.getLogger(__name__)


# Event callbacks may be plain functions or coroutines.
# Signature: def callback(event: OrchestratorEvent) -> None
EventCallback = Callable[["OrchestratorEvent"], Awaitable[None] | None]


async def fire_event(
    callback: EventCallback | None,
    event: OrchestratorEvent,
) -> None:
    """Fire an event callback if set. Callback errors never break a turn."""
    if callback is None:
        return
    try:
        result = callback(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(
            "Event handler failed for %s", getattr(event, "event_type", "?"),
        )


@dataclass
class EventHandlers:
    """Presentation-side callbacks, one per emitted event type.

    ``on_event`` receives every event in addition to the specific
    handler.
    """
    on_message_created: EventCallback | None = None
    on_message_updated: EventCallback | None = None
    on_tool_call_created: EventCallback | None = None
    on_tool_call_updated: EventCallback | None = None
    on_subagent_progress: EventCallback | None = None
    on_turn_completed: EventCallback | None = None
    on_turn_failed: EventCallback | None = None
    on_approval_requested: EventCallback | None = None
    on_event: EventCallback | None = None

    def callbacks_for(self, event_type: str) -> list[EventCallback]:
        specific = getattr(self, f"on_{event_type}", None)
        return [cb for cb in (specific, self.on_event) if cb is not None]


@dataclass
class EngineConfig:
    """Orchestration core configuration."""

    # Remote agent connection
    api_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    request_timeout_seconds: float = 600.0
    max_tokens: int = 8192
    system_prompt: str = (
        "You are an assistant working inside the user's note vault. "
        "Use the available tools to read, search and edit notes."
    )

    # Tool execution timeouts per class. 0 disables the timeout.
    tool_timeout_seconds: float = 120.0
    shell_timeout_seconds: float = 120.0
    external_timeout_seconds: float = 300.0
    delegation_timeout_seconds: float = 1800.0

    # Max wait for a user approval decision. 0 (default) waits until
    # the turn is cancelled; a positive value denies on expiry.
    approval_timeout_seconds: float = 0.0

    # Ceiling on turns for one delegated sub-conversation, further
    # clamped by the parent's remaining allowance.
    subagent_max_turns: int = 20

    # Truncation of tool output fed back to the model.
    max_tool_output_chars: int = 30000

    # Logging
    log_level: str = "INFO"

    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from VAULTAGENT_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("VAULTAGENT_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: VAULTAGENT_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("EngineConfig.from_env: no overrides, using defaults")

        config = cls(
            api_base_url=os.getenv(
                "VAULTAGENT_API_BASE_URL", cls.api_base_url
            ).rstrip("/"),
            request_timeout_seconds=float(os.getenv(
                "VAULTAGENT_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            max_tokens=int(os.getenv(
                "VAULTAGENT_MAX_TOKENS", str(cls.max_tokens)
            )),
            tool_timeout_seconds=float(os.getenv(
                "VAULTAGENT_TOOL_TIMEOUT", str(cls.tool_timeout_seconds)
            )),
            shell_timeout_seconds=float(os.getenv(
                "VAULTAGENT_SHELL_TIMEOUT", str(cls.shell_timeout_seconds)
            )),
            external_timeout_seconds=float(os.getenv(
                "VAULTAGENT_EXTERNAL_TIMEOUT",
                str(cls.external_timeout_seconds),
            )),
            delegation_timeout_seconds=float(os.getenv(
                "VAULTAGENT_DELEGATION_TIMEOUT",
                str(cls.delegation_timeout_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "VAULTAGENT_APPROVAL_TIMEOUT",
                str(cls.approval_timeout_seconds),
            )),
            subagent_max_turns=int(os.getenv(
                "VAULTAGENT_SUBAGENT_MAX_TURNS", str(cls.subagent_max_turns)
            )),
            log_level=os.getenv("VAULTAGENT_LOG_LEVEL", cls.log_level),
        )
        system_prompt = os.getenv("VAULTAGENT_SYSTEM_PROMPT")
        if system_prompt:
            config.system_prompt = system_prompt
        logger.info(
            "EngineConfig.from_env: base_url=%s tool_timeout=%.0fs "
            "approval_timeout=%.0fs log_level=%s",
            config.api_base_url, config.tool_timeout_seconds,
            config.approval_timeout_seconds, config.log_level,
        )
        return config

