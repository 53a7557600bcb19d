"""Tool execution: dispatch, timeouts, result normalization.

Each tool belongs to one ``CapabilityProvider``. ``ToolExecutor.execute``
finds the provider from the call's ``ToolIdentity``, runs it under the
timeout for its class, and always returns a ``ToolResult``. Tool
failures (including unknown names and timeouts) come back as error
results; only cancellation propagates.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from vaultagent.shared.logger import ComponentLogger, default_logger

from .config import EngineConfig
from .errors import ToolExecutionError, UnknownToolError
from .models import ToolCall, ToolKind, ToolProvider, ToolResult
from .permissions import classify_tool

logger = logging.getLogger(__name__)

COMPONENT = "executor"

DelegationHandler = Callable[[ToolCall], Awaitable[ToolResult]]


class CapabilityProvider(abc.ABC):
    """A source of tools the model can call."""

    provider: ToolProvider = ToolProvider.UNKNOWN

    @abc.abstractmethod
    def definitions(self) -> list[dict[str, Any]]:
        """Tool schemas: ``{"name", "description", "input_schema"}``."""

    def tool_names(self) -> set[str]:
        return {d["name"] for d in self.definitions()}

    def handles(self, call: ToolCall) -> bool:
        return call.name in self.tool_names()

    @abc.abstractmethod
    async def invoke(self, call: ToolCall) -> ToolResult:
        """Run the tool. Raise ToolExecutionError for tool-level failures."""


DELEGATION_DEFINITION: dict[str, Any] = {
    "name": "Task",
    "description": (
        "Delegate a self-contained task to a subagent. The subagent works "
        "in the same vault with the same tools and returns a report."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "description": {
                "type": "string",
                "description": "Short (3-5 word) description of the task",
            },
            "prompt": {
                "type": "string",
                "description": "The full task for the subagent",
            },
            "subagent_type": {
                "type": "string",
                "description": "Kind of subagent, e.g. general-purpose",
            },
        },
        "required": ["description", "prompt"],
    },
}


class ToolExecutor:
    def __init__(
        self,
        config: EngineConfig | None = None,
        providers: list[CapabilityProvider] | None = None,
        log: ComponentLogger | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._providers: list[CapabilityProvider] = list(providers or [])
        self._log = log or default_logger

    def register(self, provider: CapabilityProvider) -> None:
        self._providers.append(provider)

    def definitions(self, include_delegation: bool = False) -> list[dict[str, Any]]:
        """Tool schemas for the model request, in registration order."""
        defs: list[dict[str, Any]] = []
        seen: set[str] = set()
        for provider in self._providers:
            for definition in provider.definitions():
                if definition["name"] in seen:
                    logger.warning("Duplicate tool name %s ignored", definition["name"])
                    continue
                seen.add(definition["name"])
                defs.append(definition)
        if include_delegation:
            defs.append(DELEGATION_DEFINITION)
        return defs

    def timeout_for(self, call: ToolCall) -> float | None:
        identity = call.identity or classify_tool(call.name)
        if identity.provider == ToolProvider.DELEGATION:
            seconds = self._config.delegation_timeout_seconds
        elif identity.kind == ToolKind.SHELL:
            seconds = self._config.shell_timeout_seconds
        elif identity.provider == ToolProvider.EXTERNAL:
            seconds = self._config.external_timeout_seconds
        else:
            seconds = self._config.tool_timeout_seconds
        return seconds if seconds > 0 else None

    def _resolve(
        self, call: ToolCall, delegate: DelegationHandler | None,
    ) -> Callable[[ToolCall], Awaitable[ToolResult]]:
        identity = call.identity or classify_tool(call.name)
        if identity.provider == ToolProvider.DELEGATION:
            if delegate is None:
                raise ToolExecutionError(call.name, "delegation is not available here")
            return delegate
        for provider in self._providers:
            if provider.provider == identity.provider and provider.handles(call):
                return provider.invoke
        raise UnknownToolError(call.name)

    async def execute(
        self, call: ToolCall, delegate: DelegationHandler | None = None,
    ) -> ToolResult:
        """Run one tool call. Never raises except on cancellation.

        Delegation calls go to ``delegate``, supplied by the controller
        that owns the call; nested controllers pass none.
        """
        timeout = self.timeout_for(call)
        try:
            handler = self._resolve(call, delegate)
            result = await asyncio.wait_for(handler(call), timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warn(
                COMPONENT, f"Tool {call.name} timed out",
                {"tool_call_id": call.id, "timeout": timeout},
            )
            return ToolResult(
                call.id, f"Tool {call.name} timed out after {timeout:.0f}s", True,
            )
        except ToolExecutionError as exc:
            self._log.warn(
                COMPONENT, str(exc), {"tool_call_id": call.id},
            )
            return ToolResult(call.id, str(exc), True)
        except Exception as exc:
            logger.exception("Tool %s (%s) raised", call.name, call.id[:8])
            return ToolResult(
                call.id, f"Tool '{call.name}' failed: {type(exc).__name__}: {exc}", True,
            )
        result.tool_call_id = call.id
        result.content = self._truncate(result.content)
        return result

    def _truncate(self, content: str) -> str:
        limit = self._config.max_tool_output_chars
        if limit <= 0 or len(content) <= limit:
            return content
        omitted = len(content) - limit
        return f"{content[:limit]}\n... [truncated {omitted} chars]"
