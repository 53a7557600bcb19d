"""External capability servers over the MCP stdio transport.

``McpCapabilityProvider.start()`` launches every enabled server, runs
the MCP handshake and lists its tools. Sessions stay open until
``close()``. A server that fails to start is logged and left out; it
never stops the others.
"""
from __future__ import annotations

import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from ..errors import ToolExecutionError
from ..executor import CapabilityProvider
from ..models import McpServerConfig, ToolCall, ToolProvider, ToolResult
from ..permissions import external_tool_name

logger = logging.getLogger(__name__)


@dataclass
class _Connected:
    config: McpServerConfig
    session: ClientSession
    tools: list[dict[str, Any]] = field(default_factory=list)


def result_text(result: Any) -> str:
    """Join the text parts of a CallToolResult."""
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{getattr(item, 'type', 'content')}]")
    return "\n".join(parts)


class McpCapabilityProvider(CapabilityProvider):
    provider = ToolProvider.EXTERNAL

    def __init__(self, servers: list[McpServerConfig]) -> None:
        self._configs = [s for s in servers if s.enabled]
        self._stack: AsyncExitStack | None = None
        self._connected: dict[str, _Connected] = {}

    @property
    def connected_servers(self) -> list[str]:
        return list(self._connected)

    async def start(self) -> None:
        if self._stack is not None:
            return
        stack = self._stack = AsyncExitStack()
        for config in self._configs:
            try:
                await self._connect(stack, config)
            except (OSError, ConnectionError, TimeoutError) as exc:
                logger.warning(
                    "Failed to start capability server '%s': %s", config.name, exc,
                )
            except Exception:
                logger.exception(
                    "Capability server '%s' failed during handshake", config.name,
                )

    async def _connect(self, stack: AsyncExitStack, config: McpServerConfig) -> None:
        params = StdioServerParameters(
            command=config.command,
            args=list(config.args),
            env={**os.environ, **config.env} if config.env else None,
        )
        read, write = await stack.enter_async_context(stdio_client(params))
        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        listed = await session.list_tools()
        tools = [
            {
                "name": external_tool_name(config.name, tool.name),
                "description": tool.description or "",
                "input_schema": tool.inputSchema or {"type": "object", "properties": {}},
            }
            for tool in listed.tools
        ]
        self._connected[config.name] = _Connected(config, session, tools)
        logger.info(
            "Capability server '%s' connected (%d tools)", config.name, len(tools),
        )

    async def close(self) -> None:
        if self._stack is None:
            return
        stack, self._stack = self._stack, None
        self._connected.clear()
        await stack.aclose()

    def definitions(self) -> list[dict[str, Any]]:
        defs: list[dict[str, Any]] = []
        for connected in self._connected.values():
            defs.extend(connected.tools)
        return defs

    async def invoke(self, call: ToolCall) -> ToolResult:
        identity = call.identity
        server = identity.server if identity else None
        connected = self._connected.get(server or "")
        if connected is None or identity is None:
            raise ToolExecutionError(call.name, f"capability server '{server}' is not running")
        logger.info("Calling %s on server %s", identity.operation, server)
        result = await connected.session.call_tool(identity.operation, call.input)
        return ToolResult(
            call.id,
            result_text(result),
            is_error=bool(getattr(result, "isError", False)),
        )
