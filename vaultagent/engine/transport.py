"""Streaming connection to the remote agent.

``AgentTransport.stream`` yields raw event dicts for one model response;
the controller decodes them with a fresh ``ProtocolEventDecoder``.
``MessagesApiTransport`` talks to the Messages API with ``stream: true``
and parses the server-sent events with aiohttp.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from .config import EngineConfig
from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class TurnRequest:
    """Everything the remote agent needs for the next step."""
    model: str
    messages: list[dict[str, Any]]
    system: str = ""
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 8192
    # Turns still available to this query. Enforced locally; transports
    # that run their own tool loop may forward it.
    max_turns: int | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self.messages,
            "stream": True,
        }
        if self.system:
            body["system"] = self.system
        if self.tools:
            body["tools"] = self.tools
        return body


class AgentTransport(abc.ABC):
    @abc.abstractmethod
    def stream(self, request: TurnRequest) -> AsyncIterator[dict[str, Any]]:
        """Yield raw stream events. Raise TransportError on failure."""

    async def close(self) -> None:
        return None


def parse_sse_lines(lines: list[str]) -> dict[str, Any] | None:
    """Parse one SSE event block into its JSON payload."""
    event_name = None
    data_parts: list[str] = []
    for line in lines:
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event_name = value
        elif name == "data":
            data_parts.append(value)
    if not data_parts:
        return None
    payload = json.loads("\n".join(data_parts))
    if isinstance(payload, dict) and "type" not in payload and event_name:
        payload["type"] = event_name
    return payload


class MessagesApiTransport(AgentTransport):
    def __init__(
        self,
        api_key: str,
        config: EngineConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key
        self._config = config or EngineConfig()
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._config.anthropic_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
            **self._config.extra_headers,
        }

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None, sock_read=self._config.request_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def stream(self, request: TurnRequest) -> AsyncIterator[dict[str, Any]]:
        url = f"{self._config.api_base_url}/v1/messages"
        client = await self._client()
        logger.debug(
            "POST %s model=%s messages=%d tools=%d",
            url, request.model, len(request.messages), len(request.tools),
        )
        try:
            async with client.post(
                url, json=request.to_body(), headers=self._headers(),
            ) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise TransportError(_error_message(detail), status=resp.status)
                pending: list[bytes] = []
                async for raw_line in resp.content:
                    line = raw_line.rstrip(b"\r\n")
                    if line:
                        pending.append(line)
                        continue
                    event = self._parse(pending)
                    pending = []
                    if event is not None:
                        yield event
                event = self._parse(pending)
                if event is not None:
                    yield event
        except aiohttp.ClientError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError("timed out waiting for the stream") from exc

    @staticmethod
    def _parse(raw_lines: list[bytes]) -> dict[str, Any] | None:
        if not raw_lines:
            return None
        raw = b"\n".join(raw_lines)
        try:
            return parse_sse_lines(raw.decode("utf-8").split("\n"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            # The decoder logs and skips malformed events.
            return {"type": "malformed", "raw": raw.decode("utf-8", errors="replace")}

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def _error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body[:500] or "empty response"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return f"{error.get('type', 'error')}: {error.get('message', '')}"
    return body[:500]
