"""Streaming protocol decoder.

Turns raw stream events into a closed set of normalized events:
``TextDelta``, ``ToolInvocation``, ``ToolResultEvent``, ``TurnEnd`` and
``StreamError``. Two wire shapes are understood:

- Messages API server-sent events (``message_start``,
  ``content_block_start`` / ``_delta`` / ``_stop``, ``message_delta``,
  ``message_stop``, ``ping``, ``error``);
- whole content blocks (``text``, ``tool_use``, ``tool_result``), a
  composite ``assistant`` message carrying a list of blocks, and a
  ``result`` summary that ends the turn with a reported cost.

Tool input JSON arrives in fragments, so a decoder instance is bound to
a single stream. Anything unknown or malformed decodes to None and is
logged; it never ends the turn.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from vaultagent.shared.logger import ComponentLogger, default_logger

from .errors import DecodeError
from .models import Usage

COMPONENT = "decoder"


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolInvocation:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    # Set when the streamed input could not be parsed.
    input_error: str | None = None


@dataclass
class ToolResultEvent:
    """A tool result produced on the remote side of the stream."""
    tool_use_id: str
    content: str = ""
    is_error: bool = False


@dataclass
class TurnEnd:
    stop_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    cost_usd: float | None = None


@dataclass
class StreamError:
    message: str
    error_type: str = "error"


NormalizedEvent = Union[TextDelta, ToolInvocation, ToolResultEvent, TurnEnd, StreamError]

_IGNORED = frozenset({"ping", "system"})


def _usage_from(data: dict[str, Any] | None, into: Usage | None = None) -> Usage:
    usage = into or Usage()
    if not isinstance(data, dict):
        return usage
    for name in (
        "input_tokens",
        "output_tokens",
        "cache_creation_input_tokens",
        "cache_read_input_tokens",
    ):
        value = data.get(name)
        if isinstance(value, int) and value:
            setattr(usage, name, value)
    return usage


def _result_text(content: Any) -> str:
    """Flatten tool_result content (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    return str(content)


@dataclass
class _OpenBlock:
    type: str
    id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)


class ProtocolEventDecoder:
    """Stateful decoder for one stream."""

    def __init__(self, log: ComponentLogger | None = None) -> None:
        self._log = log or default_logger
        self._blocks: dict[int, _OpenBlock] = {}
        self._usage = Usage()
        self._stop_reason: str | None = None

    def decode(self, raw: Any) -> NormalizedEvent | None:
        """Decode one raw event. Composite events yield their first part."""
        events = self.decode_many(raw)
        return events[0] if events else None

    def decode_many(self, raw: Any) -> list[NormalizedEvent]:
        """Decode one raw event into zero or more normalized events."""
        try:
            return self._decode(raw)
        except DecodeError as exc:
            self._log.warn(COMPONENT, str(exc), {"event": _summary(raw)})
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            self._log.warn(
                COMPONENT,
                f"Malformed event skipped: {exc}",
                {"event": _summary(raw)},
            )
        return []

    def _decode(self, raw: Any) -> list[NormalizedEvent]:
        if not isinstance(raw, dict):
            raise DecodeError(type(raw).__name__, "event is not an object")
        event_type = raw.get("type")
        if not isinstance(event_type, str):
            raise DecodeError("?", "missing type")

        if event_type == "message_start":
            self._blocks.clear()
            self._usage = _usage_from((raw.get("message") or {}).get("usage"))
            self._stop_reason = None
            return []
        if event_type in _IGNORED:
            return []
        if event_type == "content_block_start":
            return self._block_start(raw["index"], raw["content_block"])
        if event_type == "content_block_delta":
            return self._block_delta(raw["index"], raw["delta"])
        if event_type == "content_block_stop":
            return self._block_stop(raw["index"])
        if event_type == "message_delta":
            delta = raw.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            _usage_from(raw.get("usage"), into=self._usage)
            return []
        if event_type == "message_stop":
            end = TurnEnd(stop_reason=self._stop_reason, usage=self._usage)
            self._usage = Usage()
            self._stop_reason = None
            return [end]
        if event_type == "error":
            error = raw.get("error") or {}
            if isinstance(error, str):
                return [StreamError(message=error)]
            return [StreamError(
                message=str(error.get("message", "stream error")),
                error_type=str(error.get("type", "error")),
            )]

        # Whole-block shapes
        if event_type == "text":
            text = raw["text"]
            return [TextDelta(text)] if text else []
        if event_type == "tool_use":
            return [self._invocation(raw["id"], raw["name"], raw.get("input"))]
        if event_type == "tool_result":
            return [ToolResultEvent(
                tool_use_id=raw["tool_use_id"],
                content=_result_text(raw.get("content")),
                is_error=bool(raw.get("is_error", False)),
            )]
        if event_type in ("assistant", "user"):
            message = raw.get("message") or raw
            content = message.get("content")
            if not isinstance(content, list):
                return []
            events: list[NormalizedEvent] = []
            for block in content:
                events.extend(self.decode_many(block))
            if event_type == "user":
                # Echoed user turns only carry remote tool results.
                events = [e for e in events if isinstance(e, ToolResultEvent)]
            return events
        if event_type == "result":
            cost = raw.get("total_cost_usd", raw.get("cost_usd"))
            if raw.get("is_error"):
                return [StreamError(
                    message=str(raw.get("result") or raw.get("subtype") or "agent error"),
                    error_type=str(raw.get("subtype", "result_error")),
                )]
            return [TurnEnd(
                stop_reason=raw.get("stop_reason") or raw.get("subtype"),
                usage=_usage_from(raw.get("usage")),
                cost_usd=float(cost) if cost is not None else None,
            )]
        if event_type == "thinking":
            return []

        raise DecodeError(event_type, "unknown event type")

    def _block_start(self, index: int, block: dict[str, Any]) -> list[NormalizedEvent]:
        block_type = block["type"]
        if block_type == "text":
            self._blocks[index] = _OpenBlock(type="text")
            text = block.get("text") or ""
            return [TextDelta(text)] if text else []
        if block_type in ("tool_use", "server_tool_use"):
            opened = _OpenBlock(type="tool_use", id=block["id"], name=block["name"])
            initial = block.get("input")
            if initial:
                opened.fragments.append(json.dumps(initial))
            self._blocks[index] = opened
            return []
        if block_type.endswith("tool_result"):
            self._blocks[index] = _OpenBlock(type=block_type)
            return [ToolResultEvent(
                tool_use_id=block["tool_use_id"],
                content=_result_text(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            )]
        self._blocks[index] = _OpenBlock(type=block_type)
        return []

    def _block_delta(self, index: int, delta: dict[str, Any]) -> list[NormalizedEvent]:
        delta_type = delta["type"]
        if delta_type == "text_delta":
            text = delta["text"]
            return [TextDelta(text)] if text else []
        if delta_type == "input_json_delta":
            block = self._blocks.get(index)
            if block is None or block.type != "tool_use":
                raise DecodeError("content_block_delta", f"no open tool block at {index}")
            block.fragments.append(delta.get("partial_json", ""))
            return []
        if delta_type in ("thinking_delta", "signature_delta"):
            return []
        raise DecodeError("content_block_delta", f"unknown delta type {delta_type}")

    def _block_stop(self, index: int) -> list[NormalizedEvent]:
        block = self._blocks.pop(index, None)
        if block is None or block.type != "tool_use":
            return []
        raw_json = "".join(block.fragments).strip()
        if not raw_json:
            return [ToolInvocation(id=block.id, name=block.name, input={})]
        return [self._invocation(block.id, block.name, raw_json)]

    def _invocation(self, tool_id: str, name: str, raw_input: Any) -> ToolInvocation:
        if raw_input is None:
            return ToolInvocation(id=tool_id, name=name, input={})
        if isinstance(raw_input, dict):
            return ToolInvocation(id=tool_id, name=name, input=raw_input)
        try:
            parsed = json.loads(raw_input) if isinstance(raw_input, str) else raw_input
        except json.JSONDecodeError as exc:
            self._log.warn(
                COMPONENT,
                f"Malformed input for tool {name}",
                {"tool_use_id": tool_id, "error": str(exc)},
            )
            return ToolInvocation(
                id=tool_id, name=name, input={},
                input_error=f"Malformed tool input: {exc.msg}",
            )
        if not isinstance(parsed, dict):
            return ToolInvocation(
                id=tool_id, name=name, input={},
                input_error="Tool input must be a JSON object",
            )
        return ToolInvocation(id=tool_id, name=name, input=parsed)


def _summary(raw: Any) -> str:
    text = repr(raw)
    return text if len(text) <= 200 else text[:200] + "..."
