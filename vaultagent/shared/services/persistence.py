"""Conversation persistence: save and load conversations to disk.

Storage layout:
    <base_dir>/index.json
    <base_dir>/conversations/{conversation_id}.json

The controller only depends on the ``ConversationStorage`` interface;
``JsonConversationStorage`` is the file-backed implementation.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from vaultagent.engine.models import (
    ChatMessage,
    Conversation,
    MessageRole,
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolStatus,
)
from vaultagent.engine.permissions import classify_tool
from vaultagent.shared.services.durable_write import atomic_write_json, fsync_dir

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"


@dataclass
class ConversationMeta:
    """Index entry describing one saved conversation."""
    id: str
    title: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    message_count: int = 0


@dataclass
class ConversationIndex:
    """Metadata for every saved conversation, most recent first."""
    conversations: list[ConversationMeta] = field(default_factory=list)
    active_conversation_id: str | None = None

    def get(self, conversation_id: str) -> ConversationMeta | None:
        for meta in self.conversations:
            if meta.id == conversation_id:
                return meta
        return None

    def upsert(self, conversation: Conversation) -> bool:
        """Record ``conversation``'s metadata. Returns True if it changed."""
        meta = self.get(conversation.id)
        if meta is None:
            meta = ConversationMeta(id=conversation.id)
            self.conversations.append(meta)
        before = (meta.title, meta.updated_at, meta.message_count)
        meta.title = conversation.title
        meta.created_at = conversation.created_at
        meta.updated_at = conversation.updated_at
        meta.message_count = len(conversation.messages)
        self.conversations.sort(
            key=lambda m: m.updated_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return before != (meta.title, meta.updated_at, meta.message_count)

    def remove(self, conversation_id: str) -> bool:
        meta = self.get(conversation_id)
        if meta is None:
            return False
        self.conversations.remove(meta)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        return True


class ConversationStorage(abc.ABC):
    """Storage collaborator consumed by the session controller."""

    @abc.abstractmethod
    async def is_initialized(self) -> bool:
        ...

    @abc.abstractmethod
    async def initialize(self) -> None:
        ...

    @abc.abstractmethod
    async def load_index(self) -> ConversationIndex:
        ...

    @abc.abstractmethod
    async def save_index(self, index: ConversationIndex) -> None:
        ...

    @abc.abstractmethod
    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        """Return the conversation, or None if it was never saved."""

    @abc.abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    @abc.abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        ...


class JsonConversationStorage(ConversationStorage):
    """One JSON file per conversation plus an index file.

    Every write goes through ``atomic_write_json`` so a crash never
    leaves a truncated file behind.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)
        self._dir = self._base_dir / "conversations"
        self._index_path = self._base_dir / "index.json"

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def is_initialized(self) -> bool:
        return self._dir.is_dir() and self._index_path.exists()

    async def initialize(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        if not self._index_path.exists():
            atomic_write_json(self._index_path, _index_to_dict(ConversationIndex()))
            logger.info("Conversation storage initialized at %s", self._base_dir)

    async def load_index(self) -> ConversationIndex:
        if not self._index_path.exists():
            return ConversationIndex()
        try:
            data = json.loads(self._index_path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load index %s, starting empty", self._index_path)
            return ConversationIndex()
        return _dict_to_index(data)

    async def save_index(self, index: ConversationIndex) -> None:
        atomic_write_json(self._index_path, _index_to_dict(index))
        logger.debug("Index saved (%d conversations)", len(index.conversations))

    def _path(self, conversation_id: str) -> Path:
        return self._dir / f"{conversation_id}.json"

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        data = json.loads(path.read_text())
        return dict_to_conversation(data)

    async def save_conversation(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        data = conversation_to_dict(conversation)
        data["saved_at"] = datetime.now(timezone.utc).isoformat()
        atomic_write_json(path, data)
        logger.info(
            "Conversation %s saved (%d messages)",
            conversation.id[:8], len(conversation.messages),
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.exists():
            return False
        path.unlink()
        fsync_dir(self._dir)
        logger.info("Conversation %s deleted", conversation_id[:8])
        return True


def _ensure_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return _ensure_aware(datetime.fromisoformat(value))


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _tool_call_to_dict(tc: ToolCall) -> dict:
    data = {
        "id": tc.id,
        "name": tc.name,
        "input": tc.input,
        "status": tc.status.value,
        "output": tc.output,
        "error": tc.error,
        "started_at": _format_timestamp(tc.started_at),
        "ended_at": _format_timestamp(tc.ended_at),
        "is_subagent": tc.is_subagent,
    }
    if tc.subagent is not None:
        data["subagent"] = {
            "status": tc.subagent.status.value,
            "message": tc.subagent.message,
            "subagent_type": tc.subagent.subagent_type,
            "started_at": _format_timestamp(tc.subagent.started_at),
        }
    return data


def _dict_to_tool_call(data: dict) -> ToolCall:
    subagent = None
    sub = data.get("subagent")
    if sub:
        subagent = SubagentProgress(
            status=SubagentStatus(sub["status"]),
            message=sub.get("message", ""),
            subagent_type=sub.get("subagent_type", "unknown"),
        )
        started = _parse_timestamp(sub.get("started_at"))
        if started:
            subagent.started_at = started
    return ToolCall(
        id=data["id"],
        name=data["name"],
        input=data.get("input") or {},
        status=ToolStatus(data.get("status", ToolStatus.PENDING.value)),
        output=data.get("output"),
        error=data.get("error"),
        started_at=_parse_timestamp(data.get("started_at")),
        ended_at=_parse_timestamp(data.get("ended_at")),
        is_subagent=data.get("is_subagent", False),
        subagent=subagent,
        identity=classify_tool(data["name"]),
    )


def message_to_dict(msg: ChatMessage) -> dict:
    return {
        "id": msg.id,
        "role": msg.role.value,
        "content": msg.content,
        "created_at": msg.created_at.isoformat(),
        "streaming": msg.streaming,
        "error": msg.error,
        "finalized": msg.finalized,
        "tool_calls": [_tool_call_to_dict(tc) for tc in msg.tool_calls],
    }


def dict_to_message(data: dict) -> ChatMessage:
    return ChatMessage(
        role=MessageRole(data["role"]),
        content=data.get("content", ""),
        id=data["id"],
        tool_calls=[_dict_to_tool_call(tc) for tc in data.get("tool_calls", [])],
        streaming=data.get("streaming", False),
        error=data.get("error"),
        created_at=_parse_timestamp(data["created_at"]),
        finalized=data.get("finalized", False),
    )


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "version": FORMAT_VERSION,
        "id": conversation.id,
        "title": conversation.title,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
        "messages": [message_to_dict(m) for m in conversation.messages],
        "history": conversation.history,
    }


def dict_to_conversation(data: dict) -> Conversation:
    return Conversation(
        id=data["id"],
        title=data.get("title", ""),
        created_at=_parse_timestamp(data["created_at"]),
        updated_at=_parse_timestamp(data["updated_at"]),
        messages=[dict_to_message(m) for m in data.get("messages", [])],
        history=data.get("history", []),
    )


def _index_to_dict(index: ConversationIndex) -> dict:
    return {
        "version": FORMAT_VERSION,
        "active_conversation_id": index.active_conversation_id,
        "conversations": [
            {
                "id": meta.id,
                "title": meta.title,
                "created_at": _format_timestamp(meta.created_at),
                "updated_at": _format_timestamp(meta.updated_at),
                "message_count": meta.message_count,
            }
            for meta in index.conversations
        ],
    }


def _dict_to_index(data: dict) -> ConversationIndex:
    index = ConversationIndex(
        active_conversation_id=data.get("active_conversation_id"),
    )
    for entry in data.get("conversations", []):
        if not isinstance(entry, dict) or "id" not in entry:
            logger.warning("Skipping malformed index entry: %r", entry)
            continue
        index.conversations.append(ConversationMeta(
            id=entry["id"],
            title=entry.get("title", ""),
            created_at=_parse_timestamp(entry.get("created_at")),
            updated_at=_parse_timestamp(entry.get("updated_at")),
            message_count=entry.get("message_count", 0),
        ))
    return index
