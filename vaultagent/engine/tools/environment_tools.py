"""Environment tools: open, list and command operations on the host app.

They are exposed in the reserved ``mcp__vault__`` namespace. The host
side is an ``EnvironmentHost``; ``VaultEnvironmentHost`` is a headless
host backed by a vault adapter and a table of named commands.
"""
from __future__ import annotations

import abc
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from vaultagent.shared.vault import VaultAdapter, normalize

from ..errors import ToolExecutionError, VaultPathError
from ..executor import CapabilityProvider
from ..models import ToolCall, ToolProvider, ToolResult
from ..permissions import environment_tool_name

logger = logging.getLogger(__name__)

CommandFn = Callable[[], "Awaitable[str] | str"]


class EnvironmentHost(abc.ABC):
    @abc.abstractmethod
    async def open_note(self, path: str) -> str:
        ...

    @abc.abstractmethod
    async def list_notes(self, folder: str) -> list[str]:
        ...

    @abc.abstractmethod
    async def run_command(self, command_id: str) -> str:
        ...

    @abc.abstractmethod
    def command_ids(self) -> list[str]:
        ...


class VaultEnvironmentHost(EnvironmentHost):
    """Headless host: notes come from the vault, commands from a table."""

    def __init__(
        self,
        vault: VaultAdapter,
        commands: dict[str, CommandFn] | None = None,
        note_suffix: str = ".md",
    ) -> None:
        self._vault = vault
        self._commands = dict(commands or {})
        self._suffix = note_suffix
        self.opened: list[str] = []

    def add_command(self, command_id: str, fn: CommandFn) -> None:
        self._commands[command_id] = fn

    def command_ids(self) -> list[str]:
        return sorted(self._commands)

    async def open_note(self, path: str) -> str:
        path = normalize(path)
        if not await self._vault.exists(path):
            raise FileNotFoundError(path)
        self.opened.append(path)
        return f"Opened {path}"

    async def list_notes(self, folder: str) -> list[str]:
        notes: list[str] = []
        pending = [normalize(folder)]
        while pending:
            files, folders = await self._vault.list(pending.pop(0))
            notes.extend(f for f in files if f.endswith(self._suffix))
            pending.extend(folders)
        return notes

    async def run_command(self, command_id: str) -> str:
        fn = self._commands.get(command_id)
        if fn is None:
            raise KeyError(command_id)
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return str(result) if result is not None else f"Ran {command_id}"


class EnvironmentToolProvider(CapabilityProvider):
    provider = ToolProvider.ENVIRONMENT

    def __init__(self, host: EnvironmentHost) -> None:
        self._host = host

    def definitions(self) -> list[dict[str, Any]]:
        commands = self._host.command_ids()
        return [
            {
                "name": environment_tool_name("open_note"),
                "description": "Open a note in the editor.",
                "input_schema": {
                    "type": "object",
                    "properties": {"path": {"type": "string"}},
                    "required": ["path"],
                },
            },
            {
                "name": environment_tool_name("list_notes"),
                "description": "List notes under a folder, recursively.",
                "input_schema": {
                    "type": "object",
                    "properties": {"folder": {"type": "string"}},
                    "required": [],
                },
            },
            {
                "name": environment_tool_name("run_command"),
                "description": "Run an editor command by id. Available: "
                + (", ".join(commands) if commands else "none"),
                "input_schema": {
                    "type": "object",
                    "properties": {"command_id": {"type": "string"}},
                    "required": ["command_id"],
                },
            },
        ]

    async def invoke(self, call: ToolCall) -> ToolResult:
        operation = call.identity.operation if call.identity else None
        try:
            if operation == "open_note":
                path = call.input.get("path")
                if not isinstance(path, str) or not path:
                    raise ToolExecutionError(call.name, "missing required 'path'")
                return ToolResult(call.id, await self._host.open_note(path))
            if operation == "list_notes":
                notes = await self._host.list_notes(call.input.get("folder") or "")
                return ToolResult(call.id, "\n".join(notes) if notes else "No notes found")
            if operation == "run_command":
                command_id = call.input.get("command_id")
                if not isinstance(command_id, str) or not command_id:
                    raise ToolExecutionError(call.name, "missing required 'command_id'")
                return ToolResult(call.id, await self._host.run_command(command_id))
        except FileNotFoundError as exc:
            raise ToolExecutionError(call.name, f"note not found: {exc}") from exc
        except KeyError as exc:
            raise ToolExecutionError(call.name, f"unknown command: {exc.args[0]}") from exc
        except VaultPathError as exc:
            raise ToolExecutionError(call.name, str(exc)) from exc
        raise ToolExecutionError(call.name, f"unsupported operation {operation}")
