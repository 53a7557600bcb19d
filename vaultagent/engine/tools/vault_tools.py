"""Built-in tools over a VaultAdapter.

Read, LS, Glob and Grep inspect the vault; Write, Edit and MultiEdit
change it; Bash runs a shell command with the vault root as cwd.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
import signal
from typing import Any

from vaultagent.shared.vault import VaultAdapter, normalize

from ..errors import ToolExecutionError, VaultPathError
from ..executor import CapabilityProvider
from ..models import ToolCall, ToolProvider, ToolResult

logger = logging.getLogger(__name__)

MAX_GLOB_RESULTS = 500
MAX_GREP_MATCHES = 200


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_STR = {"type": "string"}

DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "Read",
        "description": "Read a note or file from the vault. Returns numbered lines.",
        "input_schema": _schema({
            "file_path": _STR,
            "offset": {"type": "integer", "description": "1-based first line"},
            "limit": {"type": "integer", "description": "Number of lines"},
        }, ["file_path"]),
    },
    {
        "name": "LS",
        "description": "List files and folders directly under a vault folder.",
        "input_schema": _schema({"path": _STR}, []),
    },
    {
        "name": "Glob",
        "description": "Find vault files whose path matches a glob pattern.",
        "input_schema": _schema({"pattern": _STR, "path": _STR}, ["pattern"]),
    },
    {
        "name": "Grep",
        "description": "Search file contents with a regular expression.",
        "input_schema": _schema({
            "pattern": _STR,
            "path": _STR,
            "glob": _STR,
            "case_insensitive": {"type": "boolean"},
        }, ["pattern"]),
    },
    {
        "name": "Write",
        "description": "Create or overwrite a file in the vault.",
        "input_schema": _schema(
            {"file_path": _STR, "content": _STR}, ["file_path", "content"],
        ),
    },
    {
        "name": "Edit",
        "description": "Replace an exact string in a vault file.",
        "input_schema": _schema({
            "file_path": _STR,
            "old_string": _STR,
            "new_string": _STR,
            "replace_all": {"type": "boolean"},
        }, ["file_path", "old_string", "new_string"]),
    },
    {
        "name": "MultiEdit",
        "description": "Apply several Edit operations to one file, all or nothing.",
        "input_schema": _schema({
            "file_path": _STR,
            "edits": {
                "type": "array",
                "items": _schema({
                    "old_string": _STR,
                    "new_string": _STR,
                    "replace_all": {"type": "boolean"},
                }, ["old_string", "new_string"]),
            },
        }, ["file_path", "edits"]),
    },
    {
        "name": "Bash",
        "description": "Run a shell command with the vault root as working directory.",
        "input_schema": _schema({"command": _STR}, ["command"]),
    },
]


def _require(call: ToolCall, key: str) -> str:
    value = call.input.get(key)
    if not isinstance(value, str) or (key != "content" and not value):
        raise ToolExecutionError(call.name, f"missing required '{key}'")
    return value


def apply_edit(
    tool_name: str, text: str, old: str, new: str, replace_all: bool = False,
) -> str:
    if not old:
        raise ToolExecutionError(tool_name, "old_string must not be empty")
    if old == new:
        raise ToolExecutionError(tool_name, "old_string and new_string are identical")
    count = text.count(old)
    if count == 0:
        raise ToolExecutionError(tool_name, "old_string not found in file")
    if count > 1 and not replace_all:
        raise ToolExecutionError(
            tool_name,
            f"old_string appears {count} times; pass replace_all or add context",
        )
    return text.replace(old, new) if replace_all else text.replace(old, new, 1)


def glob_match(path: str, pattern: str) -> bool:
    pattern = normalize(pattern)
    if fnmatch.fnmatch(path, pattern):
        return True
    # "**/x" also matches "x" at the top level.
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatch.fnmatch(path, pattern):
            return True
    return False


class VaultToolProvider(CapabilityProvider):
    provider = ToolProvider.BUILTIN

    def __init__(self, vault: VaultAdapter, enable_shell: bool = True) -> None:
        self._vault = vault
        self._enable_shell = enable_shell
        self._handlers = {
            "Read": self._read,
            "LS": self._ls,
            "Glob": self._glob,
            "Grep": self._grep,
            "Write": self._write,
            "Edit": self._edit,
            "MultiEdit": self._multi_edit,
        }
        if enable_shell:
            self._handlers["Bash"] = self._bash

    def definitions(self) -> list[dict[str, Any]]:
        return [d for d in DEFINITIONS if d["name"] in self._handlers]

    def tool_names(self) -> set[str]:
        return set(self._handlers)

    async def invoke(self, call: ToolCall) -> ToolResult:
        handler = self._handlers[call.name]
        try:
            content = await handler(call)
        except VaultPathError as exc:
            raise ToolExecutionError(call.name, str(exc)) from exc
        except FileNotFoundError as exc:
            raise ToolExecutionError(call.name, f"not found: {exc.filename or exc}") from exc
        except (IsADirectoryError, NotADirectoryError, PermissionError, UnicodeDecodeError) as exc:
            raise ToolExecutionError(call.name, str(exc)) from exc
        return ToolResult(call.id, content)

    async def _walk(self, folder: str) -> list[str]:
        """All file paths under ``folder``, breadth first."""
        files: list[str] = []
        pending = [normalize(folder)]
        while pending:
            current = pending.pop(0)
            found, folders = await self._vault.list(current)
            files.extend(found)
            pending.extend(folders)
        return files

    async def _read(self, call: ToolCall) -> str:
        path = _require(call, "file_path")
        text = await self._vault.read(path)
        lines = text.splitlines()
        offset = max(int(call.input.get("offset") or 1), 1)
        limit = call.input.get("limit")
        end = offset - 1 + int(limit) if limit else len(lines)
        selected = lines[offset - 1:end]
        if not selected:
            return "(empty file)" if not lines else f"(no lines from {offset})"
        return "\n".join(
            f"{n:>6}\t{line}" for n, line in enumerate(selected, start=offset)
        )

    async def _ls(self, call: ToolCall) -> str:
        path = normalize(call.input.get("path") or "")
        files, folders = await self._vault.list(path)
        entries = [f"{folder}/" for folder in folders] + files
        if not entries:
            return f"{path or '/'} is empty"
        return "\n".join(entries)

    async def _glob(self, call: ToolCall) -> str:
        pattern = _require(call, "pattern")
        root = call.input.get("path") or ""
        matches = [p for p in await self._walk(root) if glob_match(p, pattern)]
        if not matches:
            return f"No files match {pattern}"
        shown = matches[:MAX_GLOB_RESULTS]
        suffix = ""
        if len(matches) > len(shown):
            suffix = f"\n... ({len(matches) - len(shown)} more)"
        return "\n".join(shown) + suffix

    async def _grep(self, call: ToolCall) -> str:
        pattern = _require(call, "pattern")
        flags = re.IGNORECASE if call.input.get("case_insensitive") else 0
        try:
            regex = re.compile(pattern, flags)
        except re.error as exc:
            raise ToolExecutionError(call.name, f"invalid pattern: {exc}") from exc
        file_glob = call.input.get("glob")
        root = normalize(call.input.get("path") or "")
        try:
            candidates = await self._walk(root)
        except NotADirectoryError:
            candidates = [root]
        results: list[str] = []
        for path in candidates:
            if file_glob and not glob_match(path, file_glob):
                continue
            try:
                text = await self._vault.read(path)
            except UnicodeDecodeError:
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{path}:{number}: {line}")
                    if len(results) >= MAX_GREP_MATCHES:
                        results.append(f"... (stopped at {MAX_GREP_MATCHES} matches)")
                        return "\n".join(results)
        return "\n".join(results) if results else f"No matches for {pattern}"

    async def _write(self, call: ToolCall) -> str:
        path = _require(call, "file_path")
        content = _require(call, "content")
        existed = await self._vault.exists(path)
        await self._vault.write(path, content)
        verb = "Updated" if existed else "Created"
        return f"{verb} {normalize(path)} ({len(content)} chars)"

    async def _edit(self, call: ToolCall) -> str:
        path = _require(call, "file_path")
        text = await self._vault.read(path)
        updated = apply_edit(
            call.name, text,
            _require(call, "old_string"),
            call.input.get("new_string", ""),
            bool(call.input.get("replace_all", False)),
        )
        await self._vault.write(path, updated)
        return f"Edited {normalize(path)}"

    async def _multi_edit(self, call: ToolCall) -> str:
        path = _require(call, "file_path")
        edits = call.input.get("edits")
        if not isinstance(edits, list) or not edits:
            raise ToolExecutionError(call.name, "edits must be a non-empty list")
        text = await self._vault.read(path)
        for i, edit in enumerate(edits, start=1):
            if not isinstance(edit, dict):
                raise ToolExecutionError(call.name, f"edit {i} is not an object")
            try:
                text = apply_edit(
                    call.name, text,
                    edit.get("old_string", ""),
                    edit.get("new_string", ""),
                    bool(edit.get("replace_all", False)),
                )
            except ToolExecutionError as exc:
                raise ToolExecutionError(call.name, f"edit {i}: {exc.reason}") from exc
        await self._vault.write(path, text)
        return f"Applied {len(edits)} edits to {normalize(path)}"

    async def _bash(self, call: ToolCall) -> str:
        command = _require(call, "command").strip()
        cwd = self._vault.get_base_path()
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True,
        )
        logger.info(
            "Bash %s pid=%s cwd=%s command=%s",
            call.id[:8], proc.pid, cwd,
            (command[:180] + "...") if len(command) > 180 else command,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeouts arrive here too, via wait_for in the executor.
            _terminate(proc)
            await proc.wait()
            raise
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        output = out + (f"\n[stderr]\n{err}" if err.strip() else "")
        if proc.returncode != 0:
            raise ToolExecutionError(
                call.name,
                f"exit code {proc.returncode}\n{output.strip()}".rstrip(),
            )
        return output.strip() or "(no output)"


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, AttributeError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
