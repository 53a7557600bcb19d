"""Tool classification and the permission gate.

``classify_tool`` resolves a tool name into a ``ToolIdentity`` once, at
ToolCall creation. ``decide`` is a pure function over that identity, the
tool input and the session policy.
"""
from __future__ import annotations

import logging
import re
from typing import Any

from .models import (
    PermissionDecision,
    SessionPolicy,
    ToolIdentity,
    ToolKind,
    ToolProvider,
)

logger = logging.getLogger(__name__)

DELEGATION_TOOL = "Task"
SHELL_TOOL = "Bash"

EXTERNAL_PREFIX = "mcp__"
ENVIRONMENT_SERVER = "vault"

BUILTIN_KINDS: dict[str, ToolKind] = {
    "Read": ToolKind.READ,
    "LS": ToolKind.READ,
    "Glob": ToolKind.SEARCH,
    "Grep": ToolKind.SEARCH,
    "Write": ToolKind.WRITE,
    "Edit": ToolKind.WRITE,
    "MultiEdit": ToolKind.WRITE,
    SHELL_TOOL: ToolKind.SHELL,
}

ENVIRONMENT_KINDS: dict[str, ToolKind] = {
    "open_note": ToolKind.READ,
    "list_notes": ToolKind.READ,
    "run_command": ToolKind.WRITE,
}

# Input keys that carry a vault-relative path.
PATH_KEYS = ("file_path", "path", "notebook_path", "folder")

_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


def environment_tool_name(operation: str) -> str:
    return f"{EXTERNAL_PREFIX}{ENVIRONMENT_SERVER}__{operation}"


def external_tool_name(server: str, operation: str) -> str:
    return f"{EXTERNAL_PREFIX}{server}__{operation}"


def classify_tool(name: str) -> ToolIdentity:
    """Resolve a tool name to its tagged identity."""
    if name == DELEGATION_TOOL:
        return ToolIdentity(name, ToolProvider.DELEGATION, ToolKind.DELEGATION)
    if name in BUILTIN_KINDS:
        return ToolIdentity(name, ToolProvider.BUILTIN, BUILTIN_KINDS[name])
    if name.startswith(EXTERNAL_PREFIX):
        server, sep, operation = name[len(EXTERNAL_PREFIX):].partition("__")
        if not sep or not server or not operation:
            return ToolIdentity(name, ToolProvider.UNKNOWN, ToolKind.UNKNOWN)
        if server == ENVIRONMENT_SERVER:
            kind = ENVIRONMENT_KINDS.get(operation)
            if kind is None:
                return ToolIdentity(
                    name, ToolProvider.UNKNOWN, ToolKind.UNKNOWN,
                    server=server, operation=operation,
                )
            return ToolIdentity(
                name, ToolProvider.ENVIRONMENT, kind,
                server=server, operation=operation,
            )
        return ToolIdentity(
            name, ToolProvider.EXTERNAL, ToolKind.EXTERNAL,
            server=server, operation=operation,
        )
    return ToolIdentity(name, ToolProvider.UNKNOWN, ToolKind.UNKNOWN)


def is_unsafe_path(path: str) -> bool:
    """True for absolute paths or paths with a parent-directory segment."""
    if path.startswith(("/", "\\", "~")) or _WINDOWS_DRIVE.match(path):
        return True
    segments = re.split(r"[\\/]", path)
    return ".." in segments


def _escaping_path(tool_input: dict[str, Any]) -> str | None:
    for key in PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value and is_unsafe_path(value):
            return value
    for edit in tool_input.get("edits") or ():
        if isinstance(edit, dict):
            nested = _escaping_path(edit)
            if nested:
                return nested
    return None


def decide(
    tool_name: str,
    tool_input: dict[str, Any],
    policy: SessionPolicy,
    always_allowed: set[str] | None = None,
    identity: ToolIdentity | None = None,
) -> PermissionDecision:
    """Decide whether a tool invocation may run.

    Order: always-allowed, path escapes (the only Deny), vault reads,
    vault writes, shell, then everything else asks the user.
    """
    allowed = policy.always_allowed_tools if always_allowed is None else always_allowed
    if tool_name in allowed:
        return PermissionDecision.ALLOW

    identity = identity or classify_tool(tool_name)

    if identity.is_vault_read or identity.is_vault_write:
        escaping = _escaping_path(tool_input or {})
        if escaping is not None:
            logger.warning(
                "Denying %s: path %r escapes the vault", tool_name, escaping,
            )
            return PermissionDecision.DENY

    if identity.is_vault_read and policy.auto_approve_vault_reads:
        return PermissionDecision.ALLOW

    if identity.is_vault_write and policy.auto_approve_vault_writes:
        return PermissionDecision.ALLOW

    if identity.kind == ToolKind.SHELL:
        if policy.require_bash_approval:
            return PermissionDecision.ASK_USER
        return PermissionDecision.ALLOW

    return PermissionDecision.ASK_USER
