"""Tool call display helpers with per-tool rendering.

A registry maps tool names to formatters that turn a tool's input into
a small intermediate representation (icon, label, summary). The
terminal front end renders it as Rich markup; other front ends can use
the same pieces.

Adding a new tool format takes one decorated function:

    @tool_formatter("MyTool")
    def _format_my_tool(name, args):
        return FormattedToolCall(icon="🔧", label=name, summary=...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from vaultagent.engine.models import SubagentStatus, ToolCall, ToolStatus
from vaultagent.engine.permissions import (
    DELEGATION_TOOL,
    ENVIRONMENT_SERVER,
    EXTERNAL_PREFIX,
)


@dataclass
class FormattedToolCall:
    """Structured representation of a formatted tool call."""

    icon: str = ""
    label: str = ""
    summary: str = ""
    file_path: str = ""  # Primary vault path, if any


# ── Formatter Registry ──

_FORMATTERS: dict[str, Callable[[str, dict], FormattedToolCall]] = {}

_RUNNING_SUBAGENT = (
    SubagentStatus.STARTING,
    SubagentStatus.RUNNING,
    SubagentStatus.THINKING,
)

_SUBAGENT_STATUS_TEXT = {
    SubagentStatus.STARTING: "starting...",
    SubagentStatus.RUNNING: "running...",
    SubagentStatus.THINKING: "thinking...",
    SubagentStatus.COMPLETED: "✓",
    SubagentStatus.INTERRUPTED: "⚠ interrupted",
    SubagentStatus.ERROR: "✗",
}

_TOOL_STATUS_TEXT = {
    ToolStatus.PENDING: "pending",
    ToolStatus.RUNNING: "running...",
    ToolStatus.SUCCESS: "✓",
    ToolStatus.ERROR: "✗",
}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[[str, dict], FormattedToolCall]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def _split_external(name: str) -> tuple[str, str] | None:
    """``mcp__server__op`` -> ``(server, op)``."""
    if not name.startswith(EXTERNAL_PREFIX) or name.count("__") < 2:
        return None
    server, _, operation = name[len(EXTERNAL_PREFIX):].partition("__")
    if not server or not operation:
        return None
    return server, operation


def format_tool_call(name: str, args: dict[str, Any] | None = None) -> FormattedToolCall:
    """Dispatch to a registered formatter or the default."""
    args = args or {}
    formatter = _FORMATTERS.get(name)
    if formatter is None:
        split = _split_external(name)
        formatter = _format_external if split else _format_default
    return formatter(name, args)


# ── Public helpers ──


def display_name(name: str, args: dict[str, Any] | None = None) -> str:
    """Friendly label for a tool name.

    ``Task`` shows its subagent type, the environment's own tools drop
    their prefix, other capability servers read ``server: operation``.
    """
    args = args or {}
    if name == DELEGATION_TOOL and args.get("subagent_type"):
        return f"Task: {args['subagent_type']}"
    split = _split_external(name)
    if split is None:
        return name
    server, operation = split
    readable = operation.replace("_", " ")
    if server == ENVIRONMENT_SERVER:
        return readable[:1].upper() + readable[1:]
    return f"{server}: {readable}"


def input_summary(name: str, args: dict[str, Any] | None = None) -> str:
    return format_tool_call(name, args).summary


def status_text(
    status: ToolStatus | str,
    is_subagent: bool = False,
    subagent_status: SubagentStatus | str | None = None,
) -> str:
    """Short status indicator; a subagent's own status wins over the call's."""
    if is_subagent and subagent_status:
        return _SUBAGENT_STATUS_TEXT.get(SubagentStatus(subagent_status), "")
    return _TOOL_STATUS_TEXT.get(ToolStatus(status), "")


def is_subagent_running(subagent_status: SubagentStatus | str | None) -> bool:
    if not subagent_status:
        return False
    return SubagentStatus(subagent_status) in _RUNNING_SUBAGENT


def describe_call(call: ToolCall) -> tuple[str, str, str]:
    """``(label, summary, status)`` for a ToolCall."""
    progress = call.subagent
    return (
        display_name(call.name, call.input),
        input_summary(call.name, call.input),
        status_text(
            call.status, call.is_subagent, progress.status if progress else None,
        ),
    )


# ── Helpers ──


def _basename(path: str) -> str:
    if not path:
        return ""
    return path.replace("\\", "/").rstrip("/").split("/")[-1]


def _trunc(text: str, length: int = 60) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[:length] + "..."


# ── Formatters ──


@tool_formatter("Read")
@tool_formatter("Write")
@tool_formatter("Edit")
@tool_formatter("MultiEdit")
def _format_file(name: str, args: dict) -> FormattedToolCall:
    file_path = str(args.get("file_path") or args.get("path") or "")
    icons = {"Read": "\U0001f4c4", "Write": "\U0001f4dd"}
    return FormattedToolCall(
        icon=icons.get(name, "✏"),
        label=name,
        summary=_basename(file_path),
        file_path=file_path,
    )


@tool_formatter("LS")
def _format_ls(name: str, args: dict) -> FormattedToolCall:
    path = str(args.get("path") or "")
    return FormattedToolCall(
        icon="\U0001f4c1", label="LS", summary=_basename(path) or ".", file_path=path,
    )


@tool_formatter("Glob")
@tool_formatter("Grep")
def _format_search(name: str, args: dict) -> FormattedToolCall:
    pattern = str(args.get("pattern") or "")
    path = str(args.get("path") or "")
    summary = _trunc(pattern, 30)
    if path:
        summary = f"{summary} in {_basename(path)}"
    return FormattedToolCall(
        icon="\U0001f50d", label=name, summary=summary, file_path=path,
    )


@tool_formatter("Bash")
def _format_bash(name: str, args: dict) -> FormattedToolCall:
    command = str(args.get("command") or "")
    return FormattedToolCall(icon="$", label="Bash", summary=_trunc(command, 30))


@tool_formatter(DELEGATION_TOOL)
def _format_task(name: str, args: dict) -> FormattedToolCall:
    description = str(args.get("description") or "")
    prompt = str(args.get("prompt") or "")
    return FormattedToolCall(
        icon="\U0001f500",
        label=display_name(name, args),
        summary=description or _trunc(prompt, 40),
    )


def _format_external(name: str, args: dict) -> FormattedToolCall:
    path = str(args.get("path") or args.get("file_path") or "")
    if path:
        summary = _basename(path)
    elif args.get("query"):
        summary = _trunc(str(args["query"]), 30)
    else:
        summary = _count_params(args)
    return FormattedToolCall(
        icon="\U0001f50c", label=display_name(name, args), summary=summary, file_path=path,
    )


def _format_default(name: str, args: dict) -> FormattedToolCall:
    """Fallback formatter for unrecognised tool names."""
    for key in ("file_path", "path"):
        if args.get(key):
            return FormattedToolCall(
                icon="\U0001f527", label=name, summary=_basename(str(args[key])),
            )
    for key in ("pattern", "command", "query"):
        if args.get(key):
            return FormattedToolCall(
                icon="\U0001f527", label=name, summary=_trunc(str(args[key]), 30),
            )
    return FormattedToolCall(icon="\U0001f527", label=name, summary=_count_params(args))


def _count_params(args: dict) -> str:
    return f"{len(args)} params" if args else ""


# ── Rich Markup Renderer ──


def _esc(text: str) -> str:
    """Escape Rich markup characters."""
    return text.replace("[", "\\[")


def render_collapsed_rich(call: ToolCall) -> str:
    """Render a ToolCall as a one-line Rich markup string."""
    fmt = format_tool_call(call.name, call.input)
    label, summary, status = describe_call(call)
    color = {
        ToolStatus.SUCCESS: "green",
        ToolStatus.ERROR: "red",
    }.get(call.status, "yellow")

    parts = ["[dim]▶[/dim]"]
    if fmt.icon:
        parts.append(fmt.icon)
    parts.append(f"[cyan]{_esc(label)}[/cyan]")
    if summary:
        parts.append(f"[dim]{_esc(summary)}[/dim]")
    parts.append(f"[{color}]{_esc(status)}[/{color}]")
    if call.status == ToolStatus.ERROR and call.error:
        parts.append(f"[red]{_esc(_trunc(call.error, 80))}[/red]")
    return "  ".join(parts)
