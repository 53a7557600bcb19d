"""Terminal front end for the vault agent.

Usage:
    vaultagent ~/notes "Summarize the notes in projects/"
    vaultagent ~/notes --prompt-file task.md --model opus
    vaultagent ~/notes                  # interactive, one turn per line
    vaultagent ~/notes --resume <conversation-id>
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt

from vaultagent.adapters.events import (
    ApprovalRequested,
    MessageUpdated,
    OrchestratorEvent,
    SubagentProgressEvent,
    ToolCallUpdated,
    TurnCompleted,
    TurnFailed,
)
from vaultagent.adapters.permission_store import PermissionStore
from vaultagent.engine.config import EngineConfig
from vaultagent.engine.controller import SessionController
from vaultagent.engine.errors import SettingsError
from vaultagent.engine.executor import ToolExecutor
from vaultagent.engine.models import ApprovalDecision, Conversation, ModelTier, TurnState
from vaultagent.engine.tools.environment_tools import (
    EnvironmentToolProvider,
    VaultEnvironmentHost,
)
from vaultagent.engine.tools.mcp_client import McpCapabilityProvider
from vaultagent.engine.tools.vault_tools import VaultToolProvider
from vaultagent.engine.transport import MessagesApiTransport
from vaultagent.engine.yaml_config import load_settings
from vaultagent.shared.formatters.tool_call import (
    display_name,
    input_summary,
    render_collapsed_rich,
)
from vaultagent.shared.services.persistence import JsonConversationStorage
from vaultagent.shared.vault import LocalVaultAdapter

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".vaultagent" / "logs"

_APPROVAL_CHOICES = {
    "y": ApprovalDecision.ALLOW,
    "a": ApprovalDecision.ALLOW_ALWAYS,
    "n": ApprovalDecision.DENY,
}


def configure_logging(
    verbose: bool, level: str = "INFO", log_dir: Path = LOG_DIR,
) -> Path:
    """Rotating file log plus stderr. Returns the log file path.

    ``level`` is usually ``EngineConfig.log_level``; ``verbose`` forces DEBUG.
    """
    level_name = "DEBUG" if verbose else level.upper()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "vaultagent.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Streamed text goes to stdout; keep stderr quiet unless asked.
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


class TerminalSession:
    """Runs turns on one conversation and renders their events."""

    def __init__(
        self,
        controller: SessionController,
        conversation: Conversation,
        console: Console | None = None,
    ) -> None:
        self.controller = controller
        self.conversation = conversation
        self.console = console or Console()
        self._midline = False

    async def run_turn(self, text: str) -> bool:
        """Run one turn to the end. Returns True if it completed."""
        handle = self.controller.start_turn(self.conversation, text)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(
                signal.SIGINT, self.controller.cancel, self.conversation.id,
            )
        except (NotImplementedError, RuntimeError):
            pass
        try:
            async for event in handle:
                await self._render(event)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
        outcome = await handle.wait()
        self._end_line()
        return outcome.state == TurnState.COMPLETED

    def _end_line(self) -> None:
        if self._midline:
            self.console.print()
            self._midline = False

    async def _render(self, event: OrchestratorEvent) -> None:
        if isinstance(event, MessageUpdated):
            if event.delta:
                self.console.print(event.delta, end="", markup=False, highlight=False)
                self._midline = True
            elif event.error:
                self._end_line()
                self.console.print(f"[red]error:[/red] {escape(event.error)}", highlight=False)
        elif isinstance(event, ToolCallUpdated):
            if event.status in ("success", "error"):
                call = self._find_call(event.tool_call_id)
                if call is not None:
                    self._end_line()
                    self.console.print(render_collapsed_rich(call))
        elif isinstance(event, SubagentProgressEvent):
            self._end_line()
            self.console.print(
                f"[dim]  subagent {event.subagent_type}: {event.status}"
                f"{' - ' + escape(event.message) if event.message else ''}[/dim]",
                highlight=False,
            )
        elif isinstance(event, ApprovalRequested):
            await self._ask_approval(event)
        elif isinstance(event, TurnFailed) and event.recoverable:
            await self._ask_continue(event)
        elif isinstance(event, TurnFailed):
            self._end_line()
            if event.reason == "cancelled":
                self.console.print("[yellow]Interrupted.[/yellow]")
            else:
                self.console.print(f"[red]Turn failed ({event.reason}):[/red] {escape(event.error or '')}")
        elif isinstance(event, TurnCompleted):
            self._end_line()
            self.console.print(
                f"[dim]{event.turns} turns, ${event.cost_usd:.4f}[/dim]",
            )

    def _find_call(self, tool_call_id: str):
        message = self.conversation.last_assistant_message
        return message.find_tool_call(tool_call_id) if message else None

    async def _ask_approval(self, event: ApprovalRequested) -> None:
        self._end_line()
        label = escape(display_name(event.tool_name, event.tool_input))
        summary = escape(input_summary(event.tool_name, event.tool_input))
        origin = " (subagent)" if event.parent_tool_call_id else ""
        self.console.print(
            f"[bold yellow]Allow[/bold yellow] [cyan]{label}[/cyan]{origin} "
            f"[dim]{summary}[/dim]?",
            highlight=False,
        )
        answer = await asyncio.to_thread(
            Prompt.ask,
            "  y = allow, a = always allow, n = deny",
            choices=list(_APPROVAL_CHOICES),
            default="n",
            console=self.console,
        )
        self.controller.resolve_approval(event.tool_call_id, _APPROVAL_CHOICES[answer])

    async def _ask_continue(self, event: TurnFailed) -> None:
        self._end_line()
        self.console.print(f"[yellow]{escape(event.error or '')}[/yellow]")
        proceed = await asyncio.to_thread(
            Confirm.ask, "  Continue?", default=False, console=self.console,
        )
        self.controller.confirm_continue(self.conversation.id, proceed)


async def _run(
    args: argparse.Namespace, console: Console, config: EngineConfig,
) -> int:
    vault_dir = Path(args.vault).expanduser().resolve()
    if not vault_dir.is_dir():
        console.print(f"[red]Not a directory:[/red] {vault_dir}")
        return 2

    try:
        settings = load_settings(args.settings)
    except SettingsError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2
    if args.model:
        settings.model = ModelTier(args.model)
    api_key = settings.resolve_api_key()
    if not api_key:
        console.print("[red]No API key: set apiKey in settings or ANTHROPIC_API_KEY[/red]")
        return 2

    store = PermissionStore(vault_dir=vault_dir)
    policy = settings.to_policy(extra_allowed=store.load())

    vault = LocalVaultAdapter(vault_dir)
    servers = McpCapabilityProvider(settings.enabled_servers)
    executor = ToolExecutor(config, [
        VaultToolProvider(vault),
        EnvironmentToolProvider(VaultEnvironmentHost(vault)),
        servers,
    ])
    transport = MessagesApiTransport(api_key, config)
    storage = JsonConversationStorage(vault_dir / ".vaultagent")
    controller = SessionController(
        transport,
        executor,
        policy,
        config=config,
        model=settings.model,
        storage=storage,
        permission_store=store,
    )

    conversation = Conversation()
    if args.resume:
        loaded = await storage.load_conversation(args.resume)
        if loaded is None:
            console.print(f"[red]No saved conversation {args.resume}[/red]")
            return 2
        conversation = loaded

    await servers.start()
    if servers.connected_servers:
        console.print(
            f"[dim]capability servers: {', '.join(servers.connected_servers)}[/dim]"
        )
    session = TerminalSession(controller, conversation, console)
    try:
        task = _resolve_task(args.prompt, args.prompt_file)
        if task:
            ok = await session.run_turn(task)
            return 0 if ok else 1
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold]> [/bold]")
            except EOFError:
                return 0
            if line.strip() in ("/exit", "/quit"):
                return 0
            if line.strip():
                await session.run_turn(line)
    finally:
        controller.cancel_all()
        await servers.close()
        await transport.close()
        logger.info("Session ended conversation=%s", conversation.id[:8])


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="vaultagent",
        description="Run an agent over a local note vault",
    )
    parser.add_argument("vault", help="Vault directory the agent works in")
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Prompt for a single turn (omit for interactive mode)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file",
    )
    parser.add_argument(
        "--settings",
        default=None,
        help="Settings YAML (default: ~/.vaultagent/settings.yaml)",
    )
    parser.add_argument(
        "--model",
        choices=[tier.value for tier in ModelTier],
        default=None,
        help="Model tier (default: from settings)",
    )
    parser.add_argument(
        "--resume",
        default=None,
        help="Continue a saved conversation by id",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    config = EngineConfig.from_env()
    configure_logging(args.verbose, config.log_level)
    console = Console()
    try:
        code = asyncio.run(_run(args, console, config))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        code = 130
    sys.exit(code)


def _resolve_task(inline: str | None, file_path: str | None) -> str | None:
    """Resolve the prompt from an inline argument or a file."""
    if file_path:
        path = Path(file_path)
        if not path.exists():
            print(f"Error: prompt file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        return path.read_text(encoding="utf-8").strip()
    return inline


if __name__ == "__main__":
    main()
