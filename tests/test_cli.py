"""Tests for the terminal front end."""
import io
import logging
from logging.handlers import RotatingFileHandler

import pytest
from rich.console import Console
from rich.prompt import Prompt

from fakes import ScriptedTransport, end, text, tool_use
from vaultagent.cli import TerminalSession, _resolve_task, configure_logging
from vaultagent.engine.config import EngineConfig
from vaultagent.engine.controller import SessionController
from vaultagent.engine.executor import ToolExecutor
from vaultagent.engine.models import Conversation, SessionPolicy
from vaultagent.engine.tools.vault_tools import VaultToolProvider
from vaultagent.shared.vault import LocalVaultAdapter


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _session(tmp_path, transport, policy=None):
    executor = ToolExecutor(providers=[VaultToolProvider(LocalVaultAdapter(tmp_path))])
    controller = SessionController(transport, executor, policy or SessionPolicy())
    console = Console(file=io.StringIO(), width=120, color_system=None)
    return TerminalSession(controller, Conversation(), console), console


def test_configure_logging(tmp_path, restore_root_logger):
    log_file = configure_logging(verbose=True, level="ERROR", log_dir=tmp_path / "logs")
    root = logging.getLogger()
    assert log_file == tmp_path / "logs" / "vaultagent.log"
    assert root.level == logging.DEBUG
    assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    logging.getLogger("vaultagent.test").info("hello log")
    for handler in root.handlers:
        handler.flush()
    assert "hello log" in log_file.read_text()


def test_configure_logging_uses_config_level(tmp_path, monkeypatch, restore_root_logger):
    monkeypatch.setenv("VAULTAGENT_LOG_LEVEL", "warning")
    config = EngineConfig.from_env()
    configure_logging(verbose=False, level=config.log_level, log_dir=tmp_path)
    assert logging.getLogger().level == logging.WARNING


def test_configure_logging_unknown_level_falls_back_to_info(tmp_path, restore_root_logger):
    configure_logging(verbose=False, level="chatty", log_dir=tmp_path)
    assert logging.getLogger().level == logging.INFO


def test_resolve_task_prefers_file(tmp_path):
    prompt_file = tmp_path / "task.md"
    prompt_file.write_text("  Tidy the inbox\n")
    assert _resolve_task("inline", str(prompt_file)) == "Tidy the inbox"
    assert _resolve_task("inline", None) == "inline"


def test_resolve_task_missing_file_exits(tmp_path):
    with pytest.raises(SystemExit):
        _resolve_task(None, str(tmp_path / "missing.md"))


@pytest.mark.asyncio
async def test_run_turn_renders_text_and_summary(tmp_path):
    session, console = _session(tmp_path, ScriptedTransport([text("Hello there"), end(0.5)]))
    assert await session.run_turn("hi")
    output = console.file.getvalue()
    assert "Hello there" in output
    assert "1 turns, $0.5000" in output


@pytest.mark.asyncio
async def test_run_turn_asks_for_approval(tmp_path, monkeypatch):
    asked = []

    def fake_ask(prompt, **kwargs):
        asked.append(kwargs["choices"])
        return "y"

    monkeypatch.setattr(Prompt, "ask", fake_ask)
    transport = ScriptedTransport(
        [tool_use("b1", "Bash", {"command": "echo hi"}), end()],
        [text("ran it"), end()],
    )
    session, console = _session(tmp_path, transport)

    assert await session.run_turn("run echo")
    output = console.file.getvalue()
    assert asked == [["y", "a", "n"]]
    assert "Allow" in output
    assert "Bash" in output
    assert "ran it" in output
    call = session.conversation.messages[1].tool_calls[0]
    assert call.output == "hi"


@pytest.mark.asyncio
async def test_failed_turn_returns_false(tmp_path):
    session, console = _session(tmp_path, ScriptedTransport([text("partial")]))
    assert not await session.run_turn("hi")
    assert "Turn failed (transport_error)" in console.file.getvalue()
