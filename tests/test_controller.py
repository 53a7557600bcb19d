"""Turn-level tests for SessionController with a scripted remote agent."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from fakes import (
    HOLD,
    BlockingReadProvider,
    ScriptedTransport,
    drain,
    end,
    text,
    tool_use,
)
from vaultagent.adapters.permission_store import PermissionStore
from vaultagent.engine.config import EngineConfig, EventHandlers
from vaultagent.engine.controller import SessionController
from vaultagent.engine.errors import ConcurrentTurnError, TransportError
from vaultagent.engine.executor import ToolExecutor
from vaultagent.engine.models import (
    ApprovalDecision,
    Conversation,
    MessageRole,
    SessionPolicy,
    ToolStatus,
    TurnState,
)
from vaultagent.engine.tools.vault_tools import VaultToolProvider
from vaultagent.shared.services.persistence import JsonConversationStorage
from vaultagent.shared.vault import LocalVaultAdapter


@pytest.fixture
def vault_dir(tmp_path):
    root = tmp_path / "vault"
    (root / "notes").mkdir(parents=True)
    (root / "notes" / "a.md").write_text("# A\n")
    (root / "notes" / "b.md").write_text("# B\n")
    return root


def _controller(transport, vault_dir, policy=None, **kwargs):
    executor = ToolExecutor(EngineConfig(), [VaultToolProvider(LocalVaultAdapter(vault_dir))])
    return SessionController(transport, executor, policy or SessionPolicy(), **kwargs)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_list_files_then_summarize(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("t1", "LS", {"path": "notes"}), end(0.01)],
            [text("Two notes: "), text("a.md and b.md"), end(0.01)],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "list files in notes/")
        outcome = await handle.wait()

        assert outcome.state == TurnState.COMPLETED
        assert [m.role for m in conversation.messages] == [
            MessageRole.USER, MessageRole.ASSISTANT,
        ]
        assistant = conversation.messages[1]
        assert assistant.content == "Two notes: a.md and b.md"
        assert assistant.finalized
        assert len(assistant.tool_calls) == 1
        call = assistant.tool_calls[0]
        assert call.status == ToolStatus.SUCCESS
        assert "notes/a.md" in call.output
        assert outcome.turns == 2
        assert outcome.cost_usd == pytest.approx(0.02)
        assert conversation.title == "list files in notes/"

    @pytest.mark.asyncio
    async def test_tool_result_is_fed_back_in_history(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("t1", "LS", {"path": "notes"}), end()],
            [text("ok"), end()],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        await controller.start_turn(conversation, "ls").wait()

        second = transport.requests[1]
        assert second.messages[-1]["role"] == "user"
        block = second.messages[-1]["content"][0]
        assert block["type"] == "tool_result"
        assert block["tool_use_id"] == "t1"
        assert "notes/b.md" in block["content"]
        assert any(d["name"] == "Task" for d in second.tools)

    @pytest.mark.asyncio
    async def test_events_carry_deltas_only(self, vault_dir):
        transport = ScriptedTransport([text("Hel"), text("lo"), end()])
        seen = []
        controller = _controller(
            transport, vault_dir, handlers=EventHandlers(on_message_updated=seen.append),
        )
        conversation = Conversation()
        handle = controller.start_turn(conversation, "hi")
        await handle.wait()
        events = await drain(handle)

        deltas = [e.delta for e in events if e.event_type == "message_updated"]
        assert "".join(deltas) == conversation.messages[1].content == "Hello"
        assert [e.delta for e in seen] == deltas
        assert events[-1].event_type == "turn_completed"

    @pytest.mark.asyncio
    async def test_stream_read_after_turn_keeps_every_event(self, vault_dir):
        transport = ScriptedTransport([text("x")] * 6000 + [end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "long answer")
        await handle.wait()
        events = await drain(handle)

        deltas = [e.delta for e in events if e.event_type == "message_updated"]
        assert "".join(deltas) == conversation.messages[1].content
        assert len(conversation.messages[1].content) == 6000
        assert events[-1].event_type == "turn_completed"

    @pytest.mark.asyncio
    async def test_turns_on_different_conversations_run_concurrently(self, vault_dir):
        transport = ScriptedTransport(
            [text("slow "), HOLD, text("answer"), end(0.02)],
            [text("quick answer"), end(0.05)],
        )
        controller = _controller(transport, vault_dir)
        first, second = Conversation(), Conversation()

        first_handle = controller.start_turn(first, "slow question")
        await asyncio.wait_for(transport.holding.wait(), 1)
        second_outcome = await controller.start_turn(second, "quick question").wait()

        assert second_outcome.state == TurnState.COMPLETED
        assert controller.state(second.id) == TurnState.COMPLETED
        assert controller.state(first.id) == TurnState.STREAMING
        assert controller.is_active(first.id)
        assert controller.accounting(second.id).total_cost_usd == pytest.approx(0.05)
        assert controller.accounting(first.id).total_cost_usd == 0

        transport.release.set()
        first_outcome = await first_handle.wait()

        assert first_outcome.state == TurnState.COMPLETED
        assert first.messages[1].content == "slow answer"
        assert second.messages[1].content == "quick answer"
        assert controller.accounting(first.id).total_cost_usd == pytest.approx(0.02)
        assert controller.accounting(second.id).total_cost_usd == pytest.approx(0.05)
        assert controller.accounting(first.id) is not controller.accounting(second.id)


class TestApprovals:
    @pytest.mark.asyncio
    async def test_denied_shell_never_reaches_executor(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("b1", "Bash", {"command": "rm -rf notes"}), end()],
            [text("Understood, nothing was deleted."), end()],
        )
        controller = _controller(transport, vault_dir)
        controller.executor.execute = AsyncMock(wraps=controller.executor.execute)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "clean up")
        states = []
        async for event in handle:
            if event.event_type == "approval_requested":
                states.append(controller.state(conversation.id))
                assert controller.resolve_approval(event.tool_call_id, ApprovalDecision.DENY)
        outcome = await handle.wait()

        assert states == [TurnState.AWAITING_APPROVAL]
        controller.executor.execute.assert_not_called()
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert "Permission denied" in call.error
        assert outcome.state == TurnState.COMPLETED
        fed_back = transport.requests[1].messages[-1]["content"][0]
        assert fed_back["is_error"] is True
        assert (vault_dir / "notes" / "a.md").exists()

    @pytest.mark.asyncio
    async def test_shell_allowed_without_approval_when_not_required(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("b1", "Bash", {"command": "echo hello"}), end()],
            [text("done"), end()],
        )
        controller = _controller(
            transport, vault_dir, SessionPolicy(require_bash_approval=False),
        )
        conversation = Conversation()
        handle = controller.start_turn(conversation, "say hello")
        await handle.wait()
        events = await drain(handle)

        assert not [e for e in events if e.event_type == "approval_requested"]
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.SUCCESS
        assert call.output == "hello"

    @pytest.mark.asyncio
    async def test_allow_always_updates_policy_and_store(self, vault_dir, tmp_path):
        transport = ScriptedTransport(
            [tool_use("w1", "Write", {"file_path": "notes/c.md", "content": "C"}), end()],
            [text("written"), end()],
        )
        store = PermissionStore(vault_dir=vault_dir, global_dir=tmp_path / "global")
        policy = SessionPolicy()
        controller = _controller(transport, vault_dir, policy, permission_store=store)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "write c")
        async for event in handle:
            if event.event_type == "approval_requested":
                controller.resolve_approval(event.tool_call_id, "allow_always")
        outcome = await handle.wait()

        assert outcome.state == TurnState.COMPLETED
        assert (vault_dir / "notes" / "c.md").read_text() == "C"
        assert "Write" in policy.always_allowed_tools
        assert store.load() == {"Write"}
        assert (vault_dir / ".vaultagent" / "allowed_tools.json").exists()

    @pytest.mark.asyncio
    async def test_path_outside_vault_is_denied_without_asking(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("r1", "Read", {"file_path": "../secret.txt"}), end()],
            [text("cannot"), end()],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        handle = controller.start_turn(conversation, "read it")
        await handle.wait()
        events = await drain(handle)

        assert not [e for e in events if e.event_type == "approval_requested"]
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert "outside the vault" in call.error

    @pytest.mark.asyncio
    async def test_approval_timeout_denies(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("b1", "Bash", {"command": "ls"}), end()],
            [text("ok"), end()],
        )
        controller = _controller(
            transport, vault_dir, config=EngineConfig(approval_timeout_seconds=0.05),
        )
        conversation = Conversation()
        outcome = await controller.start_turn(conversation, "ls").wait()

        assert outcome.state == TurnState.COMPLETED
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert "Permission denied" in call.error

    @pytest.mark.asyncio
    async def test_resolve_unknown_approval_returns_false(self, vault_dir):
        controller = _controller(ScriptedTransport(), vault_dir)
        assert controller.resolve_approval("nope", ApprovalDecision.ALLOW) is False


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_with_running_tool(self, vault_dir):
        provider = BlockingReadProvider()
        transport = ScriptedTransport(
            [tool_use("r1", "Read", {"file_path": "notes/a.md"}), end()],
            [text("should never appear"), end()],
        )
        controller = SessionController(transport, ToolExecutor(providers=[provider]))
        conversation = Conversation()

        handle = controller.start_turn(conversation, "read a")
        await asyncio.wait_for(provider.started.wait(), 1)
        assert controller.state(conversation.id) == TurnState.EXECUTING_TOOL
        assert controller.cancel(conversation.id)
        outcome = await handle.wait()
        events = await drain(handle)

        assert outcome.state == TurnState.CANCELLED
        assert provider.cancelled
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.error == "interrupted"
        assert conversation.messages[1].content == ""
        assert conversation.messages[1].error == "interrupted"
        assert len(transport.requests) == 1
        assert not [e for e in events if getattr(e, "delta", "")]
        assert events[-1].event_type == "turn_failed"
        assert events[-1].reason == "cancelled"
        assert not controller.is_active(conversation.id)

    @pytest.mark.asyncio
    async def test_cancel_while_streaming_drops_later_deltas(self, vault_dir):
        transport = ScriptedTransport([text("first "), HOLD, text("second"), end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "go")
        await asyncio.wait_for(transport.holding.wait(), 1)
        controller.cancel(conversation.id)
        outcome = await handle.wait()

        assert outcome.state == TurnState.CANCELLED
        assert conversation.messages[1].content == "first "

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(self, vault_dir):
        transport = ScriptedTransport([text("never"), end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "go")
        controller.cancel(conversation.id)
        outcome = await handle.wait()

        assert outcome.state == TurnState.CANCELLED
        assert transport.requests == []
        assert controller.state(conversation.id) == TurnState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_pending_approval(self, vault_dir):
        transport = ScriptedTransport([tool_use("b1", "Bash", {"command": "ls"}), end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "ls")
        async for event in handle:
            if event.event_type == "approval_requested":
                controller.cancel(conversation.id)
        outcome = await handle.wait()

        assert outcome.state == TurnState.CANCELLED
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.error == "interrupted"
        assert controller.resolve_approval("b1", ApprovalDecision.ALLOW) is False


class TestBudget:
    @pytest.mark.asyncio
    async def test_suspends_and_continues_on_confirmation(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("t1", "LS", {"path": "notes"}), end(0.02)],
            [text("summary"), end(0.02)],
        )
        controller = _controller(
            transport, vault_dir, SessionPolicy(max_budget_per_session=0.01),
        )
        conversation = Conversation()

        handle = controller.start_turn(conversation, "ls")
        suspended = []
        async for event in handle:
            if event.event_type == "turn_failed" and event.recoverable:
                suspended.append(controller.state(conversation.id))
                assert controller.confirm_continue(conversation.id, True)
        outcome = await handle.wait()

        assert suspended == [TurnState.FAILED]
        assert outcome.state == TurnState.COMPLETED
        assert outcome.cost_usd == pytest.approx(0.04)
        assert conversation.messages[1].content == "summary"

    @pytest.mark.asyncio
    async def test_declined_continuation_fails_turn_and_keeps_messages(self, vault_dir):
        transport = ScriptedTransport(
            [text("partial "), tool_use("t1", "LS", {"path": "notes"}), end(0.02)],
        )
        controller = _controller(
            transport, vault_dir, SessionPolicy(max_budget_per_session=0.01),
        )
        conversation = Conversation()

        handle = controller.start_turn(conversation, "ls")
        failures = []
        async for event in handle:
            if event.event_type == "turn_failed":
                failures.append(event)
                if event.recoverable:
                    controller.confirm_continue(conversation.id, False)
        outcome = await handle.wait()

        assert [f.recoverable for f in failures] == [True, False]
        assert outcome.state == TurnState.FAILED
        assert outcome.reason == "budget_exceeded"
        assistant = conversation.messages[1]
        assert assistant.content == "partial "
        assert assistant.error
        assert assistant.tool_calls[0].status == ToolStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_cost_equal_to_ceiling_keeps_going(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("t1", "LS", {"path": "notes"}), end(0.5)],
            [text("done"), end(0.5)],
        )
        controller = _controller(
            transport, vault_dir, SessionPolicy(max_budget_per_session=0.5),
        )
        conversation = Conversation()
        handle = controller.start_turn(conversation, "ls")
        outcome = await handle.wait()
        events = await drain(handle)

        assert outcome.state == TurnState.COMPLETED
        assert not [e for e in events if e.event_type == "turn_failed"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_second_turn_on_same_conversation_rejected(self, vault_dir):
        transport = ScriptedTransport([HOLD, text("x"), end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()

        handle = controller.start_turn(conversation, "one")
        with pytest.raises(ConcurrentTurnError):
            controller.start_turn(conversation, "two")
        controller.cancel(conversation.id)
        await handle.wait()

    @pytest.mark.asyncio
    async def test_transport_error_fails_turn(self, vault_dir):
        transport = ScriptedTransport(
            [text("partial"), TransportError("connection reset")],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        handle = controller.start_turn(conversation, "hi")
        outcome = await handle.wait()
        events = await drain(handle)

        assert outcome.state == TurnState.FAILED
        assert outcome.reason == "transport_error"
        assert conversation.messages[1].content == "partial"
        assert "connection reset" in conversation.messages[1].error
        failed = events[-1]
        assert failed.event_type == "turn_failed"
        assert failed.recoverable is False

    @pytest.mark.asyncio
    async def test_stream_without_end_marker_fails(self, vault_dir):
        transport = ScriptedTransport([text("cut off")])
        controller = _controller(transport, vault_dir)
        outcome = await controller.start_turn(Conversation(), "hi").wait()
        assert outcome.state == TurnState.FAILED
        assert outcome.reason == "transport_error"

    @pytest.mark.asyncio
    async def test_malformed_tool_input_is_reported_and_turn_continues(self, vault_dir):
        transport = ScriptedTransport(
            [
                {"type": "message_start", "message": {"usage": {"input_tokens": 10}}},
                {"type": "content_block_start", "index": 0,
                 "content_block": {"type": "tool_use", "id": "x1", "name": "Read", "input": {}}},
                {"type": "content_block_delta", "index": 0,
                 "delta": {"type": "input_json_delta", "partial_json": '{"file_path": '}},
                {"type": "content_block_stop", "index": 0},
                {"type": "message_delta", "delta": {"stop_reason": "tool_use"},
                 "usage": {"output_tokens": 5}},
                {"type": "message_stop"},
            ],
            [text("sorry"), end()],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        outcome = await controller.start_turn(conversation, "read").wait()

        assert outcome.state == TurnState.COMPLETED
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.error.startswith("Malformed tool input")
        fed_back = transport.requests[1].messages[-1]["content"][0]
        assert fed_back["tool_use_id"] == "x1"
        assert fed_back["is_error"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool_becomes_error_result(self, vault_dir):
        transport = ScriptedTransport(
            [tool_use("u1", "Teleport", {}), end()],
            [text("ok"), end()],
        )
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        handle = controller.start_turn(conversation, "go")
        async for event in handle:
            if event.event_type == "approval_requested":
                controller.resolve_approval(event.tool_call_id, ApprovalDecision.ALLOW)
        outcome = await handle.wait()

        assert outcome.state == TurnState.COMPLETED
        call = conversation.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert "unknown tool" in call.error

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_break_turn(self, vault_dir):
        def explode(event):
            raise RuntimeError("ui crashed")

        transport = ScriptedTransport([text("fine"), end()])
        controller = _controller(
            transport, vault_dir, handlers=EventHandlers(on_event=explode),
        )
        outcome = await controller.start_turn(Conversation(), "hi").wait()
        assert outcome.state == TurnState.COMPLETED


class TestPersistence:
    @pytest.mark.asyncio
    async def test_turn_is_saved_and_indexed(self, vault_dir, tmp_path):
        storage = JsonConversationStorage(tmp_path / "store")
        transport = ScriptedTransport(
            [tool_use("t1", "LS", {"path": "notes"}), end()],
            [text("listed"), end()],
        )
        controller = _controller(transport, vault_dir, storage=storage)
        conversation = Conversation()
        await controller.start_turn(conversation, "ls").wait()

        loaded = await storage.load_conversation(conversation.id)
        assert [m.id for m in loaded.messages] == [m.id for m in conversation.messages]
        assert loaded.messages[1].tool_calls[0].status == ToolStatus.SUCCESS
        index = await storage.load_index()
        assert index.active_conversation_id == conversation.id
        assert index.get(conversation.id).message_count == 2

    @pytest.mark.asyncio
    async def test_follow_up_turn_replays_history(self, vault_dir):
        transport = ScriptedTransport([text("first"), end()], [text("second"), end()])
        controller = _controller(transport, vault_dir)
        conversation = Conversation()
        await controller.start_turn(conversation, "one").wait()
        await controller.start_turn(conversation, "two").wait()

        roles = [m["role"] for m in transport.requests[1].messages]
        assert roles == ["user", "assistant", "user"]
        assert len(conversation.messages) == 4
        assert controller.accounting(conversation.id).turns == 1
