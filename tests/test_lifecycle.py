"""Tests for the tool call, subagent and turn state machines."""

import pytest

from vaultagent.engine.lifecycle import (
    advance_subagent,
    mark_error,
    mark_running,
    mark_success,
    validate_subagent_transition,
    validate_tool_transition,
    validate_turn_transition,
)
from vaultagent.engine.models import (
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolStatus,
    TurnState,
)


class TestToolTransitions:
    def test_happy_path(self):
        call = ToolCall(id="t1", name="Read")
        mark_running(call)
        assert call.status == ToolStatus.RUNNING
        assert call.started_at is not None
        mark_success(call, "ok")
        assert call.status == ToolStatus.SUCCESS
        assert call.output == "ok"
        assert call.ended_at is not None

    def test_pending_can_fail_directly(self):
        call = ToolCall(id="t1", name="Bash")
        mark_error(call, "denied")
        assert call.status == ToolStatus.ERROR
        assert call.error == "denied"
        assert call.output is None

    def test_pending_cannot_succeed_without_running(self):
        with pytest.raises(ValueError, match="pending -> success"):
            validate_tool_transition(ToolStatus.PENDING, ToolStatus.SUCCESS)

    @pytest.mark.parametrize("terminal", [ToolStatus.SUCCESS, ToolStatus.ERROR])
    def test_terminal_states_are_final(self, terminal):
        with pytest.raises(ValueError, match="terminal"):
            validate_tool_transition(terminal, ToolStatus.RUNNING)

    def test_completion_clears_subagent_progress(self):
        call = ToolCall(id="t1", name="Task", is_subagent=True, subagent=SubagentProgress())
        mark_running(call)
        mark_error(call, "boom", output="partial")
        assert call.subagent is None
        assert call.output == "partial"


class TestSubagentTransitions:
    def test_running_and_thinking_alternate(self):
        progress = SubagentProgress()
        assert advance_subagent(progress, SubagentStatus.RUNNING)
        assert advance_subagent(progress, SubagentStatus.THINKING, "thinking")
        assert advance_subagent(progress, SubagentStatus.RUNNING, "using Read")
        assert progress.message == "using Read"

    def test_terminal_is_a_sink(self):
        progress = SubagentProgress()
        assert advance_subagent(progress, SubagentStatus.COMPLETED)
        assert not advance_subagent(progress, SubagentStatus.RUNNING)
        assert not advance_subagent(progress, SubagentStatus.INTERRUPTED)
        assert progress.status == SubagentStatus.COMPLETED

    def test_same_status_only_updates_message(self):
        progress = SubagentProgress(status=SubagentStatus.RUNNING, message="a")
        assert not advance_subagent(progress, SubagentStatus.RUNNING)
        assert advance_subagent(progress, SubagentStatus.RUNNING, "b")
        assert progress.message == "b"

    def test_thinking_cannot_return_to_starting(self):
        with pytest.raises(ValueError):
            validate_subagent_transition(SubagentStatus.THINKING, SubagentStatus.STARTING)


class TestTurnTransitions:
    @pytest.mark.parametrize("current,target", [
        (TurnState.IDLE, TurnState.STREAMING),
        (TurnState.STREAMING, TurnState.AWAITING_APPROVAL),
        (TurnState.AWAITING_APPROVAL, TurnState.EXECUTING_TOOL),
        (TurnState.EXECUTING_TOOL, TurnState.AWAITING_APPROVAL),
        (TurnState.EXECUTING_TOOL, TurnState.STREAMING),
        (TurnState.STREAMING, TurnState.COMPLETED),
        (TurnState.FAILED, TurnState.STREAMING),
        (TurnState.IDLE, TurnState.CANCELLED),
    ])
    def test_allowed(self, current, target):
        validate_turn_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (TurnState.IDLE, TurnState.COMPLETED),
        (TurnState.COMPLETED, TurnState.STREAMING),
        (TurnState.CANCELLED, TurnState.FAILED),
        (TurnState.AWAITING_APPROVAL, TurnState.COMPLETED),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(ValueError, match="Invalid turn transition"):
            validate_turn_transition(current, target)
