"""Delegated sub-conversations.

A delegation tool call runs as a nested ``SessionController`` turn with
its own conversation, a tool set without delegation, and a budget and
turn ceiling carved from what the parent query has left. The nested
controller's events drive the ``SubagentProgress`` attached to the
parent's ToolCall:

    assistant text streaming   -> thinking
    tool call created          -> running
    turn completed             -> completed
    turn failed                -> error
    turn cancelled             -> interrupted

Approval requests from the nested turn are re-emitted on the parent
turn; the parent's ``resolve_approval`` routes the answer back down.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vaultagent.adapters.events import (
    ApprovalRequested,
    OrchestratorEvent,
    SubagentProgressEvent,
)

from .config import EventHandlers
from .errors import ToolExecutionError
from .lifecycle import advance_subagent
from .models import (
    ApprovalDecision,
    Conversation,
    SessionAccounting,
    SessionPolicy,
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolResult,
    TurnState,
)

if TYPE_CHECKING:
    from .controller import SessionController, TurnHandle

logger = logging.getLogger(__name__)

_FINAL_STATUS = {
    TurnState.COMPLETED: SubagentStatus.COMPLETED,
    TurnState.CANCELLED: SubagentStatus.INTERRUPTED,
    TurnState.FAILED: SubagentStatus.ERROR,
}


@dataclass
class _Child:
    controller: SessionController
    conversation: Conversation
    handle: TurnHandle | None = None


class SubagentTracker:
    """Tracks delegation calls made during one parent turn."""

    def __init__(
        self,
        parent: SessionController,
        conversation_id: str,
        accounting: SessionAccounting,
    ) -> None:
        self._parent = parent
        self._conversation_id = conversation_id
        self._accounting = accounting
        self.progress: dict[str, SubagentProgress] = {}
        self._children: dict[str, _Child] = {}

    @property
    def active_children(self) -> list[SessionController]:
        return [c.controller for c in self._children.values()]

    async def register(self, call: ToolCall) -> SubagentProgress:
        """Create the ``starting`` progress record for a delegation call."""
        progress = SubagentProgress(
            message=str(call.input.get("description") or ""),
            subagent_type=str(call.input.get("subagent_type") or "general-purpose"),
        )
        call.is_subagent = True
        call.subagent = progress
        self.progress[call.id] = progress
        await self._publish(call.id, progress)
        return progress

    async def advance(
        self, tool_call_id: str, status: SubagentStatus, message: str = "",
    ) -> bool:
        progress = self.progress.get(tool_call_id)
        if progress is None:
            return False
        if not advance_subagent(progress, status, message):
            return False
        logger.debug(
            "Subagent %s -> %s %s", tool_call_id[:8], status.value, message[:60],
        )
        await self._publish(tool_call_id, progress)
        return True

    async def _publish(self, tool_call_id: str, progress: SubagentProgress) -> None:
        await self._parent.emit(self._conversation_id, SubagentProgressEvent(
            tool_call_id=tool_call_id,
            status=progress.status.value,
            message=progress.message,
            subagent_type=progress.subagent_type,
        ))

    def _child_policy(self) -> SessionPolicy:
        parent_policy = self._parent.policy
        allowance = self._parent.budget.remaining(self._accounting, parent_policy)
        return SessionPolicy(
            auto_approve_vault_reads=parent_policy.auto_approve_vault_reads,
            auto_approve_vault_writes=parent_policy.auto_approve_vault_writes,
            require_bash_approval=parent_policy.require_bash_approval,
            # Shared so AllowAlways inside a subagent applies to the parent too.
            always_allowed_tools=parent_policy.always_allowed_tools,
            max_budget_per_session=allowance.budget,
            max_turns=min(self._parent.config.subagent_max_turns, allowance.turns),
        )

    async def run(self, call: ToolCall) -> ToolResult:
        """Run a delegation call to completion. Used as the executor's delegate."""
        prompt = call.input.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            await self.advance(call.id, SubagentStatus.ERROR, "missing prompt")
            raise ToolExecutionError(call.name, "missing required 'prompt'")

        policy = self._child_policy()
        if policy.max_turns <= 0 or policy.max_budget_per_session <= 0:
            await self.advance(call.id, SubagentStatus.ERROR, "no allowance left")
            raise ToolExecutionError(
                call.name, "no budget or turns left for a subagent",
            )

        conversation = Conversation(title=str(call.input.get("description") or "subagent"))
        child = self._parent.spawn_child(
            policy, EventHandlers(on_event=self._forwarder(call.id)),
        )
        record = _Child(child, conversation)
        self._children[call.id] = record
        logger.info(
            "Subagent %s starting (budget=$%.4f turns=%d)",
            call.id[:8], policy.max_budget_per_session, policy.max_turns,
        )
        await self.advance(call.id, SubagentStatus.RUNNING, "started")
        try:
            record.handle = child.start_turn(conversation, prompt)
            # Shielded so the nested turn is cancelled through its own
            # controller and gets to record the interruption.
            outcome = await asyncio.shield(record.handle.wait())
        except asyncio.CancelledError:
            if record.handle is not None:
                child.cancel(conversation.id)
                await record.handle.wait()
            await self.advance(call.id, SubagentStatus.INTERRUPTED, "interrupted")
            raise
        finally:
            self._children.pop(call.id, None)
            child_cost = child.accounting(conversation.id).total_cost_usd
            self._parent.budget.add_cost(self._accounting, child_cost)

        final = _FINAL_STATUS.get(outcome.state, SubagentStatus.ERROR)
        await self.advance(call.id, final, outcome.reason or final.value)
        if outcome.state != TurnState.COMPLETED:
            raise ToolExecutionError(
                call.name,
                f"subagent {outcome.state.value}: {outcome.error or outcome.reason}",
            )
        return ToolResult(call.id, outcome.final_text or "(subagent returned no text)")

    def _forwarder(self, tool_call_id: str):
        async def _on_child_event(event: OrchestratorEvent) -> None:
            await self._on_child_event(tool_call_id, event)
        return _on_child_event

    async def _on_child_event(self, tool_call_id: str, event: OrchestratorEvent) -> None:
        kind = event.event_type
        if kind == "message_updated" and getattr(event, "delta", ""):
            await self.advance(tool_call_id, SubagentStatus.THINKING, "thinking")
        elif kind == "tool_call_created":
            await self.advance(
                tool_call_id, SubagentStatus.RUNNING, f"using {event.tool_name}",
            )
        elif kind == "turn_completed":
            await self.advance(tool_call_id, SubagentStatus.COMPLETED, "completed")
        elif kind == "turn_failed":
            status = (
                SubagentStatus.INTERRUPTED
                if event.reason == "cancelled" else SubagentStatus.ERROR
            )
            await self.advance(tool_call_id, status, event.error or event.reason)
        elif kind == "approval_requested":
            await self._parent.emit(self._conversation_id, ApprovalRequested(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                tool_input=event.tool_input,
                parent_tool_call_id=event.parent_tool_call_id or tool_call_id,
            ))

    def resolve_approval(self, tool_call_id: str, decision: ApprovalDecision) -> bool:
        for child in list(self._children.values()):
            if child.controller.resolve_approval(tool_call_id, decision):
                return True
        return False

    async def interrupt_all(self) -> None:
        """Mark every live subagent interrupted and cancel nested turns."""
        for tool_call_id, progress in list(self.progress.items()):
            if not progress.is_terminal:
                await self.advance(tool_call_id, SubagentStatus.INTERRUPTED, "interrupted")
        for child in list(self._children.values()):
            child.controller.cancel(child.conversation.id)
