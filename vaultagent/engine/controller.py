"""SessionController: drives conversation turns against the remote agent.

One driver task per active turn, at most one active turn per
conversation. A turn runs steps until the model stops asking for local
tools:

1. check the budget and turn ceilings (may suspend for confirmation);
2. stream one model response, decoding events into the turn's single
   assistant ChatMessage and creating ToolCalls for tool invocations;
3. authorize the new ToolCalls in emission order through the
   permission gate, waiting on ``resolve_approval`` for AskUser;
4. run authorized calls concurrently, feed every result back and loop.

Everything observable is emitted as an event, both to the
``EventHandlers`` callbacks and to the turn's ``TurnHandle`` stream.
Only ``ConcurrentTurnError`` escapes ``start_turn``; every other
failure ends the turn through events and the ``TurnOutcome``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from vaultagent.adapters.event_bus import EventBus
from vaultagent.adapters.events import (
    ApprovalRequested,
    MessageCreated,
    MessageUpdated,
    OrchestratorEvent,
    ToolCallCreated,
    ToolCallUpdated,
    TurnCompleted,
    TurnFailed,
)
from vaultagent.adapters.permission_store import PermissionStore
from vaultagent.shared.logger import ComponentLogger, default_logger
from vaultagent.shared.services.persistence import ConversationStorage

from .budget import BudgetEnforcer
from .config import EngineConfig, EventHandlers, fire_event
from .decoder import (
    ProtocolEventDecoder,
    StreamError,
    TextDelta,
    ToolInvocation,
    ToolResultEvent,
    TurnEnd,
)
from .errors import ConcurrentTurnError, PermissionDenied, TransportError
from .executor import ToolExecutor
from .lifecycle import mark_error, mark_running, mark_success, validate_turn_transition
from .models import (
    MODEL_IDS,
    ApprovalDecision,
    BudgetStatus,
    ChatMessage,
    Conversation,
    MessageRole,
    ModelTier,
    PermissionDecision,
    SessionAccounting,
    SessionPolicy,
    ToolCall,
    ToolProvider,
    ToolResult,
    ToolStatus,
    TurnOutcome,
    TurnState,
)
from .permissions import classify_tool, decide
from .subagents import SubagentTracker
from .transport import AgentTransport, TurnRequest

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted"
TITLE_LENGTH = 50


class TurnHandle:
    """Stream of one turn's events plus its final outcome."""

    def __init__(self, conversation_id: str, bus: EventBus, task: asyncio.Task) -> None:
        self.conversation_id = conversation_id
        self._bus = bus
        self._task = task

    def __aiter__(self) -> AsyncIterator[OrchestratorEvent]:
        return self._bus.consume()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> TurnOutcome:
        # Shielded: a cancelled waiter must not cancel the turn itself.
        return await asyncio.shield(self._task)


@dataclass
class _ActiveTurn:
    conversation: Conversation
    user_text: str
    accounting: SessionAccounting
    bus: EventBus = field(default_factory=EventBus)
    state: TurnState = TurnState.IDLE
    task: asyncio.Task | None = None
    started: bool = False
    cancel_requested: bool = False
    assistant: ChatMessage | None = None
    approvals: dict[str, asyncio.Future] = field(default_factory=dict)
    continuation: asyncio.Future | None = None
    tool_tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    tracker: SubagentTracker | None = None


class _Declined(Exception):
    """The user declined to continue past a budget or turn ceiling."""

    def __init__(self, status: BudgetStatus, message: str):
        self.status = status
        super().__init__(message)


class SessionController:
    def __init__(
        self,
        transport: AgentTransport,
        executor: ToolExecutor,
        policy: SessionPolicy | None = None,
        *,
        config: EngineConfig | None = None,
        model: ModelTier = ModelTier.SONNET,
        storage: ConversationStorage | None = None,
        permission_store: PermissionStore | None = None,
        handlers: EventHandlers | None = None,
        budget: BudgetEnforcer | None = None,
        log: ComponentLogger | None = None,
        is_subagent: bool = False,
    ) -> None:
        self.transport = transport
        self.executor = executor
        self.policy = policy or SessionPolicy()
        self.config = config or EngineConfig()
        self.model = model
        self.budget = budget or BudgetEnforcer()
        self._storage = storage
        self._permission_store = permission_store
        self._handlers = handlers or EventHandlers()
        self._log = log or default_logger
        self._is_subagent = is_subagent
        self._turns: dict[str, _ActiveTurn] = {}
        self._accounting: dict[str, SessionAccounting] = {}
        self._last_state: dict[str, TurnState] = {}
        self._approval_owner: dict[str, _ActiveTurn] = {}
        self._index_lock = asyncio.Lock()

    # ── Public API ──────────────────────────────────────────────

    def set_event_handlers(self, handlers: EventHandlers) -> None:
        self._handlers = handlers

    def start_turn(self, conversation: Conversation, user_text: str) -> TurnHandle:
        """Start a turn. Raises ConcurrentTurnError if one is active."""
        if conversation.id in self._turns:
            raise ConcurrentTurnError(conversation.id)
        accounting = self._accounting.setdefault(conversation.id, SessionAccounting())
        turn = _ActiveTurn(conversation, user_text, accounting)
        self._turns[conversation.id] = turn
        turn.task = asyncio.get_running_loop().create_task(self._run(turn))
        logger.info(
            "Turn started conversation=%s subagent=%s",
            conversation.id[:8], self._is_subagent,
        )
        return TurnHandle(conversation.id, turn.bus, turn.task)

    def cancel(self, conversation_id: str) -> bool:
        turn = self._turns.get(conversation_id)
        if turn is None or turn.cancel_requested:
            return False
        turn.cancel_requested = True
        logger.info("Cancel requested conversation=%s state=%s",
                    conversation_id[:8], turn.state.value)
        if turn.started and turn.task is not None and not turn.task.done():
            turn.task.cancel()
        return True

    def cancel_all(self) -> None:
        for conversation_id in list(self._turns):
            self.cancel(conversation_id)

    def resolve_approval(self, tool_call_id: str, decision: ApprovalDecision | str) -> bool:
        """Answer a pending approval request. Returns False if none matches."""
        decision = ApprovalDecision(decision)
        turn = self._approval_owner.get(tool_call_id)
        if turn is not None:
            future = turn.approvals.get(tool_call_id)
            if future is not None and not future.done():
                future.set_result(decision)
                return True
            return False
        for active in list(self._turns.values()):
            if active.tracker and active.tracker.resolve_approval(tool_call_id, decision):
                return True
        logger.debug("No pending approval for %s", tool_call_id[:8])
        return False

    def confirm_continue(self, conversation_id: str, proceed: bool) -> bool:
        """Answer a budget or turn-limit suspension."""
        turn = self._turns.get(conversation_id)
        if turn is None or turn.continuation is None or turn.continuation.done():
            return False
        turn.continuation.set_result(bool(proceed))
        return True

    def state(self, conversation_id: str) -> TurnState:
        turn = self._turns.get(conversation_id)
        if turn is not None:
            return turn.state
        return self._last_state.get(conversation_id, TurnState.IDLE)

    def accounting(self, conversation_id: str) -> SessionAccounting:
        return self._accounting.setdefault(conversation_id, SessionAccounting())

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._turns

    def spawn_child(
        self, policy: SessionPolicy, handlers: EventHandlers,
    ) -> SessionController:
        """Controller for a delegated sub-conversation."""
        return SessionController(
            self.transport,
            self.executor,
            policy,
            config=self.config,
            model=self.model,
            permission_store=self._permission_store,
            handlers=handlers,
            budget=self.budget,
            log=self._log,
            is_subagent=True,
        )

    async def emit(self, conversation_id: str, event: OrchestratorEvent) -> None:
        """Deliver an event to the turn stream and the handlers."""
        if event.conversation_id is None:
            event.conversation_id = conversation_id
        turn = self._turns.get(conversation_id)
        if turn is not None:
            await turn.bus.emit(event)
        for callback in self._handlers.callbacks_for(event.event_type):
            await fire_event(callback, event)

    # ── Driver ──────────────────────────────────────────────────

    async def _run(self, turn: _ActiveTurn) -> TurnOutcome:
        conversation = turn.conversation
        try:
            turn.started = True
            if turn.cancel_requested:
                raise asyncio.CancelledError
            await self._begin(turn)
            outcome = await self._drive(turn)
        except asyncio.CancelledError:
            outcome = await self._finish_cancelled(turn)
            if not turn.cancel_requested:
                raise
        except _Declined as exc:
            outcome = await self._finish_failed(turn, exc.status.value, str(exc))
        except TransportError as exc:
            logger.warning("Turn %s transport failure: %s", conversation.id[:8], exc)
            outcome = await self._finish_failed(turn, "transport_error", str(exc))
        except Exception as exc:
            logger.exception("Turn %s failed", conversation.id[:8])
            outcome = await self._finish_failed(
                turn, "internal_error", f"{type(exc).__name__}: {exc}",
            )
        finally:
            self._last_state[conversation.id] = turn.state
            self._turns.pop(conversation.id, None)
            for tool_call_id in list(turn.approvals):
                self._approval_owner.pop(tool_call_id, None)
            turn.approvals.clear()
            turn.bus.close()
        return outcome

    async def _begin(self, turn: _ActiveTurn) -> None:
        conversation = turn.conversation
        turn.accounting.reset()
        if not self._is_subagent:
            turn.tracker = SubagentTracker(self, conversation.id, turn.accounting)
        if not conversation.title:
            conversation.title = _derive_title(turn.user_text)
        message = ChatMessage(role=MessageRole.USER, content=turn.user_text)
        message.finalize()
        conversation.add_message(message)
        conversation.history.append({"role": "user", "content": turn.user_text})
        self._transition(turn, TurnState.STREAMING)
        await self.emit(conversation.id, MessageCreated(
            message_id=message.id, role=message.role.value, content=message.content,
        ))

    async def _drive(self, turn: _ActiveTurn) -> TurnOutcome:
        while True:
            await self._check_budget(turn)
            calls, early = await self._stream_step(turn)
            pending = [c for c in calls if c.status == ToolStatus.PENDING]
            if not pending and not early:
                return await self._complete(turn)
            await self._run_tool_round(turn, calls, pending, early)
            self._transition(turn, TurnState.STREAMING)

    async def _check_budget(self, turn: _ActiveTurn) -> None:
        status = self.budget.check_before_step(turn.accounting, self.policy)
        if status == BudgetStatus.OK:
            return
        error = self.budget.to_error(status, turn.accounting, self.policy)
        if self._is_subagent:
            raise _Declined(status, str(error))

        logger.info(
            "Turn %s suspended: %s", turn.conversation.id[:8], status.value,
        )
        self._transition(turn, TurnState.FAILED)
        turn.continuation = asyncio.get_running_loop().create_future()
        await self._persist(turn)
        await self.emit(turn.conversation.id, TurnFailed(
            reason=status.value, error=str(error), recoverable=True,
        ))
        try:
            proceed = await turn.continuation
        finally:
            turn.continuation = None
        if not proceed:
            raise _Declined(status, str(error))
        self.budget.grant_continuation(turn.accounting, self.policy, status)
        self._transition(turn, TurnState.STREAMING)

    def _ensure_assistant(self, turn: _ActiveTurn) -> tuple[ChatMessage, bool]:
        if turn.assistant is not None:
            turn.assistant.streaming = True
            return turn.assistant, False
        message = ChatMessage(role=MessageRole.ASSISTANT, streaming=True)
        turn.conversation.add_message(message)
        turn.assistant = message
        return message, True

    def _request(self, turn: _ActiveTurn) -> TurnRequest:
        allowance = self.budget.remaining(turn.accounting, self.policy)
        return TurnRequest(
            model=MODEL_IDS[self.model],
            messages=list(turn.conversation.history),
            system=self.config.system_prompt,
            tools=self.executor.definitions(include_delegation=turn.tracker is not None),
            max_tokens=self.config.max_tokens,
            max_turns=allowance.turns,
        )

    async def _stream_step(
        self, turn: _ActiveTurn,
    ) -> tuple[list[ToolCall], dict[str, ToolResult]]:
        """Stream one model response. Returns its ToolCalls and any results
        already known (malformed input)."""
        conversation = turn.conversation
        assistant, created = self._ensure_assistant(turn)
        if created:
            await self.emit(conversation.id, MessageCreated(
                message_id=assistant.id, role=assistant.role.value,
            ))

        decoder = ProtocolEventDecoder(self._log)
        blocks: list[dict[str, Any]] = []
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        early: dict[str, ToolResult] = {}
        ended: TurnEnd | None = None

        def flush_text() -> None:
            if text_parts:
                blocks.append({"type": "text", "text": "".join(text_parts)})
                text_parts.clear()

        stream = self.transport.stream(self._request(turn))
        try:
            async for raw in stream:
                if turn.cancel_requested:
                    break
                for event in decoder.decode_many(raw):
                    if isinstance(event, TextDelta):
                        assistant.append(event.text)
                        text_parts.append(event.text)
                        await self.emit(conversation.id, MessageUpdated(
                            message_id=assistant.id, delta=event.text,
                        ))
                    elif isinstance(event, ToolInvocation):
                        flush_text()
                        blocks.append({
                            "type": "tool_use",
                            "id": event.id,
                            "name": event.name,
                            "input": event.input,
                        })
                        call = await self._create_call(turn, event, early)
                        calls.append(call)
                    elif isinstance(event, ToolResultEvent):
                        await self._apply_remote_result(turn, event)
                    elif isinstance(event, TurnEnd):
                        ended = event
                    elif isinstance(event, StreamError):
                        raise TransportError(f"{event.error_type}: {event.message}")
                if ended is not None:
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if turn.cancel_requested:
            raise asyncio.CancelledError
        if ended is None:
            raise TransportError("stream ended before the response completed")

        flush_text()
        if blocks:
            conversation.history.append({"role": "assistant", "content": blocks})
        self.budget.record_response(
            turn.accounting, ended.usage, self.model, ended.cost_usd,
        )
        conversation.touch()
        more = any(c.status == ToolStatus.PENDING for c in calls) or bool(early)
        await self.emit(conversation.id, MessageUpdated(
            message_id=assistant.id, delta="", streaming=more,
        ))
        logger.debug(
            "Step done conversation=%s stop=%s calls=%d turns=%d cost=$%.4f",
            conversation.id[:8], ended.stop_reason, len(calls),
            turn.accounting.turns, turn.accounting.total_cost_usd,
        )
        return calls, early

    async def _create_call(
        self,
        turn: _ActiveTurn,
        invocation: ToolInvocation,
        early: dict[str, ToolResult],
    ) -> ToolCall:
        identity = classify_tool(invocation.name)
        call = ToolCall(
            id=invocation.id,
            name=invocation.name,
            input=invocation.input,
            identity=identity,
            is_subagent=identity.provider == ToolProvider.DELEGATION,
        )
        turn.assistant.attach(call)
        await self.emit(turn.conversation.id, ToolCallCreated(
            message_id=turn.assistant.id,
            tool_call_id=call.id,
            tool_name=call.name,
            tool_input=call.input,
            is_subagent=call.is_subagent,
        ))
        if call.is_subagent and turn.tracker is not None and not invocation.input_error:
            await turn.tracker.register(call)
        if invocation.input_error:
            early[call.id] = ToolResult(call.id, invocation.input_error, True)
            await self._close_call(turn, call, early[call.id])
        return call

    async def _apply_remote_result(self, turn: _ActiveTurn, event: ToolResultEvent) -> None:
        call = turn.assistant.find_tool_call(event.tool_use_id) if turn.assistant else None
        if call is None or call.is_complete:
            logger.debug("Remote result for unknown call %s", event.tool_use_id[:8])
            return
        mark_running(call)
        await self._close_call(turn, call, ToolResult(call.id, event.content, event.is_error))

    async def _close_call(self, turn: _ActiveTurn, call: ToolCall, result: ToolResult) -> None:
        if result.is_error:
            mark_error(call, result.content, output=result.content)
        else:
            mark_success(call, result.content)
        await self._emit_call(turn, call)

    async def _emit_call(self, turn: _ActiveTurn, call: ToolCall) -> None:
        await self.emit(turn.conversation.id, ToolCallUpdated(
            tool_call_id=call.id,
            status=call.status.value,
            output=call.output,
            error=call.error,
        ))

    # ── Tool rounds ─────────────────────────────────────────────

    async def _run_tool_round(
        self,
        turn: _ActiveTurn,
        calls: list[ToolCall],
        pending: list[ToolCall],
        early: dict[str, ToolResult],
    ) -> None:
        results = dict(early)
        turn.tool_tasks = {}
        for call in pending:
            allowed, reason = await self._authorize(turn, call)
            if not allowed:
                message = str(PermissionDenied(call.name, reason))
                results[call.id] = ToolResult(call.id, message, True)
                mark_error(call, message)
                await self._emit_call(turn, call)
                continue
            self._transition(turn, TurnState.EXECUTING_TOOL)
            mark_running(call)
            await self._emit_call(turn, call)
            turn.tool_tasks[call.id] = asyncio.create_task(self._execute(turn, call))

        if turn.tool_tasks:
            self._transition(turn, TurnState.EXECUTING_TOOL)
            for call_id, task in list(turn.tool_tasks.items()):
                results[call_id] = await task
        turn.tool_tasks = {}

        blocks = [results[c.id].to_block() for c in calls if c.id in results]
        turn.conversation.history.append({"role": "user", "content": blocks})

    async def _authorize(self, turn: _ActiveTurn, call: ToolCall) -> tuple[bool, str]:
        decision = decide(call.name, call.input, self.policy, identity=call.identity)
        logger.debug("Gate %s (%s): %s", call.name, call.id[:8], decision.value)
        if decision == PermissionDecision.ALLOW:
            return True, ""
        if decision == PermissionDecision.DENY:
            return False, "path is outside the vault"
        answer = await self._request_approval(turn, call)
        if answer == ApprovalDecision.DENY:
            return False, "denied by user"
        if answer == ApprovalDecision.ALLOW_ALWAYS:
            self._allow_always(call.name)
        return True, ""

    async def _request_approval(self, turn: _ActiveTurn, call: ToolCall) -> ApprovalDecision:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        turn.approvals[call.id] = future
        self._approval_owner[call.id] = turn
        self._transition(turn, TurnState.AWAITING_APPROVAL)
        await self.emit(turn.conversation.id, ApprovalRequested(
            tool_call_id=call.id, tool_name=call.name, tool_input=call.input,
        ))
        timeout = self.config.approval_timeout_seconds
        try:
            if timeout > 0:
                return await asyncio.wait_for(future, timeout=timeout)
            return await future
        except asyncio.TimeoutError:
            logger.warning(
                "Approval for %s (%s) timed out after %.0fs, denying",
                call.name, call.id[:8], timeout,
            )
            return ApprovalDecision.DENY
        finally:
            turn.approvals.pop(call.id, None)
            self._approval_owner.pop(call.id, None)

    def _allow_always(self, tool_name: str) -> None:
        self.policy.always_allowed_tools.add(tool_name)
        if self._permission_store is not None:
            self._permission_store.add(tool_name)
        logger.info("Tool %s is now always allowed", tool_name)

    async def _execute(self, turn: _ActiveTurn, call: ToolCall) -> ToolResult:
        delegate = turn.tracker.run if turn.tracker is not None else None
        result = await self.executor.execute(call, delegate=delegate)
        await self._close_call(turn, call, result)
        return result

    # ── Endings ─────────────────────────────────────────────────

    async def _complete(self, turn: _ActiveTurn) -> TurnOutcome:
        assistant = turn.assistant
        if assistant is not None:
            assistant.finalize()
        self._transition(turn, TurnState.COMPLETED)
        turn.conversation.touch()
        await self._persist(turn)
        await self.emit(turn.conversation.id, TurnCompleted(
            cost_usd=turn.accounting.total_cost_usd, turns=turn.accounting.turns,
        ))
        logger.info(
            "Turn completed conversation=%s turns=%d cost=$%.4f",
            turn.conversation.id[:8], turn.accounting.turns,
            turn.accounting.total_cost_usd,
        )
        return self._outcome(turn)

    async def _finish_failed(self, turn: _ActiveTurn, reason: str, error: str) -> TurnOutcome:
        await self._stop_tools(turn)
        await self._close_open_calls(turn, f"Turn failed: {error}")
        assistant = turn.assistant
        if assistant is not None:
            assistant.error = error
            assistant.finalize()
            await self.emit(turn.conversation.id, MessageUpdated(
                message_id=assistant.id, delta="", streaming=False, error=error,
            ))
        self._transition(turn, TurnState.FAILED)
        turn.conversation.touch()
        await self._persist(turn)
        await self.emit(turn.conversation.id, TurnFailed(
            reason=reason, error=error, recoverable=False,
        ))
        return self._outcome(turn, reason=reason, error=error)

    async def _finish_cancelled(self, turn: _ActiveTurn) -> TurnOutcome:
        if turn.tracker is not None:
            await turn.tracker.interrupt_all()
        await self._stop_tools(turn)
        await self._close_open_calls(turn, INTERRUPTED)
        if turn.assistant is not None:
            turn.assistant.error = INTERRUPTED
            turn.assistant.finalize()
        self._transition(turn, TurnState.CANCELLED)
        turn.conversation.touch()
        await self._persist(turn)
        await self.emit(turn.conversation.id, TurnFailed(
            reason="cancelled", error=INTERRUPTED, recoverable=False,
        ))
        logger.info("Turn cancelled conversation=%s", turn.conversation.id[:8])
        return self._outcome(turn, reason="cancelled", error=INTERRUPTED)

    async def _stop_tools(self, turn: _ActiveTurn) -> None:
        tasks = [t for t in turn.tool_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        turn.tool_tasks = {}

    async def _close_open_calls(self, turn: _ActiveTurn, error: str) -> None:
        if turn.assistant is None:
            return
        for call in turn.assistant.tool_calls:
            if not call.is_complete:
                mark_error(call, error)
                await self._emit_call(turn, call)

    def _outcome(
        self, turn: _ActiveTurn, reason: str | None = None, error: str | None = None,
    ) -> TurnOutcome:
        return TurnOutcome(
            conversation_id=turn.conversation.id,
            state=turn.state,
            reason=reason,
            error=error,
            cost_usd=turn.accounting.total_cost_usd,
            turns=turn.accounting.turns,
            final_text=turn.assistant.content if turn.assistant else "",
        )

    def _transition(self, turn: _ActiveTurn, target: TurnState) -> None:
        if turn.state == target:
            return
        validate_turn_transition(turn.state, target)
        logger.debug(
            "Turn %s: %s -> %s",
            turn.conversation.id[:8], turn.state.value, target.value,
        )
        turn.state = target

    async def _persist(self, turn: _ActiveTurn) -> None:
        if self._storage is None:
            return
        conversation = turn.conversation
        try:
            if not await self._storage.is_initialized():
                await self._storage.initialize()
            await self._storage.save_conversation(conversation)
            async with self._index_lock:
                index = await self._storage.load_index()
                changed = index.upsert(conversation)
                if index.active_conversation_id != conversation.id:
                    index.active_conversation_id = conversation.id
                    changed = True
                if changed:
                    await self._storage.save_index(index)
        except Exception:
            logger.exception("Failed to save conversation %s", conversation.id[:8])


def _derive_title(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) <= TITLE_LENGTH:
        return first_line or "New conversation"
    return first_line[: TITLE_LENGTH - 3].rstrip() + "..."
