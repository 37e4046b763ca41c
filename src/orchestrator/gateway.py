"""Conversation Orchestrator - core orchestration logic.

The orchestrator coordinates, per session:
- Conversation history and working memory
- LLM interactions through the provider router
- Tool planning, approval gating and execution through the host
- State and message broadcasting to observers
"""

import asyncio
import json
import uuid
from typing import Any, Optional

from shared.errors import AgentError, BusyError, ProviderError, ToolExecutionFailure, TooManyIterationsError
from shared.logging import bind_context, get_logger
from shared.models import (
    AgentState,
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalStatus,
    ConversationTurn,
    HostContext,
    MessageEvent,
    MessageKind,
    ToolInvocation,
    ToolResult,
    ToolResultStatus,
    TurnResult,
    TurnRole,
    TurnStatus,
    utcnow,
)
from host.base import HostAdapter
from orchestrator.approvals import ApprovalGate
from orchestrator.audit import ApprovalAuditLog
from orchestrator.broadcaster import StateBroadcaster
from orchestrator.conversation import ConversationHistory
from orchestrator.planner import ToolCallPlanner
from orchestrator.router import ProviderRouter

logger = get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = """You are an AI assistant integrated into the user's email and calendar client. You help the user manage their emails, calendar and tasks.

Guidelines:
- Use tools to look things up instead of guessing; never make up emails, events or addresses
- Use one tool at a time and wait for its result before deciding the next step
- Sending, replying, forwarding, deleting and scheduling require the user's approval; if the user rejects an action, acknowledge it and do not retry it unchanged
- Briefly say what you are doing before using a tool
- If a tool returns an error, explain the issue to the user
- Keep answers concise and professional
"""

FALLBACK_ANSWER = "I'm sorry, I couldn't generate a response."
UNEXPECTED_ERROR_ANSWER = "Something went wrong while processing your request. Please try again."

# Tool results worth keeping across turns, by memory key
MEMORY_KEYS = {
    "get_user_info": "user_profile",
    "search_emails": "last_search_results",
    "get_recent_emails": "recent_emails",
    "search_calendar": "upcoming_events",
}


class ConversationOrchestrator:
    """
    Per-session state machine for approval-gated tool use.

    At most one turn is in flight. A turn keeps running, suspended, while it
    waits for a human decision; callers observe it through checkpoints
    (``process_user_message`` / ``wait_for_progress``) or the broadcaster.
    """

    def __init__(
        self,
        router: ProviderRouter,
        host: HostAdapter,
        planner: Optional[ToolCallPlanner] = None,
        gate: Optional[ApprovalGate] = None,
        broadcaster: Optional[StateBroadcaster] = None,
        history_window: int = 20,
        max_tool_iterations: int = 5,
        audit: Optional[ApprovalAuditLog] = None,
        session_id: Optional[str] = None,
        system_prompt: Optional[str] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            router: Provider router for completions
            host: Host adapter that executes tools
            planner: Tool call planner
            gate: Approval gate for this session
            broadcaster: Observer fan-out for this session
            history_window: Recent turns forwarded to the provider
            max_tool_iterations: Provider calls allowed per turn
            audit: Optional audit trail for decisions and executions
            session_id: Session identifier used in logs
            system_prompt: Custom assistant instructions
        """
        self.session_id = session_id or str(uuid.uuid4())
        self.router = router
        self.host = host
        self.planner = planner or ToolCallPlanner()
        self.gate = gate or ApprovalGate()
        self.broadcaster = broadcaster or StateBroadcaster(self.session_id)
        self.max_tool_iterations = max_tool_iterations
        self.audit = audit
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

        self.memory: dict[str, Any] = {}
        self._history = ConversationHistory(window=history_window)
        self._is_processing = False
        self._current_task: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._turn_id = 0
        self._checkpoint: Optional[TurnResult] = None
        self._checkpoint_seq = 0
        self._progress = asyncio.Event()
        self._last_result: Optional[TurnResult] = None

    @property
    def state(self) -> AgentState:
        """Snapshot of the session state."""
        return AgentState(
            is_processing=self._is_processing,
            current_task=self._current_task,
            pending_approvals=self.gate.pending,
        )

    @property
    def history(self) -> list[ConversationTurn]:
        return self._history.turns()

    async def process_user_message(self, text: str) -> TurnResult:
        """
        Start a turn for a user message.

        Args:
            text: The user's message

        Returns:
            The first checkpoint: the finished turn, or the approval it is
            waiting for

        Raises:
            BusyError: If a turn is already in flight
        """
        if self._is_processing:
            raise BusyError(self._current_task)

        self._history.add_user_message(text)
        self._is_processing = True
        self._current_task = text
        self._publish_state()

        logger.info("Processing message", session_id=self.session_id, turns=len(self._history))

        self._turn_id += 1
        self._task = asyncio.create_task(self._run_turn(self._turn_id))
        return await self.wait_for_progress()

    async def wait_for_progress(self) -> TurnResult:
        """
        Next checkpoint of the in-flight turn, or the last result when idle.

        Any number of callers may wait at once; each gets the newest checkpoint
        reached after it started waiting.
        """
        if not self._is_processing:
            return self._last_result or TurnResult(status=TurnStatus.COMPLETED)

        seen = self._checkpoint_seq
        while self._checkpoint_seq == seen:
            await self._progress.wait()
        return self._checkpoint

    def resolve_approval(
        self,
        approval_id: str,
        decision: ApprovalDecision,
        parameters: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> ApprovalOutcome:
        """
        Record a human decision on a pending approval.

        The suspended turn resumes on its own; use ``wait_for_progress`` to
        follow it.

        Raises:
            ApprovalNotFoundError: If the id is unknown to this session
            InvalidApprovalEdit: If edited parameters do not validate
        """
        if self.gate.outcome(approval_id) is not None:
            return self.gate.resolve(approval_id, decision, parameters, reason)

        outcome = self.gate.resolve(approval_id, decision, parameters, reason)
        verb = "Approved" if outcome.approved else "Rejected"
        self._emit(
            MessageKind.APPROVAL_RESOLVED,
            f"{verb}: {self.planner.describe(outcome.invocation)}",
            approval_id=approval_id,
        )
        self._publish_state()
        return outcome

    async def clear_conversation(self) -> None:
        """
        Drop history, working memory and every pending approval.

        An in-flight turn is cancelled; whatever its provider call returns is
        never surfaced.
        """
        task = self._task
        self._task = None
        self._turn_id += 1

        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        for approval in self.gate.discard_all("conversation cleared"):
            self._emit(
                MessageKind.DISCARDED,
                f"Discarded: {approval.description}",
                approval_id=approval.id,
            )
            if self.audit:
                outcome = self.gate.outcome(approval.id)
                if outcome is not None:
                    await self.audit.record_decision(outcome, self.session_id)

        self._history.clear()
        self.memory.clear()

        was_processing = self._is_processing
        self._is_processing = False
        self._current_task = None
        if was_processing:
            self._last_result = TurnResult(status=TurnStatus.CANCELLED)
            self._reach_checkpoint(self._last_result)

        self._publish_state()
        logger.info("Conversation cleared", session_id=self.session_id, cancelled=was_processing)

    async def _run_turn(self, turn_id: int) -> None:
        # Runs in its own task, so the binding stays local to this turn
        bind_context(session_id=self.session_id)
        try:
            answer = await self._tool_loop()
        except ProviderError as e:
            logger.warning(
                "Turn failed on provider",
                session_id=self.session_id,
                provider=e.provider,
                kind=e.kind.value,
                status_code=e.status_code,
            )
            result = TurnResult(status=TurnStatus.FAILED, answer=e.user_message, error_code=e.kind.value)
        except TooManyIterationsError as e:
            logger.warning("Max tool iterations reached", session_id=self.session_id, limit=e.limit)
            result = TurnResult(status=TurnStatus.FAILED, answer=e.user_message, error_code=e.code)
        except AgentError as e:
            logger.warning("Turn failed", session_id=self.session_id, error=str(e))
            result = TurnResult(status=TurnStatus.FAILED, answer=e.user_message, error_code=e.code)
        except Exception:
            logger.exception("Turn failed unexpectedly", session_id=self.session_id)
            result = TurnResult(
                status=TurnStatus.FAILED,
                answer=UNEXPECTED_ERROR_ANSWER,
                error_code="internal_error",
            )
        else:
            result = TurnResult(status=TurnStatus.COMPLETED, answer=answer)

        self._finish_turn(turn_id, result)

    def _finish_turn(self, turn_id: int, result: TurnResult) -> None:
        """Close the turn; a turn that was cleared meanwhile is left alone."""
        if turn_id != self._turn_id or not self._is_processing:
            return

        kind = MessageKind.FINAL if result.status == TurnStatus.COMPLETED else MessageKind.ERROR
        self._emit(kind, result.answer or FALLBACK_ANSWER)

        self._is_processing = False
        self._current_task = None
        self._last_result = result
        self._task = None
        self._publish_state()
        self._reach_checkpoint(result)

        logger.info(
            "Turn finished",
            session_id=self.session_id,
            status=result.status.value,
            error_code=result.error_code,
        )

    async def _tool_loop(self) -> str:
        """
        Run the plan / approve / execute loop until the model answers.

        Returns:
            The final answer text

        Raises:
            ProviderError: If no provider could answer
            TooManyIterationsError: If the model keeps requesting tools
        """
        for iteration in range(1, self.max_tool_iterations + 1):
            messages = await self._build_prompt()
            reply = await self.router.complete(messages)

            invocation = self.planner.plan(reply)
            narration = self.planner.strip_tool_blocks(reply.content)

            if invocation is None:
                answer = narration or FALLBACK_ANSWER
                self._history.add_assistant_message(answer)
                return answer

            logger.debug(
                "Model requested tool",
                session_id=self.session_id,
                tool=invocation.tool_name,
                iteration=iteration,
            )
            self._history.add_assistant_message(reply.content or self._render_call(invocation))
            if narration:
                self._emit(MessageKind.INTERMEDIATE, narration)

            approval_id = None
            if invocation.requires_approval:
                outcome = await self._await_approval(invocation)
                if outcome.status == ApprovalStatus.DISCARDED:
                    raise AgentError(
                        f"Approval {outcome.approval_id} discarded",
                        "The pending action was discarded.",
                    )
                if not outcome.approved:
                    reason = outcome.reason or "no reason given"
                    self._history.add_system_note(
                        f"[rejected by user] {invocation.tool_name}: {reason}"
                    )
                    continue
                invocation = outcome.invocation
                approval_id = outcome.approval_id

            await self._execute(invocation, approval_id)

        raise TooManyIterationsError(self.max_tool_iterations)

    async def _await_approval(self, invocation: ToolInvocation) -> ApprovalOutcome:
        description = self.planner.describe(invocation)
        approval = self.gate.enqueue(invocation, description)

        self._publish_state()
        self._emit(MessageKind.AWAITING_APPROVAL, f"Approval needed: {description}", approval_id=approval.id)
        self._reach_checkpoint(TurnResult(status=TurnStatus.AWAITING_APPROVAL, approval=approval))

        outcome = await self.gate.wait(approval.id)
        if self.audit:
            await self.audit.record_decision(outcome, self.session_id)
        return outcome

    async def _execute(self, invocation: ToolInvocation, approval_id: Optional[str] = None) -> ToolResult:
        """Execute a tool via the host and record the result for the model."""
        tool_name = invocation.tool_name
        self._emit(MessageKind.TOOL, f"Using {tool_name}...")
        logger.info("Executing tool", session_id=self.session_id, tool=tool_name, approval_id=approval_id)

        try:
            result = await self.host.execute_tool(tool_name, invocation.arguments())
        except Exception as e:
            failure = ToolExecutionFailure(tool_name, str(e))
            logger.error("Host raised during tool execution", session_id=self.session_id, tool=tool_name, error=str(e))
            result = ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.ERROR,
                error=failure.reason,
                error_code=failure.code,
            )

        logger.info(
            "Tool executed",
            session_id=self.session_id,
            tool=tool_name,
            status=result.status.value,
            execution_time_ms=result.execution_time_ms,
        )

        if result.ok:
            if tool_name in MEMORY_KEYS:
                self.memory[MEMORY_KEYS[tool_name]] = result.data
            self._history.add_system_note(f"[tool result] {tool_name}: {self._format_data(result.data)}")
        else:
            failure = ToolExecutionFailure(tool_name, result.error or result.status.value)
            self._history.add_system_note(f"[tool error] {tool_name}: {failure.reason}")

        if self.audit:
            await self.audit.record_execution(invocation, result, approval_id, self.session_id)
        return result

    async def _build_prompt(self) -> list[ConversationTurn]:
        try:
            context = await self.host.get_current_context()
        except Exception as e:
            logger.warning("Host context unavailable", session_id=self.session_id, error=str(e))
            context = None

        system = ConversationTurn(role=TurnRole.SYSTEM, content=self._system_message(context))
        return [system, *self._history.recent()]

    def _system_message(self, context: Optional[HostContext]) -> str:
        now = utcnow()
        lines = [
            self.system_prompt,
            "## CURRENT CONTEXT",
            f"- Date/Time: {now.strftime('%Y-%m-%d %H:%M')} UTC",
            f"- Day: {now.strftime('%A')}",
        ]

        if context is not None:
            if context.user:
                lines.append(f"- User: {context.user.get('display_name')} ({context.user.get('mail')})")
            if context.email:
                lines.append(
                    f"- Open email: {context.email.get('id')} "
                    f"\"{context.email.get('subject')}\" from {context.email.get('from')}"
                )
            if context.events:
                lines.append("- Today's events:")
                lines.extend(f"  - {e.get('start')} {e.get('subject')}" for e in context.events)
            if context.tasks:
                lines.append(f"- Open tasks: {len(context.tasks)}")

        lines.append("")
        lines.append("## WORKING MEMORY")
        lines.append(self._format_data(self.memory) if self.memory else "Empty - gather information as needed")
        lines.append("")
        lines.append(self.planner.catalog.render_prompt())
        return "\n".join(lines)

    @staticmethod
    def _render_call(invocation: ToolInvocation) -> str:
        payload = {"tool": invocation.tool_name, "params": invocation.arguments()}
        return f"```tool\n{json.dumps(payload)}\n```"

    @staticmethod
    def _format_data(data: Any) -> str:
        if data is None:
            return "done"
        if isinstance(data, str):
            return data
        return json.dumps(data, indent=2, default=str)

    def _reach_checkpoint(self, result: TurnResult) -> None:
        """Hand a checkpoint to every current waiter."""
        self._checkpoint = result
        self._checkpoint_seq += 1
        progress, self._progress = self._progress, asyncio.Event()
        progress.set()

    def _publish_state(self) -> None:
        self.broadcaster.publish_state(self.state)

    def _emit(self, kind: MessageKind, text: str, approval_id: Optional[str] = None) -> None:
        self.broadcaster.publish_message(MessageEvent(kind=kind, text=text, approval_id=approval_id))
