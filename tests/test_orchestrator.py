"""Tests for the conversation orchestrator."""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.models import (
    ApprovalDecision,
    ApprovalStatus,
    HostContext,
    LLMResponse,
    MessageKind,
    TurnRole,
    TurnStatus,
)


def tool_block(tool: str, params: dict) -> str:
    return f"```tool\n{json.dumps({'tool': tool, 'params': params})}\n```"


def make_orchestrator(*responses, host=None, **kwargs):
    """Orchestrator over a scripted mock provider and an in-memory mailbox."""
    from host.mailbox import InMemoryMailbox
    from orchestrator.gateway import ConversationOrchestrator
    from orchestrator.llm import MockLLMProvider
    from orchestrator.router import ProviderRouter
    from shared.config import LLMSettings

    provider = MockLLMProvider()
    provider.queue(*responses)
    router = ProviderRouter(LLMSettings(provider="mock"), providers={"mock": provider}, backoff=0)
    host = host or InMemoryMailbox()

    orchestrator = ConversationOrchestrator(router=router, host=host, **kwargs)
    return orchestrator, provider, host


class Recorder:
    """Collects everything the broadcaster publishes."""

    def __init__(self, orchestrator):
        self.states = []
        self.messages = []
        orchestrator.broadcaster.subscribe(on_state=self.states.append, on_message=self.messages.append)

    def kinds(self):
        return [m.kind for m in self.messages]

    def processing_transitions(self):
        flags = [s.is_processing for s in self.states]
        return sum(1 for before, after in zip(flags, flags[1:]) if before and not after)


class TestConversationOrchestrator:
    """Tests for ConversationOrchestrator."""

    @pytest.mark.asyncio
    async def test_simple_answer(self):
        """A reply without a tool completes the turn."""
        orchestrator, provider, host = make_orchestrator("Hello! How can I help you?")
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Hello")

        assert result.status == TurnStatus.COMPLETED
        assert result.answer == "Hello! How can I help you?"
        assert [t.role for t in orchestrator.history] == [TurnRole.USER, TurnRole.ASSISTANT]
        assert orchestrator.state.is_processing is False
        assert recorder.kinds() == [MessageKind.FINAL]
        assert recorder.processing_transitions() == 1

    @pytest.mark.asyncio
    async def test_system_prompt_carries_tools_and_context(self):
        orchestrator, provider, host = make_orchestrator("Sure.")

        await orchestrator.process_user_message("Hello")

        prompt = provider.call_history[0]["messages"]
        assert prompt[0].role == TurnRole.SYSTEM
        assert "send_email** (REQUIRES APPROVAL)" in prompt[0].content
        assert "Quarterly planning meeting" in prompt[0].content
        assert "Alex Morgan" in prompt[0].content
        assert prompt[-1].content == "Hello"

    @pytest.mark.asyncio
    async def test_safe_calendar_lookup_runs_without_approval(self):
        """A safe tool executes immediately; no approval ever appears."""
        orchestrator, provider, host = make_orchestrator(
            "Let me check your calendar.\n" + tool_block("search_calendar", {"days": 1}),
            "You have Team standup at 9:30 and a 1:1 with Dana at 14:00.",
        )
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("What's on my calendar today?")

        assert result.status == TurnStatus.COMPLETED
        assert "Team standup" in result.answer
        assert host.calls == [("search_calendar", {"days": 1})]
        assert all(state.pending_approvals == [] for state in recorder.states)
        assert MessageKind.AWAITING_APPROVAL not in recorder.kinds()
        assert recorder.kinds() == [MessageKind.INTERMEDIATE, MessageKind.TOOL, MessageKind.FINAL]
        assert len(orchestrator.memory["upcoming_events"]) == 2

        second_prompt = provider.call_history[1]["messages"]
        assert second_prompt[-1].role == TurnRole.SYSTEM
        assert second_prompt[-1].content.startswith("[tool result] search_calendar:")

    @pytest.mark.asyncio
    async def test_declined_reply_is_never_sent(self):
        """A rejected reply is not executed and the model answers the rejection."""
        orchestrator, provider, host = make_orchestrator(
            "Here is a draft.\n" + tool_block("reply_email", {
                "email_id": "M001",
                "body": "Thanks Dana, unfortunately I can't make the meeting on Thursday.",
            }),
        )

        def respond(messages):
            if "[rejected by user]" in messages[-1].content:
                return "Understood, I did not send the reply since you rejected it."
            return "Anything else?"

        provider.set_responder(respond)
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Draft a reply declining the meeting")

        assert result.status == TurnStatus.AWAITING_APPROVAL
        assert result.approval.tool == "reply_email"
        assert "can't make the meeting" in result.approval.parameters["body"]
        assert orchestrator.state.is_processing is True
        assert [a.id for a in orchestrator.state.pending_approvals] == [result.approval.id]

        outcome = orchestrator.resolve_approval(
            result.approval.id, ApprovalDecision.REJECT, reason="I'll call her instead"
        )
        final = await orchestrator.wait_for_progress()

        assert outcome.status == ApprovalStatus.REJECTED
        assert final.status == TurnStatus.COMPLETED
        assert "rejected" in final.answer
        assert host.sent == []
        assert host.calls == []
        assert any(
            t.content == "[rejected by user] reply_email: I'll call her instead"
            for t in orchestrator.history
        )
        assert orchestrator.state.pending_approvals == []
        assert recorder.processing_transitions() == 1

    @pytest.mark.asyncio
    async def test_edited_approval_executes_once_with_edits(self):
        orchestrator, provider, host = make_orchestrator(
            tool_block("send_email", {"to": "dana.lee@contoso.com", "subject": "Planning", "body": "Draft"}),
            "Sent.",
        )

        result = await orchestrator.process_user_message("Email Dana about planning")
        orchestrator.resolve_approval(
            result.approval.id, ApprovalDecision.EDIT, parameters={"body": "See you Thursday."}
        )
        final = await orchestrator.wait_for_progress()

        assert final.status == TurnStatus.COMPLETED
        assert [name for name, _ in host.calls] == ["send_email"]
        assert len(host.sent) == 1
        assert host.sent[0]["body"] == "See you Thursday."
        assert host.sent[0]["subject"] == "Planning"

    @pytest.mark.asyncio
    async def test_resolve_twice_reports_first_outcome(self):
        orchestrator, provider, host = make_orchestrator(
            tool_block("delete_email", {"email_id": "M002"}),
            "Deleted.",
        )
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Delete the invoice email")
        first = orchestrator.resolve_approval(result.approval.id, ApprovalDecision.APPROVE)
        second = orchestrator.resolve_approval(result.approval.id, ApprovalDecision.REJECT)
        await orchestrator.wait_for_progress()

        assert second == first
        assert recorder.kinds().count(MessageKind.APPROVAL_RESOLVED) == 1
        assert "M002" in host.trash
        assert [name for name, _ in host.calls] == ["delete_email"]

    @pytest.mark.asyncio
    async def test_unknown_approval_id(self):
        from shared.errors import ApprovalNotFoundError

        orchestrator, provider, host = make_orchestrator()

        with pytest.raises(ApprovalNotFoundError):
            orchestrator.resolve_approval("nope", ApprovalDecision.APPROVE)

    @pytest.mark.asyncio
    async def test_busy_while_awaiting_approval(self):
        from shared.errors import BusyError

        orchestrator, provider, host = make_orchestrator(
            tool_block("create_task", {"title": "Pay invoice 4471"}),
        )

        await orchestrator.process_user_message("Remind me to pay the invoice")

        with pytest.raises(BusyError):
            await orchestrator.process_user_message("Also check my calendar")
        assert len(orchestrator.state.pending_approvals) == 1

    @pytest.mark.asyncio
    async def test_iteration_cap(self):
        orchestrator, provider, host = make_orchestrator()
        provider.set_responder(lambda messages: tool_block("get_user_info", {}))
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Loop forever")

        assert result.status == TurnStatus.FAILED
        assert result.error_code == "too_many_iterations"
        assert "5 steps" in result.answer
        assert len(provider.call_history) == 5
        assert len(host.calls) == 5
        assert recorder.kinds()[-1] == MessageKind.ERROR
        assert recorder.processing_transitions() == 1
        assert orchestrator.state.is_processing is False

    @pytest.mark.asyncio
    async def test_rate_limit_is_reported_in_plain_words(self):
        from shared.errors import ProviderError

        orchestrator, provider, host = make_orchestrator(ProviderError.from_status(429, "mock"))
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Hello")

        assert result.status == TurnStatus.FAILED
        assert result.error_code == "rate_limited"
        assert "rate limit" in result.answer.lower()
        assert "429" not in result.answer
        assert len(provider.call_history) == 1
        assert recorder.messages[-1].kind == MessageKind.ERROR
        assert recorder.processing_transitions() == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_still_finishes_turn(self):
        orchestrator, provider, host = make_orchestrator(RuntimeError("boom"))
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Hello")

        assert result.status == TurnStatus.FAILED
        assert result.error_code == "internal_error"
        assert "boom" not in result.answer
        assert recorder.processing_transitions() == 1

    @pytest.mark.asyncio
    async def test_host_failure_is_fed_back_to_model(self):
        from host.base import HostAdapter

        host = MagicMock(spec=HostAdapter)
        host.get_current_context = AsyncMock(return_value=HostContext())
        host.execute_tool = AsyncMock(side_effect=RuntimeError("mailbox offline"))

        orchestrator, provider, _ = make_orchestrator(
            tool_block("get_recent_emails", {"count": 3}),
            "I couldn't reach your mailbox.",
            host=host,
        )

        result = await orchestrator.process_user_message("Show my recent mail")

        assert result.status == TurnStatus.COMPLETED
        assert provider.call_history[1]["messages"][-1].content == "[tool error] get_recent_emails: mailbox offline"
        assert "recent_emails" not in orchestrator.memory

    @pytest.mark.asyncio
    async def test_context_failure_is_skipped(self):
        from host.mailbox import InMemoryMailbox

        host = InMemoryMailbox()
        host.get_current_context = AsyncMock(side_effect=RuntimeError("client closed"))
        orchestrator, provider, _ = make_orchestrator("Hi!", host=host)

        result = await orchestrator.process_user_message("Hello")

        assert result.status == TurnStatus.COMPLETED
        assert "Open email" not in provider.call_history[0]["messages"][0].content

    @pytest.mark.asyncio
    async def test_working_memory_in_later_prompts(self):
        orchestrator, provider, host = make_orchestrator(
            tool_block("get_user_info", {}),
            "You are Alex Morgan.",
            "Your address is me@contoso.com.",
        )

        await orchestrator.process_user_message("Who am I?")
        await orchestrator.process_user_message("And my address?")

        system_prompt = provider.call_history[2]["messages"][0].content
        assert "user_profile" in system_prompt
        assert orchestrator.memory["user_profile"]["mail"] == "me@contoso.com"

    @pytest.mark.asyncio
    async def test_history_window_bounds_prompt(self):
        orchestrator, provider, host = make_orchestrator("one", "two", "three", history_window=2)

        for text in ("a", "b", "c"):
            await orchestrator.process_user_message(text)

        prompt = provider.call_history[-1]["messages"]
        assert len(prompt) == 3
        assert [t.content for t in prompt[1:]] == ["two", "c"]

    @pytest.mark.asyncio
    async def test_clear_discards_pending_approvals(self):
        orchestrator, provider, host = make_orchestrator(
            tool_block("send_email", {"to": "dana.lee@contoso.com", "subject": "Hi", "body": "Hello"}),
        )
        recorder = Recorder(orchestrator)

        result = await orchestrator.process_user_message("Email Dana")
        await orchestrator.clear_conversation()

        assert orchestrator.state.is_processing is False
        assert orchestrator.state.pending_approvals == []
        assert orchestrator.history == []
        assert MessageKind.DISCARDED in recorder.kinds()
        assert (await orchestrator.wait_for_progress()).status == TurnStatus.CANCELLED
        assert host.calls == []

        outcome = orchestrator.resolve_approval(result.approval.id, ApprovalDecision.APPROVE)
        assert outcome.status == ApprovalStatus.DISCARDED
        assert host.calls == []
        assert recorder.processing_transitions() == 1

    @pytest.mark.asyncio
    async def test_clear_during_provider_call_never_surfaces_reply(self):
        from orchestrator.gateway import ConversationOrchestrator
        from orchestrator.llm import LLMProvider
        from orchestrator.router import ProviderRouter
        from host.mailbox import InMemoryMailbox
        from shared.config import LLMSettings

        entered = asyncio.Event()
        release = asyncio.Event()

        class SlowProvider(LLMProvider):
            async def complete(self, messages, credential):
                entered.set()
                await release.wait()
                return LLMResponse(content="late answer")

        router = ProviderRouter(LLMSettings(provider="mock"), providers={"mock": SlowProvider()})
        orchestrator = ConversationOrchestrator(router=router, host=InMemoryMailbox())
        recorder = Recorder(orchestrator)

        turn = asyncio.create_task(orchestrator.process_user_message("Hello"))
        await asyncio.wait_for(entered.wait(), timeout=1)
        await orchestrator.clear_conversation()
        release.set()

        result = await asyncio.wait_for(turn, timeout=1)

        assert result.status == TurnStatus.CANCELLED
        assert all(m.text != "late answer" for m in recorder.messages)
        assert orchestrator.history == []
        assert orchestrator.state.is_processing is False

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self):
        first, _, _ = make_orchestrator(tool_block("delete_email", {"email_id": "M003"}))
        second, _, _ = make_orchestrator("Hi!")

        await first.process_user_message("Delete the design notes")
        result = await second.process_user_message("Hello")

        assert result.status == TurnStatus.COMPLETED
        assert second.state.pending_approvals == []
        assert len(first.state.pending_approvals) == 1

    @pytest.mark.asyncio
    async def test_duplicate_clicks_both_see_turn_finish(self):
        from orchestrator.gateway import ConversationOrchestrator
        from orchestrator.llm import LLMProvider
        from orchestrator.router import ProviderRouter
        from host.mailbox import InMemoryMailbox
        from shared.config import LLMSettings

        resumed = asyncio.Event()
        release = asyncio.Event()

        class ResumingProvider(LLMProvider):
            def __init__(self):
                self.calls = 0

            async def complete(self, messages, credential):
                self.calls += 1
                if self.calls == 1:
                    return LLMResponse(content=tool_block("delete_email", {"email_id": "M002"}))
                resumed.set()
                await release.wait()
                return LLMResponse(content="Deleted.")

        router = ProviderRouter(LLMSettings(provider="mock"), providers={"mock": ResumingProvider()})
        host = InMemoryMailbox()
        orchestrator = ConversationOrchestrator(router=router, host=host)

        result = await orchestrator.process_user_message("Delete the invoice email")

        async def click():
            outcome = orchestrator.resolve_approval(result.approval.id, ApprovalDecision.APPROVE)
            return outcome, await orchestrator.wait_for_progress()

        first = asyncio.create_task(click())
        await asyncio.wait_for(resumed.wait(), timeout=1)
        second = asyncio.create_task(click())
        await asyncio.sleep(0)
        release.set()

        (first_outcome, first_turn), (second_outcome, second_turn) = await asyncio.wait_for(
            asyncio.gather(first, second), timeout=1
        )

        assert first_outcome == second_outcome
        assert first_turn.status == TurnStatus.COMPLETED
        assert second_turn.status == TurnStatus.COMPLETED
        assert second_turn.answer == "Deleted."
        assert [name for name, _ in host.calls] == ["delete_email"]

    @pytest.mark.asyncio
    async def test_late_wait_returns_finished_turn(self):
        orchestrator, provider, host = make_orchestrator("Hello!")

        await orchestrator.process_user_message("Hi")
        waiters = [orchestrator.wait_for_progress() for _ in range(2)]
        results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)

        assert [r.answer for r in results] == ["Hello!", "Hello!"]

    @pytest.mark.asyncio
    async def test_malformed_native_call_degrades_to_text(self):
        orchestrator, provider, host = make_orchestrator(
            LLMResponse(content="You have no meetings today.", tool_calls=[{"id": "call_1", "function": None}]),
        )

        result = await orchestrator.process_user_message("Any meetings today?")

        assert result.status == TurnStatus.COMPLETED
        assert result.answer == "You have no meetings today."
        assert result.error_code is None
        assert host.calls == []
