"""Tests for conversation history, sessions and the audit trail."""

from datetime import timedelta

import pytest

from shared.models import TurnRole


def make_orchestrator(session_id):
    from host.mailbox import InMemoryMailbox
    from orchestrator.gateway import ConversationOrchestrator
    from orchestrator.router import ProviderRouter
    from shared.config import LLMSettings

    return ConversationOrchestrator(
        router=ProviderRouter(LLMSettings(provider="mock")),
        host=InMemoryMailbox(),
        session_id=session_id,
    )


class TestConversationHistory:
    """Tests for ConversationHistory."""

    def test_turns_are_appended_in_order(self):
        from orchestrator.conversation import ConversationHistory

        history = ConversationHistory()
        history.add_user_message("Hello")
        history.add_assistant_message("Hi there!")
        history.add_system_note("[tool result] get_user_info: {}")

        turns = history.turns()

        assert [t.role for t in turns] == [TurnRole.USER, TurnRole.ASSISTANT, TurnRole.SYSTEM]
        assert turns[0].content == "Hello"

    def test_recent_window_is_bounded(self):
        from orchestrator.conversation import ConversationHistory

        history = ConversationHistory(window=3)
        for i in range(10):
            history.add_user_message(f"Message {i}")

        recent = history.recent()

        assert [t.content for t in recent] == ["Message 7", "Message 8", "Message 9"]
        assert len(history) == 10

    def test_clear(self):
        from orchestrator.conversation import ConversationHistory

        history = ConversationHistory()
        history.add_user_message("Hello")
        history.clear()

        assert len(history) == 0
        assert history.recent() == []


class TestSessionManager:
    """Tests for SessionManager."""

    @pytest.mark.asyncio
    async def test_create_and_get(self):
        from orchestrator.sessions import SessionManager

        manager = SessionManager(make_orchestrator)
        orchestrator = await manager.create()

        assert manager.get(orchestrator.session_id) is orchestrator
        assert manager.get("missing") is None
        assert len(manager) == 1

    @pytest.mark.asyncio
    async def test_delete(self):
        from orchestrator.sessions import SessionManager

        manager = SessionManager(make_orchestrator)
        orchestrator = await manager.create()

        assert await manager.delete(orchestrator.session_id) is True
        assert await manager.delete(orchestrator.session_id) is False
        assert manager.get(orchestrator.session_id) is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        from orchestrator.sessions import SessionManager
        from shared.models import utcnow

        manager = SessionManager(make_orchestrator, session_ttl_minutes=30)
        stale = await manager.create()
        fresh = await manager.create()
        manager._last_seen[stale.session_id] = utcnow() - timedelta(hours=1)

        removed = await manager.cleanup_expired()

        assert removed == 1
        assert manager.get(stale.session_id) is None
        assert manager.get(fresh.session_id) is fresh


class TestApprovalAuditLog:
    """Tests for ApprovalAuditLog."""

    @pytest.mark.asyncio
    async def test_decisions_are_written_and_queried(self, tmp_path):
        from orchestrator.audit import ApprovalAuditLog, AuditEvent
        from shared.models import ApprovalOutcome, ApprovalStatus, SendEmailParams, ToolInvocation

        audit = ApprovalAuditLog(log_path=str(tmp_path / "approvals.log"), buffer_size=1)
        invocation = ToolInvocation(
            parameters=SendEmailParams(to="dana.lee@contoso.com", subject="Hi", body="Hello"),
            requires_approval=True,
        )
        await audit.record_decision(
            ApprovalOutcome(approval_id="A1", status=ApprovalStatus.REJECTED, invocation=invocation, reason="no"),
            session_id="S1",
        )

        entries = await audit.query(session_id="S1")

        assert len(entries) == 1
        assert entries[0].event == AuditEvent.APPROVAL_RESOLVED
        assert entries[0].tool_name == "send_email"
        assert entries[0].status == "rejected"
        assert entries[0].reason == "no"

    @pytest.mark.asyncio
    async def test_entries_are_buffered_until_flush(self, tmp_path):
        from orchestrator.audit import ApprovalAuditLog
        from shared.models import GetUserInfoParams, ToolInvocation, ToolResult, ToolResultStatus

        audit = ApprovalAuditLog(log_path=str(tmp_path / "approvals.log"), buffer_size=10)
        invocation = ToolInvocation(parameters=GetUserInfoParams())
        await audit.record_execution(
            invocation, ToolResult(tool_name="get_user_info", status=ToolResultStatus.SUCCESS)
        )

        assert await audit.query() == []

        await audit.flush()

        assert len(await audit.query()) == 1

    @pytest.mark.asyncio
    async def test_disabled_log_writes_nothing(self, tmp_path):
        from orchestrator.audit import ApprovalAuditLog
        from shared.models import GetUserInfoParams, ToolInvocation, ToolResult, ToolResultStatus

        path = tmp_path / "approvals.log"
        audit = ApprovalAuditLog(log_path=str(path), enabled=False, buffer_size=1)
        await audit.record_execution(
            ToolInvocation(parameters=GetUserInfoParams()),
            ToolResult(tool_name="get_user_info", status=ToolResultStatus.SUCCESS),
        )

        assert not path.exists()
