"""Tests for the orchestrator HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient


def tool_block(tool: str, params: dict) -> str:
    return f"```tool\n{json.dumps({'tool': tool, 'params': params})}\n```"


@pytest.fixture
def client(monkeypatch, tmp_path):
    from shared.config import get_settings

    monkeypatch.setenv("MAILPILOT_CONFIG_PATH", str(tmp_path / "settings.yaml"))
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    monkeypatch.setenv("ORCHESTRATOR_ENABLE_AUDIT", "false")
    get_settings.cache_clear()

    from orchestrator import main

    with TestClient(main.app) as test_client:
        yield test_client

    get_settings.cache_clear()


@pytest.fixture
def provider(client):
    from orchestrator import main

    return main._router.provider("mock")


@pytest.fixture
def session_id(client):
    response = client.post("/sessions")
    assert response.status_code == 201
    return response.json()["session_id"]


class TestOrchestratorAPI:
    """Tests for the FastAPI surface."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["provider"] == "mock"
        assert response.json()["tool_count"] == 13

    def test_list_sensitive_tools(self, client):
        response = client.get("/tools", params={"execution_type": "write"})

        data = response.json()
        assert data["count"] == 6
        assert all(tool["requires_approval"] for tool in data["tools"])

    def test_simple_message(self, client, provider, session_id):
        provider.set_next_response("Hello! How can I help you?")

        response = client.post(f"/sessions/{session_id}/messages", json={"message": "Hello"})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["answer"] == "Hello! How can I help you?"

        history = client.get(f"/sessions/{session_id}/history").json()
        assert [turn["role"] for turn in history] == ["user", "assistant"]

    def test_approval_flow(self, client, provider, session_id):
        provider.queue(
            tool_block("create_task", {"title": "Pay invoice 4471", "priority": "high"}),
            "I've added the task.",
        )

        turn = client.post(f"/sessions/{session_id}/messages", json={"message": "Remind me to pay"}).json()

        assert turn["status"] == "awaiting_approval"
        approval_id = turn["approval"]["id"]
        assert turn["approval"]["tool"] == "create_task"

        state = client.get(f"/sessions/{session_id}/state").json()
        assert state["is_processing"] is True
        assert [a["id"] for a in state["pending_approvals"]] == [approval_id]

        busy = client.post(f"/sessions/{session_id}/messages", json={"message": "Anything else?"})
        assert busy.status_code == 409
        assert busy.json()["code"] == "busy"

        resolved = client.post(
            f"/sessions/{session_id}/approvals/{approval_id}",
            json={"decision": "approve"},
        )

        assert resolved.status_code == 200
        assert resolved.json()["outcome"]["status"] == "approved"
        assert resolved.json()["turn"]["status"] == "completed"
        assert resolved.json()["turn"]["answer"] == "I've added the task."
        assert client.get(f"/sessions/{session_id}/state").json()["is_processing"] is False

    def test_invalid_edit_and_unknown_approval(self, client, provider, session_id):
        provider.queue(tool_block("send_email", {"to": "dana.lee@contoso.com", "subject": "Hi", "body": "Hello"}))
        turn = client.post(f"/sessions/{session_id}/messages", json={"message": "Email Dana"}).json()
        approval_id = turn["approval"]["id"]

        invalid = client.post(
            f"/sessions/{session_id}/approvals/{approval_id}",
            json={"decision": "edit", "parameters": {"bcc": "boss@contoso.com"}},
        )
        missing = client.post(
            f"/sessions/{session_id}/approvals/not-an-id",
            json={"decision": "approve"},
        )

        assert invalid.status_code == 422
        assert invalid.json()["code"] == "invalid_edit"
        assert invalid.json()["errors"]
        assert missing.status_code == 404
        assert missing.json()["code"] == "approval_not_found"

        state = client.get(f"/sessions/{session_id}/state").json()
        assert [a["id"] for a in state["pending_approvals"]] == [approval_id]

    def test_clear_conversation(self, client, provider, session_id):
        provider.queue(tool_block("delete_email", {"email_id": "M002"}))
        client.post(f"/sessions/{session_id}/messages", json={"message": "Delete the invoice"})

        response = client.delete(f"/sessions/{session_id}/conversation")

        assert response.status_code == 200
        assert response.json()["is_processing"] is False
        assert response.json()["pending_approvals"] == []
        assert client.get(f"/sessions/{session_id}/history").json() == []

    def test_end_session(self, client, session_id):
        assert client.delete(f"/sessions/{session_id}").status_code == 200
        assert client.delete(f"/sessions/{session_id}").status_code == 404
        assert client.get(f"/sessions/{session_id}/state").status_code == 404

    def test_event_stream(self, client, provider, session_id):
        provider.set_next_response("Done.")

        with client.websocket_connect(f"/sessions/{session_id}/events") as websocket:
            initial = websocket.receive_json()
            assert initial == {
                "type": "state",
                "state": {"is_processing": False, "current_task": None, "pending_approvals": []},
            }

            client.post(f"/sessions/{session_id}/messages", json={"message": "Hello"})
            events = [websocket.receive_json() for _ in range(3)]

        assert [e["type"] for e in events] == ["state", "message", "state"]
        assert events[0]["state"]["is_processing"] is True
        assert events[1]["message"]["kind"] == "final"
        assert events[1]["message"]["text"] == "Done."
        assert events[2]["state"]["is_processing"] is False


class TestEventStream:
    """Tests for the WebSocket endpoint with a failing client."""

    @pytest.mark.asyncio
    async def test_send_failure_is_logged_and_stream_closed(self, monkeypatch):
        import asyncio
        from unittest.mock import AsyncMock, MagicMock

        from host.mailbox import InMemoryMailbox
        from orchestrator import main
        from orchestrator.gateway import ConversationOrchestrator
        from orchestrator.llm import MockLLMProvider
        from orchestrator.router import ProviderRouter
        from shared.config import LLMSettings

        router = ProviderRouter(LLMSettings(provider="mock"), providers={"mock": MockLLMProvider()})
        orchestrator = ConversationOrchestrator(router=router, host=InMemoryMailbox())

        sessions = MagicMock()
        sessions.get.return_value = orchestrator
        monkeypatch.setattr(main, "_sessions", sessions)
        log = MagicMock()
        monkeypatch.setattr(main, "logger", log)

        async def never_receives():
            await asyncio.Event().wait()

        websocket = MagicMock()
        websocket.accept = AsyncMock()
        websocket.send_json = AsyncMock(side_effect=RuntimeError("socket gone"))
        websocket.receive_text = AsyncMock(side_effect=never_receives)

        await asyncio.wait_for(main.session_events(websocket, "session-1"), timeout=1)

        log.warning.assert_called_once()
        assert log.warning.call_args.kwargs["error"] == "socket gone"
        assert orchestrator.broadcaster.subscriber_count == 0
