"""Orchestrator - FastAPI Application.

The Orchestrator provides, for the chat UI:
- Session management
- Message and approval commands
- A WebSocket stream of state and chat messages
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.errors import AgentError, ApprovalNotFoundError, BusyError, InvalidApprovalEdit
from shared.logging import get_logger, setup_logging
from shared.models import (
    AgentState,
    ApprovalDecision,
    ApprovalOutcome,
    ConversationTurn,
    ExecutionType,
    MessageEvent,
    TurnResult,
)
from host.catalog import get_catalog
from host.mailbox import InMemoryMailbox
from orchestrator.audit import ApprovalAuditLog
from orchestrator.gateway import ConversationOrchestrator
from orchestrator.router import ProviderRouter
from orchestrator.sessions import SessionManager

logger = get_logger(__name__)


# Request/Response Models
class MessageRequest(BaseModel):
    """Chat message from the UI."""
    message: str = Field(..., min_length=1, description="User message")


class ApprovalRequest(BaseModel):
    """Human decision on a pending approval."""
    decision: ApprovalDecision
    parameters: Optional[dict[str, Any]] = Field(default=None, description="Edited parameters")
    reason: Optional[str] = Field(default=None, description="Reason, typically for rejections")


class ApprovalResponse(BaseModel):
    outcome: ApprovalOutcome
    turn: TurnResult


class SessionResponse(BaseModel):
    session_id: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    provider: str
    tool_count: int
    session_count: int


# Global instances
_settings: Optional[Settings] = None
_router: Optional[ProviderRouter] = None
_sessions: Optional[SessionManager] = None
_cleanup_task: Optional[asyncio.Task] = None

ERROR_STATUS = {
    BusyError: status.HTTP_409_CONFLICT,
    ApprovalNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidApprovalEdit: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


async def cleanup_sessions_task(manager: SessionManager, interval: int = 300):
    """Background task to clean up expired sessions."""
    while True:
        await asyncio.sleep(interval)
        try:
            await manager.cleanup_expired()
        except Exception as e:
            logger.error("Session cleanup failed", error=str(e))


def build_session_manager(settings: Settings, router: ProviderRouter) -> SessionManager:
    """Wire a session manager that gives each session its own orchestrator."""
    audit = ApprovalAuditLog(
        log_path=settings.orchestrator.audit_log_path,
        enabled=settings.orchestrator.enable_audit,
    )

    def factory(session_id: str) -> ConversationOrchestrator:
        return ConversationOrchestrator(
            router=router,
            host=InMemoryMailbox(),
            history_window=settings.orchestrator.history_window,
            max_tool_iterations=settings.orchestrator.max_tool_iterations,
            audit=audit,
            session_id=session_id,
        )

    return SessionManager(factory, session_ttl_minutes=settings.orchestrator.session_ttl_minutes)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _router, _sessions, _cleanup_task

    # Startup
    _settings = get_settings()
    setup_logging(_settings.log_level, json_output=_settings.environment == "production")
    logger.info("Starting Orchestrator")

    _router = ProviderRouter(_settings.llm)
    _sessions = build_session_manager(_settings, _router)
    _cleanup_task = asyncio.create_task(cleanup_sessions_task(_sessions))

    logger.info("Orchestrator started", provider=_settings.llm.provider, model=_settings.llm.model)

    yield

    # Shutdown
    logger.info("Shutting down Orchestrator")

    _cleanup_task.cancel()
    try:
        await _cleanup_task
    except asyncio.CancelledError:
        pass

    await _sessions.close()
    await _router.close()


# Create FastAPI app
app = FastAPI(
    title="mailpilot Orchestrator",
    description="Approval-gated mail and calendar assistant",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AgentError)
async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    """Convert domain errors into JSON with a human-readable message."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.info("Request rejected", path=request.url.path, code=exc.code, status_code=status_code)
    content: dict[str, Any] = {"code": exc.code, "message": exc.user_message}
    if isinstance(exc, InvalidApprovalEdit):
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=content)


def get_session(session_id: str) -> ConversationOrchestrator:
    if _sessions is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )

    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found"
        )
    return orchestrator


# Routes
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Check orchestrator health."""
    return HealthResponse(
        status="healthy",
        provider=_settings.llm.provider if _settings else "unknown",
        tool_count=len(get_catalog().list_tools()),
        session_count=len(_sessions) if _sessions else 0,
    )


@app.get("/tools", tags=["Tools"])
async def list_tools(execution_type: Optional[ExecutionType] = None):
    """List the tools the assistant can use."""
    tools = get_catalog().list_tools(execution_type)
    return {
        "tools": [
            {**tool.model_dump(), "requires_approval": tool.requires_approval}
            for tool in tools
        ],
        "count": len(tools),
    }


@app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED, tags=["Sessions"])
async def create_session():
    """Start a new conversation session."""
    if _sessions is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )
    orchestrator = await _sessions.create()
    return SessionResponse(session_id=orchestrator.session_id)


@app.delete("/sessions/{session_id}", tags=["Sessions"])
async def end_session(session_id: str):
    """End a session and discard its pending approvals."""
    if _sessions is None or not await _sessions.delete(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found"
        )
    return {"status": "deleted"}


@app.post("/sessions/{session_id}/messages", response_model=TurnResult, tags=["Chat"])
async def send_message(session_id: str, request: MessageRequest):
    """
    Send a chat message.

    Returns when the turn finishes or suspends on an approval.
    """
    orchestrator = get_session(session_id)
    return await orchestrator.process_user_message(request.message)


@app.post(
    "/sessions/{session_id}/approvals/{approval_id}",
    response_model=ApprovalResponse,
    tags=["Approvals"],
)
async def resolve_approval(session_id: str, approval_id: str, request: ApprovalRequest):
    """Approve, reject or edit a pending action, then follow the turn to its next checkpoint."""
    orchestrator = get_session(session_id)
    outcome = orchestrator.resolve_approval(
        approval_id,
        request.decision,
        parameters=request.parameters,
        reason=request.reason,
    )
    turn = await orchestrator.wait_for_progress()
    return ApprovalResponse(outcome=outcome, turn=turn)


@app.get("/sessions/{session_id}/state", response_model=AgentState, tags=["Chat"])
async def get_state(session_id: str):
    return get_session(session_id).state


@app.get("/sessions/{session_id}/history", response_model=list[ConversationTurn], tags=["Chat"])
async def get_history(session_id: str):
    return get_session(session_id).history


@app.delete("/sessions/{session_id}/conversation", response_model=AgentState, tags=["Chat"])
async def clear_conversation(session_id: str):
    """Clear history and discard pending approvals."""
    orchestrator = get_session(session_id)
    await orchestrator.clear_conversation()
    return orchestrator.state


@app.websocket("/sessions/{session_id}/events")
async def session_events(websocket: WebSocket, session_id: str):
    """Stream state snapshots and chat messages of a session."""
    orchestrator = _sessions.get(session_id) if _sessions is not None else None
    if orchestrator is None:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()

    def on_state(state: AgentState) -> None:
        outbox.put_nowait({"type": "state", "state": state.model_dump(mode="json")})

    def on_message(event: MessageEvent) -> None:
        outbox.put_nowait({"type": "message", "message": event.model_dump(mode="json")})

    async def pump() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    async def drain() -> None:
        # Client messages are ignored; receiving detects the disconnect
        while True:
            await websocket.receive_text()

    unsubscribe = orchestrator.broadcaster.subscribe(on_state=on_state, on_message=on_message)
    on_state(orchestrator.state)
    sender = asyncio.create_task(pump())
    receiver = asyncio.create_task(drain())

    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if isinstance(error, WebSocketDisconnect):
                logger.debug("Event stream closed", session_id=session_id)
            elif error is not None:
                logger.warning("Event stream failed", session_id=session_id, error=str(error))
    finally:
        unsubscribe()
        sender.cancel()
        receiver.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
