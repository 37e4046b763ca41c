"""Audit trail for approvals.

Records every human decision and every executed tool as JSON lines, so it
can be shown later who approved what, with which parameters.
"""

import asyncio
import json
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiofiles
from pydantic import BaseModel, Field

from shared.logging import get_logger, redact
from shared.models import ApprovalOutcome, ToolInvocation, ToolResult, utcnow

logger = get_logger(__name__)


class AuditEvent(str, Enum):
    APPROVAL_RESOLVED = "approval_resolved"
    TOOL_EXECUTED = "tool_executed"


class AuditEntry(BaseModel):
    """One line of the audit trail."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    event: AuditEvent
    session_id: Optional[str] = None
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    approval_id: Optional[str] = None
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None


class ApprovalAuditLog:
    """
    Buffered JSON-lines audit log.

    Parameters are redacted before they are stored.
    """

    def __init__(
        self,
        log_path: str = "logs/approvals.log",
        enabled: bool = True,
        buffer_size: int = 20
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    async def record_decision(self, outcome: ApprovalOutcome, session_id: Optional[str] = None) -> None:
        """Log a resolved or discarded approval."""
        await self._log(AuditEntry(
            event=AuditEvent.APPROVAL_RESOLVED,
            session_id=session_id,
            tool_name=outcome.invocation.tool_name,
            parameters=redact(outcome.invocation.arguments()),
            approval_id=outcome.approval_id,
            status=outcome.status.value,
            reason=outcome.reason,
        ))

    async def record_execution(
        self,
        invocation: ToolInvocation,
        result: ToolResult,
        approval_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> None:
        """Log a tool execution against the host."""
        await self._log(AuditEntry(
            event=AuditEvent.TOOL_EXECUTED,
            session_id=session_id,
            tool_name=invocation.tool_name,
            parameters=redact(invocation.arguments()),
            approval_id=approval_id,
            status=result.status.value,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
        ))

    async def _log(self, entry: AuditEntry) -> None:
        if not self.enabled:
            return

        logger.info(
            "Audit entry",
            audit_id=entry.id,
            audit_event=entry.event.value,
            session_id=entry.session_id,
            tool=entry.tool_name,
            status=entry.status,
        )

        async with self._lock:
            self._buffer.append(entry)
            if len(self._buffer) >= self.buffer_size:
                await self._flush()

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e))
            # Keep entries for the next flush
            self._buffer[:0] = entries_to_write

    async def flush(self) -> None:
        async with self._lock:
            await self._flush()

    async def query(
        self,
        session_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        event: Optional[AuditEvent] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """
        Read back audit entries with filters.

        Args:
            session_id: Filter by session
            tool_name: Filter by tool name
            event: Filter by event type
            limit: Maximum entries to return

        Returns:
            Matching entries, oldest first
        """
        results: list[AuditEntry] = []
        if not self.log_path.exists():
            return results

        async with aiofiles.open(self.log_path, "r") as f:
            async for line in f:
                if len(results) >= limit:
                    break
                try:
                    entry = AuditEntry(**json.loads(line.strip()))
                except (json.JSONDecodeError, ValueError):
                    continue

                if session_id and entry.session_id != session_id:
                    continue
                if tool_name and entry.tool_name != tool_name:
                    continue
                if event and entry.event != event:
                    continue
                results.append(entry)

        return results
