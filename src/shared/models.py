"""Core data models for mailpilot.

This module defines all shared data structures used across the platform,
ensuring type safety and validation throughout the system.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class TurnRole(str, Enum):
    """Author of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationTurn(BaseModel):
    """A single message in a conversation."""
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ExecutionType(str, Enum):
    """Type of tool execution - read-only lookups vs state-mutating actions."""
    READ = "read"
    WRITE = "write"


class ToolDefinition(BaseModel):
    """
    Static definition of a host tool.

    WRITE tools mutate external state (send, delete, schedule) and are
    therefore gated behind human approval.
    """
    name: str = Field(..., description="Tool name as the model refers to it")
    description: str = Field(..., description="Clear description for LLM usage")
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON Schema for input validation"
    )
    execution_type: ExecutionType = Field(default=ExecutionType.READ)
    examples: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def requires_approval(self) -> bool:
        return self.execution_type == ExecutionType.WRITE


class ToolParameters(BaseModel):
    """Base for the strongly-typed parameter record of each tool."""
    model_config = ConfigDict(extra="forbid")

    def arguments(self) -> dict[str, Any]:
        """Parameters as a plain mapping, without the variant tag."""
        return self.model_dump(exclude={"tool"}, exclude_none=True)


class SearchEmailsParams(ToolParameters):
    tool: Literal["search_emails"] = "search_emails"
    query: str = Field(..., min_length=1, description="Search query (keywords, sender name, subject text)")
    limit: int = Field(default=10, ge=1, le=50, description="Max results to return")


class GetEmailParams(ToolParameters):
    tool: Literal["get_email"] = "get_email"
    email_id: str = Field(..., description="The ID of the email to retrieve")


class GetRecentEmailsParams(ToolParameters):
    tool: Literal["get_recent_emails"] = "get_recent_emails"
    count: int = Field(default=10, ge=1, le=50, description="Number of emails to retrieve")


class GetCurrentEmailParams(ToolParameters):
    tool: Literal["get_current_email"] = "get_current_email"


class SearchCalendarParams(ToolParameters):
    tool: Literal["search_calendar"] = "search_calendar"
    days: int = Field(default=1, ge=1, le=31, description="Number of days to look ahead, starting today")
    query: Optional[str] = Field(default=None, description="Only events whose subject contains this text")


class FindFreeTimeParams(ToolParameters):
    tool: Literal["find_free_time"] = "find_free_time"
    duration_minutes: int = Field(..., ge=5, le=480, description="Meeting duration in minutes")
    within_days: int = Field(default=7, ge=1, le=31, description="Search within this many days")


class GetUserInfoParams(ToolParameters):
    tool: Literal["get_user_info"] = "get_user_info"


class SendEmailParams(ToolParameters):
    tool: Literal["send_email"] = "send_email"
    to: str = Field(..., min_length=3, description="Recipient email address(es), comma-separated")
    subject: str = Field(..., description="Email subject line")
    body: str = Field(..., description="Email body")
    cc: Optional[str] = Field(default=None, description="CC recipients, comma-separated")


class ReplyEmailParams(ToolParameters):
    tool: Literal["reply_email"] = "reply_email"
    email_id: str = Field(..., description="ID of the email to reply to")
    body: str = Field(..., description="Reply content")
    reply_all: bool = Field(default=False, description="Reply to all recipients")


class ForwardEmailParams(ToolParameters):
    tool: Literal["forward_email"] = "forward_email"
    email_id: str = Field(..., description="ID of the email to forward")
    to: str = Field(..., min_length=3, description="Recipient email address(es), comma-separated")
    comment: Optional[str] = Field(default=None, description="Text added above the forwarded message")


class DeleteEmailParams(ToolParameters):
    tool: Literal["delete_email"] = "delete_email"
    email_id: str = Field(..., description="ID of the email to delete (moves it to trash)")


class CreateEventParams(ToolParameters):
    tool: Literal["create_event"] = "create_event"
    subject: str = Field(..., description="Event title")
    start: str = Field(..., description="Start time (ISO 8601)")
    end: str = Field(..., description="End time (ISO 8601)")
    location: Optional[str] = Field(default=None, description="Event location")
    attendees: Optional[str] = Field(default=None, description="Attendee emails, comma-separated")
    body: Optional[str] = Field(default=None, description="Event description/notes")


class CreateTaskParams(ToolParameters):
    tool: Literal["create_task"] = "create_task"
    title: str = Field(..., description="Task title")
    due_date: Optional[str] = Field(default=None, description="Due date (ISO 8601)")
    priority: Literal["high", "medium", "low"] = Field(default="medium", description="Task priority")
    notes: Optional[str] = Field(default=None, description="Additional notes")


class UnknownToolCall(ToolParameters):
    """A tool reference the catalog does not know. Never executed."""
    model_config = ConfigDict(extra="allow")

    tool: Literal["unknown"] = "unknown"
    requested_name: str
    raw_parameters: dict[str, Any] = Field(default_factory=dict)


ToolArguments = Annotated[
    Union[
        SearchEmailsParams,
        GetEmailParams,
        GetRecentEmailsParams,
        GetCurrentEmailParams,
        SearchCalendarParams,
        FindFreeTimeParams,
        GetUserInfoParams,
        SendEmailParams,
        ReplyEmailParams,
        ForwardEmailParams,
        DeleteEmailParams,
        CreateEventParams,
        CreateTaskParams,
        UnknownToolCall,
    ],
    Field(discriminator="tool"),
]


class ToolInvocation(BaseModel):
    """
    A concrete action the model asked for.

    Produced transiently by the planner from a single assistant reply;
    ``id`` identifies this instance so it can be queued for approval at most once.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    parameters: ToolArguments
    requires_approval: bool = False

    @property
    def tool_name(self) -> str:
        return self.parameters.tool

    def arguments(self) -> dict[str, Any]:
        return self.parameters.arguments()


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"


class ToolResult(BaseModel):
    """
    Result of a tool execution.

    Contains the output data, status, and any error information.
    """
    tool_name: str
    status: ToolResultStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0

    @property
    def ok(self) -> bool:
        return self.status == ToolResultStatus.SUCCESS


class HostContext(BaseModel):
    """Point-in-time snapshot of what the user is looking at in the client."""
    email: Optional[dict[str, Any]] = None
    events: list[dict[str, Any]] = Field(default_factory=list)
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    user: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class ApprovalDecision(str, Enum):
    """Decision a human can take on a pending approval."""
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISCARDED = "discarded"


class PendingApproval(BaseModel):
    """An action awaiting human sign-off."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invocation: ToolInvocation
    description: str
    created_at: datetime = Field(default_factory=utcnow)
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_at: Optional[datetime] = None
    reason: Optional[str] = None

    @computed_field
    @property
    def tool(self) -> str:
        return self.invocation.tool_name

    @computed_field
    @property
    def parameters(self) -> dict[str, Any]:
        return self.invocation.arguments()


class ApprovalOutcome(BaseModel):
    """Final, immutable result of resolving (or discarding) an approval."""
    model_config = ConfigDict(frozen=True)

    approval_id: str
    status: ApprovalStatus
    invocation: ToolInvocation
    reason: Optional[str] = None
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED


# ---------------------------------------------------------------------------
# Session state and events
# ---------------------------------------------------------------------------

class AgentState(BaseModel):
    """Observable state of one conversation session."""
    is_processing: bool = False
    current_task: Optional[str] = None
    pending_approvals: list[PendingApproval] = Field(default_factory=list)


class MessageKind(str, Enum):
    INTERMEDIATE = "intermediate"
    TOOL = "tool"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVAL_RESOLVED = "approval_resolved"
    DISCARDED = "discarded"
    FINAL = "final"
    ERROR = "error"


class MessageEvent(BaseModel):
    """A chat message pushed to observers."""
    kind: MessageKind
    text: str
    approval_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return self.kind in (MessageKind.FINAL, MessageKind.ERROR)


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TurnResult(BaseModel):
    """Checkpoint of a conversation turn as seen by the caller."""
    status: TurnStatus
    answer: Optional[str] = None
    approval: Optional[PendingApproval] = None
    error_code: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status != TurnStatus.AWAITING_APPROVAL


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderCredential(BaseModel):
    """Which backend, key and model to use for a request. Read-only."""
    model_config = ConfigDict(frozen=True)

    provider: str
    api_key: Optional[SecretStr] = None
    model: str
    endpoint_overrides: dict[str, str] = Field(default_factory=dict)


class LLMResponse(BaseModel):
    """Response from the LLM layer."""
    content: Optional[str] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    finish_reason: str = "stop"
    usage: dict[str, int] = Field(default_factory=dict)
    provider: Optional[str] = None
    model: Optional[str] = None
