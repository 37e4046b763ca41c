"""Error taxonomy for mailpilot.

Every error carries a ``user_message`` that is safe to show in the chat UI.
"""

from enum import Enum
from typing import Optional


class AgentError(Exception):
    """Base exception for orchestration errors."""

    code = "agent_error"

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class BusyError(AgentError):
    """A turn is already in flight for this session."""

    code = "busy"

    def __init__(self, current_task: Optional[str] = None) -> None:
        super().__init__(
            f"Session is busy with: {current_task!r}",
            "I'm still working on your previous request. Please wait, or answer the pending approval.",
        )
        self.current_task = current_task


class ProviderErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


_PROVIDER_GUIDANCE = {
    ProviderErrorKind.UNAUTHORIZED: (
        "Your API key appears to be invalid or expired. "
        "Check the key in Settings and make sure it was entered correctly."
    ),
    ProviderErrorKind.FORBIDDEN: (
        "The AI provider refused access. Your key may not have permission to use this model."
    ),
    ProviderErrorKind.RATE_LIMITED: (
        "The AI provider's rate limit was reached. Please wait a moment and try again."
    ),
    ProviderErrorKind.NOT_FOUND: (
        "The selected model or endpoint could not be found. Pick a different model in Settings."
    ),
    ProviderErrorKind.TRANSIENT: (
        "The AI provider is temporarily unavailable. Please try again shortly."
    ),
}


class ProviderError(AgentError):
    """LLM transport failure, classified independently of provider error text."""

    code = "provider_error"

    def __init__(
        self,
        kind: ProviderErrorKind,
        provider: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        message = f"{provider} request failed ({kind.value})"
        if status_code is not None:
            message += f" with HTTP {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message, _PROVIDER_GUIDANCE[kind])
        self.kind = kind
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind == ProviderErrorKind.TRANSIENT

    @classmethod
    def from_status(cls, status_code: int, provider: str, detail: Optional[str] = None) -> "ProviderError":
        """Classify an HTTP status code into the stable taxonomy."""
        kind = {
            401: ProviderErrorKind.UNAUTHORIZED,
            403: ProviderErrorKind.FORBIDDEN,
            404: ProviderErrorKind.NOT_FOUND,
            429: ProviderErrorKind.RATE_LIMITED,
        }.get(status_code, ProviderErrorKind.TRANSIENT)
        return cls(kind, provider, status_code=status_code, detail=detail)


class PlanningAnomaly(AgentError):
    """A tool reference in a model reply could not be understood."""

    code = "planning_anomaly"


class ToolExecutionFailure(AgentError):
    """The host could not carry out a tool; reported back to the model."""

    code = "tool_failure"

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(f"Tool {tool_name} failed: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class TooManyIterationsError(AgentError):
    """The model kept requesting tools beyond the per-turn cap."""

    code = "too_many_iterations"

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Tool loop exceeded {limit} iterations",
            f"I stopped after {limit} steps without finishing the task. "
            "Please rephrase the request or break it into smaller steps.",
        )
        self.limit = limit


class ApprovalNotFoundError(AgentError):
    """No approval with this id was ever enqueued in the session."""

    code = "approval_not_found"

    def __init__(self, approval_id: str) -> None:
        super().__init__(
            f"Unknown approval id: {approval_id}",
            "That action is no longer awaiting approval.",
        )
        self.approval_id = approval_id


class InvalidApprovalEdit(AgentError):
    """Edited parameters did not validate against the tool's record."""

    code = "invalid_edit"

    def __init__(self, approval_id: str, errors: list[str]) -> None:
        super().__init__(
            f"Invalid edit for approval {approval_id}: {'; '.join(errors)}",
            "The edited values are not valid for this action: " + "; ".join(errors),
        )
        self.approval_id = approval_id
        self.errors = errors
