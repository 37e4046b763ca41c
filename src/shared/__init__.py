"""Shared models, errors and utilities for mailpilot."""

from shared.models import (
    AgentState,
    ConversationTurn,
    PendingApproval,
    ToolDefinition,
    ToolInvocation,
    ToolResult,
    TurnResult,
)
from shared.errors import AgentError, BusyError, ProviderError, ProviderErrorKind
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AgentState",
    "ConversationTurn",
    "PendingApproval",
    "ToolDefinition",
    "ToolInvocation",
    "ToolResult",
    "TurnResult",
    "AgentError",
    "BusyError",
    "ProviderError",
    "ProviderErrorKind",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
