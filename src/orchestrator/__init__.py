"""Orchestrator.

Runs approval-gated conversation turns: routes prompts to LLM providers,
plans tool calls, suspends sensitive ones until a human decides, and
keeps observers in sync.
"""

from orchestrator.llm import LLMProvider, MockLLMProvider, create_llm_provider
from orchestrator.router import ProviderRouter
from orchestrator.planner import ToolCallPlanner
from orchestrator.approvals import ApprovalGate
from orchestrator.broadcaster import StateBroadcaster
from orchestrator.conversation import ConversationHistory
from orchestrator.gateway import ConversationOrchestrator
from orchestrator.sessions import SessionManager

__all__ = [
    "LLMProvider",
    "MockLLMProvider",
    "create_llm_provider",
    "ProviderRouter",
    "ToolCallPlanner",
    "ApprovalGate",
    "StateBroadcaster",
    "ConversationHistory",
    "ConversationOrchestrator",
    "SessionManager",
]
