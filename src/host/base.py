"""Base classes for host adapters.

A host adapter is the bridge to the mail/calendar client. Adapters:
- Execute tools against the client's mailbox, calendar and task list
- Provide a point-in-time snapshot of what the user is looking at
- Never call the LLM and never decide whether an action is approved
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from shared.logging import get_logger
from shared.models import HostContext, ToolResult, ToolResultStatus

logger = get_logger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class HostAdapter(ABC):
    """
    Base class for host adapters.

    Subclasses map tool names to async handlers; ``execute_tool`` takes care
    of dispatch, timing and turning handler failures into error results.
    """

    name = "host"

    @abstractmethod
    def handlers(self) -> dict[str, ToolHandler]:
        """Return the handler for each tool this host supports."""
        pass

    @abstractmethod
    async def get_current_context(self) -> HostContext:
        """Snapshot of the open email, upcoming events and tasks."""
        pass

    async def execute_tool(self, name: str, parameters: dict[str, Any]) -> ToolResult:
        """
        Execute a tool.

        Args:
            name: Tool name from the catalog
            parameters: Validated tool parameters

        Returns:
            Tool execution result; failures are reported, never raised
        """
        handler = self.handlers().get(name)
        if handler is None:
            return self._not_found(name)

        started = time.perf_counter()
        try:
            data = await handler(parameters)
        except (KeyError, ValueError) as e:
            return self._error(name, str(e), "VALIDATION_ERROR", started)
        except Exception as e:
            logger.error("Host action failed", host=self.name, tool=name, error=str(e))
            return self._error(name, str(e), "EXECUTION_ERROR", started)

        return ToolResult(
            tool_name=name,
            status=ToolResultStatus.SUCCESS,
            data=data,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )

    def _error(self, name: str, message: str, code: str, started: float) -> ToolResult:
        """Create an error result."""
        return ToolResult(
            tool_name=name,
            status=ToolResultStatus.ERROR,
            error=message,
            error_code=code,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )

    def _not_found(self, name: str) -> ToolResult:
        """Create a not found result."""
        return ToolResult(
            tool_name=name,
            status=ToolResultStatus.NOT_FOUND,
            error=f"Tool '{name}' is not supported by host '{self.name}'",
            error_code="TOOL_NOT_FOUND",
        )
