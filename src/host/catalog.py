"""Static catalog of host tools.

Which tools are sensitive is decided here, once, and never inferred from a
model reply. WRITE tools mutate the user's mailbox or calendar and must pass
through the approval gate; READ tools execute immediately.
"""

from typing import Any, Optional

from shared.models import (
    CreateEventParams,
    CreateTaskParams,
    DeleteEmailParams,
    ExecutionType,
    FindFreeTimeParams,
    ForwardEmailParams,
    GetCurrentEmailParams,
    GetEmailParams,
    GetRecentEmailsParams,
    GetUserInfoParams,
    ReplyEmailParams,
    SearchCalendarParams,
    SearchEmailsParams,
    SendEmailParams,
    ToolDefinition,
    ToolParameters,
)
from shared.schema import describe_parameters, schema_for


# name -> (parameter record, execution type, description)
_TOOL_TABLE: dict[str, tuple[type[ToolParameters], ExecutionType, str]] = {
    # Email (read)
    "search_emails": (
        SearchEmailsParams, ExecutionType.READ,
        "Search emails in the mailbox by keywords, sender, or subject.",
    ),
    "get_email": (
        GetEmailParams, ExecutionType.READ,
        "Get the full content of a specific email by its ID.",
    ),
    "get_recent_emails": (
        GetRecentEmailsParams, ExecutionType.READ,
        "Get the most recent emails from the inbox.",
    ),
    "get_current_email": (
        GetCurrentEmailParams, ExecutionType.READ,
        "Get the email the user currently has open.",
    ),
    # Calendar (read)
    "search_calendar": (
        SearchCalendarParams, ExecutionType.READ,
        "List calendar events from today onwards.",
    ),
    "find_free_time": (
        FindFreeTimeParams, ExecutionType.READ,
        "Find available time slots in the calendar.",
    ),
    "get_user_info": (
        GetUserInfoParams, ExecutionType.READ,
        "Get the signed-in user's profile (name, email address).",
    ),
    # Email (write)
    "send_email": (
        SendEmailParams, ExecutionType.WRITE,
        "Send a new email.",
    ),
    "reply_email": (
        ReplyEmailParams, ExecutionType.WRITE,
        "Reply to an email.",
    ),
    "forward_email": (
        ForwardEmailParams, ExecutionType.WRITE,
        "Forward an email to other recipients.",
    ),
    "delete_email": (
        DeleteEmailParams, ExecutionType.WRITE,
        "Delete an email (moves it to trash).",
    ),
    # Calendar / tasks (write)
    "create_event": (
        CreateEventParams, ExecutionType.WRITE,
        "Create a calendar event or meeting.",
    ),
    "create_task": (
        CreateTaskParams, ExecutionType.WRITE,
        "Create a task / to-do item.",
    ),
}


class ToolCatalog:
    """Lookup over the static tool table."""

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._records: dict[str, type[ToolParameters]] = {}

        for name, (record, execution_type, description) in _TOOL_TABLE.items():
            self._records[name] = record
            self._definitions[name] = ToolDefinition(
                name=name,
                description=description,
                input_schema=schema_for(record),
                execution_type=execution_type,
            )

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._definitions.get(name)

    def record(self, name: str) -> Optional[type[ToolParameters]]:
        """Parameter record class for a tool."""
        return self._records.get(name)

    def list_tools(self, execution_type: Optional[ExecutionType] = None) -> list[ToolDefinition]:
        tools = list(self._definitions.values())
        if execution_type:
            tools = [t for t in tools if t.execution_type == execution_type]
        return tools

    def requires_approval(self, name: str) -> bool:
        tool = self.get(name)
        return tool.requires_approval if tool else False

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in self._definitions.values()
        ]

    def render_prompt(self) -> str:
        """Tool documentation section of the system prompt."""
        lines = [
            "## AVAILABLE TOOLS",
            "",
            "To use a tool, include exactly one JSON block in this format:",
            "",
            "```tool",
            '{"tool": "tool_name", "params": {"param1": "value1"}}',
            "```",
            "",
            "After the tool runs you will receive its result and can decide what to do next.",
            "Tools marked REQUIRES APPROVAL only run after the user approves them.",
            "",
        ]
        for tool in self._definitions.values():
            marker = " (REQUIRES APPROVAL)" if tool.requires_approval else ""
            lines.append(f"**{tool.name}**{marker}")
            lines.append(tool.description)
            params = describe_parameters(tool.input_schema)
            if params:
                lines.append("Parameters:")
                lines.extend(f"  - {p}" for p in params)
            lines.append("")
        return "\n".join(lines)


_catalog: Optional[ToolCatalog] = None


def get_catalog() -> ToolCatalog:
    """Get the shared tool catalog."""
    global _catalog
    if _catalog is None:
        _catalog = ToolCatalog()
    return _catalog
