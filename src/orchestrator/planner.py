"""Tool Call Planner.

Turns a raw model reply into at most one typed ToolInvocation.

Two reference styles are understood:
- Native function calling (``tool_calls`` on the reply)
- Fenced blocks in the text, as taught by the system prompt::

    ```tool
    {"tool": "send_email", "params": {"to": "...", "subject": "...", "body": "..."}}
    ```

Planning never raises. Unknown tools, broken JSON and parameters that fail
validation are logged as anomalies and the reply degrades to plain text.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import PlanningAnomaly
from shared.logging import get_logger
from shared.models import LLMResponse, ToolInvocation, UnknownToolCall
from shared.schema import validate_schema
from host.catalog import ToolCatalog, get_catalog

logger = get_logger(__name__)

TOOL_BLOCK = re.compile(r"```tool\s*(.*?)```", re.DOTALL)

# Names models commonly use for the same tools
TOOL_ALIASES = {
    "reply_to_email": "reply_email",
    "get_email_details": "get_email",
    "get_calendar_events": "search_calendar",
    "create_calendar_event": "create_event",
    "create_meeting": "create_event",
}

DESCRIPTIONS = {
    "send_email": "Send email to {to}: \"{subject}\"",
    "reply_email": "Reply to email {email_id}",
    "forward_email": "Forward email {email_id} to {to}",
    "delete_email": "Delete email {email_id}",
    "create_event": "Create event \"{subject}\" from {start} to {end}",
    "create_task": "Create task \"{title}\"",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


@dataclass
class PlanReport:
    """Everything the planner found in one reply."""
    invocation: Optional[ToolInvocation] = None
    anomalies: list[PlanningAnomaly] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    unknown: list[UnknownToolCall] = field(default_factory=list)


class ToolCallPlanner:
    """
    Detects tool references in model replies.

    Deterministic for a given reply: the same input always yields the same
    tool name and parameters.
    """

    def __init__(self, catalog: Optional[ToolCatalog] = None) -> None:
        self.catalog = catalog or get_catalog()

    def plan(self, reply: LLMResponse) -> Optional[ToolInvocation]:
        """Return the first valid tool invocation in the reply, or None."""
        return self.inspect(reply).invocation

    def inspect(self, reply: LLMResponse) -> PlanReport:
        """Plan a reply and report anomalies and ignored extra calls."""
        report = PlanReport()

        for name, raw in self._references(reply, report):
            invocation = self._resolve(name, raw, report)
            if invocation is None:
                continue
            if report.invocation is None:
                report.invocation = invocation
            else:
                report.ignored.append(invocation.tool_name)

        for anomaly in report.anomalies:
            logger.warning("Planning anomaly", reason=str(anomaly))
        if report.ignored:
            logger.info(
                "Extra tool calls ignored",
                planned=report.invocation.tool_name if report.invocation else None,
                ignored=report.ignored,
            )
        return report

    @staticmethod
    def strip_tool_blocks(text: Optional[str]) -> str:
        """Reply text with tool blocks removed."""
        if not text:
            return ""
        return TOOL_BLOCK.sub("", text).strip()

    def describe(self, invocation: ToolInvocation) -> str:
        """Human-readable description of an action, for approval prompts."""
        template = DESCRIPTIONS.get(invocation.tool_name)
        if template:
            try:
                return template.format(**invocation.arguments())
            except KeyError:
                pass
        tool = self.catalog.get(invocation.tool_name)
        return tool.description if tool else invocation.tool_name

    def _references(self, reply: LLMResponse, report: PlanReport) -> list[tuple[str, Any]]:
        references: list[tuple[str, Any]] = []

        for call in reply.tool_calls or []:
            function = call.get("function") if isinstance(call, dict) else None
            if not isinstance(function, dict):
                report.anomalies.append(PlanningAnomaly("Native tool call without a function"))
                continue
            name = function.get("name")
            if not isinstance(name, str) or not name:
                report.anomalies.append(PlanningAnomaly("Native tool call without a function name"))
                continue
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments) if arguments.strip() else {}
                except json.JSONDecodeError:
                    report.anomalies.append(PlanningAnomaly(f"Invalid JSON arguments for {name}"))
                    continue
            references.append((name, arguments))

        for block in TOOL_BLOCK.findall(reply.content or ""):
            try:
                payload = json.loads(block.strip())
            except json.JSONDecodeError:
                report.anomalies.append(PlanningAnomaly("Tool block is not valid JSON"))
                continue
            if not isinstance(payload, dict) or not isinstance(payload.get("tool"), str):
                report.anomalies.append(PlanningAnomaly("Tool block has no tool name"))
                continue
            params = payload.get("params", payload.get("parameters", payload.get("arguments", {})))
            references.append((payload["tool"], params if params is not None else {}))

        return references

    def _resolve(self, name: str, raw: Any, report: PlanReport) -> Optional[ToolInvocation]:
        canonical = TOOL_ALIASES.get(name, name)
        tool = self.catalog.get(canonical)
        record = self.catalog.record(canonical)

        if tool is None or record is None:
            unknown = UnknownToolCall(
                requested_name=name,
                raw_parameters=raw if isinstance(raw, dict) else {},
            )
            report.unknown.append(unknown)
            report.anomalies.append(PlanningAnomaly(f"Unknown tool: {unknown.requested_name}"))
            return None

        if not isinstance(raw, dict):
            report.anomalies.append(PlanningAnomaly(f"Parameters for {canonical} are not an object"))
            return None

        params = {_snake(key): value for key, value in raw.items()}
        is_valid, errors = validate_schema(params, tool.input_schema)
        if not is_valid:
            report.anomalies.append(
                PlanningAnomaly(f"Invalid parameters for {canonical}: {'; '.join(errors)}")
            )
            return None

        try:
            parameters = record.model_validate(params)
        except ValidationError as e:
            report.anomalies.append(
                PlanningAnomaly(f"Invalid parameters for {canonical}: {e.error_count()} error(s)")
            )
            return None

        return ToolInvocation(parameters=parameters, requires_approval=tool.requires_approval)
