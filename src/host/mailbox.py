"""In-memory mailbox host.

Stands in for the mail/calendar client during local runs and tests.
Demonstrates:
- Read tools over sample mail, calendar and task data
- Write tools that mutate the in-memory state
- A context snapshot centred on the "currently open" email
"""

import copy
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import HostContext
from host.base import HostAdapter, ToolHandler

logger = get_logger(__name__)

WORKDAY_START = time(9, 0)
WORKDAY_END = time(17, 0)


def _sample_emails() -> dict[str, dict[str, Any]]:
    return {
        "M001": {
            "id": "M001",
            "from": "dana.lee@contoso.com",
            "to": "me@contoso.com",
            "subject": "Quarterly planning meeting",
            "body": "Hi, can you join the quarterly planning meeting on Thursday at 3pm?",
            "received": "2026-10-19T08:12:00",
            "folder": "inbox",
        },
        "M002": {
            "id": "M002",
            "from": "billing@fabrikam.com",
            "to": "me@contoso.com",
            "subject": "Invoice 4471 overdue",
            "body": "Your invoice 4471 is 14 days overdue. Please arrange payment.",
            "received": "2026-10-18T16:40:00",
            "folder": "inbox",
        },
        "M003": {
            "id": "M003",
            "from": "sam.ortiz@contoso.com",
            "to": "me@contoso.com",
            "subject": "Design review notes",
            "body": "Attached are the notes from today's design review.",
            "received": "2026-10-17T11:05:00",
            "folder": "inbox",
        },
    }


def _sample_events(today: datetime) -> list[dict[str, Any]]:
    day = today.replace(hour=0, minute=0, second=0, microsecond=0)
    return [
        {
            "id": "E001",
            "subject": "Team standup",
            "start": (day + timedelta(hours=9, minutes=30)).isoformat(),
            "end": (day + timedelta(hours=9, minutes=45)).isoformat(),
            "location": "Teams",
            "attendees": ["team@contoso.com"],
        },
        {
            "id": "E002",
            "subject": "1:1 with Dana",
            "start": (day + timedelta(hours=14)).isoformat(),
            "end": (day + timedelta(hours=14, minutes=30)).isoformat(),
            "location": "Room 4",
            "attendees": ["dana.lee@contoso.com"],
        },
        {
            "id": "E003",
            "subject": "Vendor call",
            "start": (day + timedelta(days=2, hours=11)).isoformat(),
            "end": (day + timedelta(days=2, hours=12)).isoformat(),
            "location": None,
            "attendees": ["sales@fabrikam.com"],
        },
    ]


class InMemoryMailbox(HostAdapter):
    """
    Mailbox host backed by plain dictionaries.

    Every executed tool call is appended to ``calls`` so callers can assert
    on what actually reached the host.
    """

    name = "memory"

    def __init__(
        self,
        now: Optional[datetime] = None,
        current_email_id: Optional[str] = "M001",
        user: Optional[dict[str, Any]] = None
    ) -> None:
        self.now = now or datetime.now()
        self.emails = _sample_emails()
        self.events = _sample_events(self.now)
        self.tasks: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.trash: dict[str, dict[str, Any]] = {}
        self.current_email_id = current_email_id
        self.user = user or {"display_name": "Alex Morgan", "mail": "me@contoso.com"}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def handlers(self) -> dict[str, ToolHandler]:
        return {
            "search_emails": self._search_emails,
            "get_email": self._get_email,
            "get_recent_emails": self._get_recent_emails,
            "get_current_email": self._get_current_email,
            "search_calendar": self._search_calendar,
            "find_free_time": self._find_free_time,
            "get_user_info": self._get_user_info,
            "send_email": self._send_email,
            "reply_email": self._reply_email,
            "forward_email": self._forward_email,
            "delete_email": self._delete_email,
            "create_event": self._create_event,
            "create_task": self._create_task,
        }

    async def execute_tool(self, name: str, parameters: dict[str, Any]):
        self.calls.append((name, copy.deepcopy(parameters)))
        logger.debug("Mailbox action", tool=name)
        return await super().execute_tool(name, parameters)

    async def get_current_context(self) -> HostContext:
        email = self.emails.get(self.current_email_id) if self.current_email_id else None
        today = self.now.date().isoformat()
        return HostContext(
            email=copy.deepcopy(email),
            events=[e for e in self.events if e["start"].startswith(today)],
            tasks=[t for t in self.tasks if not t.get("completed")],
            user=dict(self.user),
        )

    def _require_email(self, email_id: str) -> dict[str, Any]:
        email = self.emails.get(email_id)
        if email is None:
            raise ValueError(f"Email {email_id} not found")
        return email

    # -- read tools -------------------------------------------------------

    async def _search_emails(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        query = params["query"].lower()
        limit = params.get("limit", 10)

        results = []
        for email in self.emails.values():
            searchable = f"{email['from']} {email['subject']} {email['body']}".lower()
            if query in searchable:
                results.append({k: email[k] for k in ("id", "from", "subject", "received")})
            if len(results) >= limit:
                break
        return results

    async def _get_email(self, params: dict[str, Any]) -> dict[str, Any]:
        return copy.deepcopy(self._require_email(params["email_id"]))

    async def _get_recent_emails(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        count = params.get("count", 10)
        ordered = sorted(self.emails.values(), key=lambda e: e["received"], reverse=True)
        return [{k: e[k] for k in ("id", "from", "subject", "received")} for e in ordered[:count]]

    async def _get_current_email(self, params: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not self.current_email_id:
            return None
        return copy.deepcopy(self.emails.get(self.current_email_id))

    async def _search_calendar(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        days = params.get("days", 1)
        query = (params.get("query") or "").lower()
        start = self.now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=days)

        results = []
        for event in sorted(self.events, key=lambda e: e["start"]):
            event_start = datetime.fromisoformat(event["start"])
            if not start <= event_start < end:
                continue
            if query and query not in event["subject"].lower():
                continue
            results.append(copy.deepcopy(event))
        return results

    async def _find_free_time(self, params: dict[str, Any]) -> list[dict[str, str]]:
        duration = timedelta(minutes=params["duration_minutes"])
        within_days = params.get("within_days", 7)
        busy = sorted(
            (datetime.fromisoformat(e["start"]), datetime.fromisoformat(e["end"]))
            for e in self.events
        )

        slots = []
        for offset in range(within_days):
            day = (self.now + timedelta(days=offset)).date()
            if day.weekday() >= 5:
                continue
            cursor = datetime.combine(day, WORKDAY_START)
            day_end = datetime.combine(day, WORKDAY_END)
            for busy_start, busy_end in busy:
                if busy_end <= cursor or busy_start >= day_end:
                    continue
                if busy_start - cursor >= duration:
                    slots.append({"start": cursor.isoformat(), "end": (cursor + duration).isoformat()})
                cursor = max(cursor, busy_end)
            if day_end - cursor >= duration:
                slots.append({"start": cursor.isoformat(), "end": (cursor + duration).isoformat()})
            if len(slots) >= 5:
                break
        return slots[:5]

    async def _get_user_info(self, params: dict[str, Any]) -> dict[str, Any]:
        return dict(self.user)

    # -- write tools ------------------------------------------------------

    async def _send_email(self, params: dict[str, Any]) -> dict[str, Any]:
        message = {"id": f"S{len(self.sent) + 1:03d}", **params}
        self.sent.append(message)
        return {"sent": True, "id": message["id"]}

    async def _reply_email(self, params: dict[str, Any]) -> dict[str, Any]:
        original = self._require_email(params["email_id"])
        message = {
            "id": f"S{len(self.sent) + 1:03d}",
            "to": original["from"],
            "subject": f"Re: {original['subject']}",
            "body": params["body"],
            "in_reply_to": original["id"],
        }
        self.sent.append(message)
        return {"sent": True, "id": message["id"], "to": message["to"]}

    async def _forward_email(self, params: dict[str, Any]) -> dict[str, Any]:
        original = self._require_email(params["email_id"])
        body = original["body"]
        if params.get("comment"):
            body = f"{params['comment']}\n\n---------- Forwarded message ----------\n{body}"
        message = {
            "id": f"S{len(self.sent) + 1:03d}",
            "to": params["to"],
            "subject": f"Fw: {original['subject']}",
            "body": body,
        }
        self.sent.append(message)
        return {"sent": True, "id": message["id"]}

    async def _delete_email(self, params: dict[str, Any]) -> dict[str, Any]:
        email = self._require_email(params["email_id"])
        self.trash[email["id"]] = self.emails.pop(email["id"])
        if self.current_email_id == email["id"]:
            self.current_email_id = None
        return {"deleted": True, "id": email["id"]}

    async def _create_event(self, params: dict[str, Any]) -> dict[str, Any]:
        start = datetime.fromisoformat(params["start"])
        end = datetime.fromisoformat(params["end"])
        if end <= start:
            raise ValueError("Event end must be after its start")

        attendees = params.get("attendees")
        event = {
            "id": f"E{uuid.uuid4().hex[:6].upper()}",
            "subject": params["subject"],
            "start": start.isoformat(),
            "end": end.isoformat(),
            "location": params.get("location"),
            "attendees": [a.strip() for a in attendees.split(",")] if attendees else [],
            "body": params.get("body"),
        }
        self.events.append(event)
        return {"created": True, "id": event["id"]}

    async def _create_task(self, params: dict[str, Any]) -> dict[str, Any]:
        task = {
            "id": f"T{len(self.tasks) + 1:03d}",
            "title": params["title"],
            "due_date": params.get("due_date"),
            "priority": params.get("priority", "medium"),
            "notes": params.get("notes"),
            "completed": False,
        }
        self.tasks.append(task)
        return {"created": True, "id": task["id"]}
