"""Host collaborators.

The host is the mail/calendar client the assistant acts on. It contains:
- The static tool catalog (which tools exist and which are sensitive)
- The adapter interface the orchestrator executes tools through
- An in-memory mailbox implementation
"""

from host.base import HostAdapter
from host.catalog import ToolCatalog, get_catalog
from host.mailbox import InMemoryMailbox

__all__ = [
    "HostAdapter",
    "ToolCatalog",
    "get_catalog",
    "InMemoryMailbox",
]
