"""
Remote Collection Contract — what the stores need from the backend.

Any backend satisfying this protocol can be injected into a store: the
Supabase adapter in production, the SQLite local client in tests and
local development.

Behavioral Contract:
- fetch/insert/update/delete are async and raise the matching RemoteError
  subclass on failure. Nothing here retries.
- subscribe() delivers ChangeEvents to a plain callback on the event loop's
  thread. unsubscribe() is synchronous: once it returns, the callback is
  never invoked again for that handle.
"""

from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable
from uuid import uuid4

from campus_sync.models.identity import UserIdentity
from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import ChangeEvent

EventCallback = Callable[[ChangeEvent], None]

UNIQUE_VIOLATION = "23505"


class RemoteError(Exception):
    """Base class for failures talking to the remote store."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class FetchError(RemoteError):
    """Raised when a bulk read fails or times out."""
    pass


class MutationError(RemoteError):
    """Raised when an insert, update or delete fails."""

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


class SubscriptionError(RemoteError):
    """Raised when a change feed cannot be established or drops."""
    pass


class SubscriptionHandle:
    """An active change-feed subscription."""

    def __init__(
        self,
        table: str,
        callback: EventCallback,
        events: str = "*",
        filter: Optional[str] = None,
    ):
        self.id = f"sub_{uuid4().hex[:12]}"
        self.table = table
        self.events = events
        self.filter = filter
        self.created_at = datetime.utcnow()
        self.active = True
        self._callback = callback

    def deliver(self, event: ChangeEvent) -> bool:
        """Hand an event to the subscriber unless the handle was released."""
        if not self.active:
            return False
        self._callback(event)
        return True

    def wants(self, event: ChangeEvent) -> bool:
        """Whether this subscription's event-type filter admits the event."""
        if self.events == "*":
            return True
        return _EVENT_NAMES.get(self.events.upper()) == event.kind.value

    def release(self) -> None:
        self.active = False


_EVENT_NAMES = {
    "INSERT": "inserted",
    "UPDATE": "updated",
    "DELETE": "deleted",
}


@runtime_checkable
class RemoteCollectionClient(Protocol):
    """Queries, mutations and change feeds over named remote tables."""

    async def fetch(self, query: ListQuery) -> List[dict]:
        ...

    async def insert(self, table: str, row: dict) -> dict:
        ...

    async def update(self, table: str, filters: List[Filter], patch: dict) -> List[dict]:
        ...

    async def delete(self, table: str, filters: List[Filter]) -> None:
        ...

    def subscribe(
        self,
        table: str,
        on_event: EventCallback,
        events: str = "*",
        filter: Optional[str] = None,
    ) -> SubscriptionHandle:
        ...

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        ...

    async def current_user(self) -> Optional[UserIdentity]:
        ...


Enricher = Callable[[List[dict]], Awaitable[List[dict]]]


def parse_feed_filter(expr: Optional[str]) -> Optional[Filter]:
    """
    Parse a change-feed filter of the form ``column=op.value``
    (e.g. ``item_id=eq.42``) into a Filter.
    """
    if not expr:
        return None
    try:
        column, rest = expr.split("=", 1)
        op, value = rest.split(".", 1)
    except ValueError:
        raise ValueError(f"Malformed feed filter: {expr!r}")
    if op == "in":
        values = value.strip("()").split(",") if value.strip("()") else []
        return Filter(field=column, op=op, value=values)
    return Filter(field=column, op=op, value=value)
