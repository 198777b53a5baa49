"""Supabase adapter for the RemoteCollectionClient contract."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from campus_sync.config import Settings, get_settings
from campus_sync.models.identity import UserIdentity
from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.models.record import ChangeEvent, ChangeKind, Record
from campus_sync.remote.contract import (
    EventCallback,
    FetchError,
    MutationError,
    SubscriptionError,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    "INSERT": ChangeKind.INSERTED,
    "UPDATE": ChangeKind.UPDATED,
    "DELETE": ChangeKind.DELETED,
}


async def create_supabase_client(settings: Optional[Settings] = None) -> "SupabaseCollectionClient":
    """Build an adapter over a fresh Supabase async client."""
    if settings is None:
        settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise ValueError("Both SUPABASE_URL and SUPABASE_KEY must be set")
    client = await acreate_client(settings.supabase_url, settings.supabase_key)
    return SupabaseCollectionClient(client, schema=settings.supabase_schema)


class SupabaseCollectionClient:
    """
    PostgREST queries and Realtime ``postgres_changes`` feeds over one
    injected ``AsyncClient``.
    """

    def __init__(self, client: AsyncClient, schema: str = "public"):
        self.client = client
        self.schema = schema
        self._channels: Dict[str, Any] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    # --- Queries ---

    async def fetch(self, query: ListQuery) -> List[dict]:
        builder = self.client.table(query.table).select(query.columns)
        builder = apply_filters(builder, query.filters)
        if query.any_of:
            builder = builder.or_(or_expression(query.any_of))
        builder = builder.order(query.order_by, desc=query.descending)
        if query.limit is not None:
            builder = builder.range(query.offset, query.offset + query.limit - 1)
        elif query.offset:
            raise ValueError("An offset requires a limit")
        try:
            response = await builder.execute()
        except APIError as e:
            raise FetchError(f"Fetch from {query.table} failed: {e.message}", code=e.code)
        return list(response.data or [])

    # --- Mutations ---

    async def insert(self, table: str, row: dict) -> dict:
        try:
            response = await self.client.table(table).insert(row).execute()
        except APIError as e:
            raise MutationError(f"Insert into {table} failed: {e.message}", code=e.code)
        if not response.data:
            raise MutationError(f"Insert into {table} returned no row")
        return response.data[0]

    async def update(self, table: str, filters: List[Filter], patch: dict) -> List[dict]:
        if not filters:
            raise ValueError("Refusing an unfiltered update")
        builder = apply_filters(self.client.table(table).update(patch), filters)
        try:
            response = await builder.execute()
        except APIError as e:
            raise MutationError(f"Update of {table} failed: {e.message}", code=e.code)
        return list(response.data or [])

    async def delete(self, table: str, filters: List[Filter]) -> None:
        if not filters:
            raise ValueError("Refusing an unfiltered delete")
        builder = apply_filters(self.client.table(table).delete(), filters)
        try:
            await builder.execute()
        except APIError as e:
            raise MutationError(f"Delete from {table} failed: {e.message}", code=e.code)

    # --- Change feed ---

    def subscribe(
        self,
        table: str,
        on_event: EventCallback,
        events: str = "*",
        filter: Optional[str] = None,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(table, on_event, events=events, filter=filter)

        def _on_payload(payload: dict) -> None:
            event = parse_realtime_payload(table, payload)
            if event is None:
                logger.debug("Ignoring unrecognized payload on %s", table)
                return
            handle.deliver(event)

        try:
            channel = self.client.channel(f"{table}_{handle.id}")
            channel.on_postgres_changes(
                events.upper(),
                schema=self.schema,
                table=table,
                filter=filter,
                callback=_on_payload,
            )
        except Exception as e:
            raise SubscriptionError(f"Could not open feed on {table}: {e}")

        self._channels[handle.id] = channel
        task = asyncio.ensure_future(channel.subscribe())
        self._pending[handle.id] = task
        task.add_done_callback(lambda t: self._on_subscribed(handle, t))
        return handle

    def _on_subscribed(self, handle: SubscriptionHandle, task: asyncio.Task) -> None:
        self._pending.pop(handle.id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # The owning view resubscribes on next focus.
            logger.warning("Feed %s on %s failed to subscribe: %s", handle.id, handle.table, error)
            handle.release()
            self._channels.pop(handle.id, None)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.release()
        pending = self._pending.pop(handle.id, None)
        if pending is not None:
            pending.cancel()
        channel = self._channels.pop(handle.id, None)
        if channel is None:
            return
        removal = asyncio.ensure_future(self.client.remove_channel(channel))
        removal.add_done_callback(_log_removal_failure)

    # --- Auth ---

    async def current_user(self) -> Optional[UserIdentity]:
        try:
            response = await self.client.auth.get_user()
        except Exception as e:
            # No session and an expired session both surface as auth errors.
            logger.warning("Could not resolve current user: %s", e)
            return None
        if response is None or response.user is None:
            return None
        return UserIdentity(id=str(response.user.id), email=response.user.email)


def apply_filters(builder, filters: List[Filter]):
    """Chain PostgREST filter calls onto a request builder."""
    for f in filters:
        if f.op == FilterOp.IN:
            builder = builder.in_(f.field, list(f.value or []))
        elif f.op == FilterOp.IS:
            builder = builder.is_(f.field, "null" if f.value is None else f.value)
        else:
            builder = getattr(builder, f.op.value)(f.field, f.value)
    return builder


def or_expression(groups: List[List[Filter]]) -> str:
    """
    Render OR-of-AND groups in PostgREST syntax, e.g.
    ``and(sender_id.eq.a,receiver_id.eq.b),and(sender_id.eq.b,receiver_id.eq.a)``.
    """
    rendered = []
    for group in groups:
        terms = [_term(f) for f in group]
        if len(terms) == 1:
            rendered.append(terms[0])
        else:
            rendered.append(f"and({','.join(terms)})")
    return ",".join(rendered)


def _term(f: Filter) -> str:
    if f.op == FilterOp.IN:
        return f"{f.field}.in.({','.join(str(v) for v in (f.value or []))})"
    if f.op == FilterOp.IS:
        return f"{f.field}.is.{'null' if f.value is None else str(f.value).lower()}"
    return f"{f.field}.{f.op.value}.{f.value}"


def parse_realtime_payload(table: str, payload: dict) -> Optional[ChangeEvent]:
    """Translate a Realtime ``postgres_changes`` payload into a ChangeEvent."""
    data = payload.get("data", payload)
    event_type = str(data.get("type") or data.get("eventType") or "").upper()
    kind = _EVENT_TYPES.get(event_type)
    if kind is None:
        return None
    new = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}

    if kind == ChangeKind.DELETED:
        record_id = old.get("id")
        if record_id is None:
            return None
        return ChangeEvent.deleted(table, str(record_id), old=old)
    if new.get("id") is None:
        return None
    record = Record.from_row(new)
    if kind == ChangeKind.INSERTED:
        return ChangeEvent.inserted(table, record)
    return ChangeEvent.updated(table, record, old=old)


def _log_removal_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Removing feed channel failed: %s", task.exception())
