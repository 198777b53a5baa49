"""
Local Collection Client — an in-process remote store with a change feed.

Implements the RemoteCollectionClient contract on SQLite so stores and views
can run without a hosted backend. Every successful mutation is published to
matching subscribers synchronously, before the mutation call returns, which
is the harshest ordering a real feed can produce (the event beats the
mutation's own response).

Prototype: SQLite, one generic rows table. Production: the hosted backend.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from campus_sync.models.identity import UserIdentity
from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import ChangeEvent, Record
from campus_sync.remote.contract import (
    UNIQUE_VIOLATION,
    EventCallback,
    FetchError,
    MutationError,
    RemoteError,
    SubscriptionError,
    SubscriptionHandle,
    parse_feed_filter,
)

logger = logging.getLogger(__name__)

# Natural keys the marketplace schema enforces
DEFAULT_UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "reactions": ("item_id", "user_id"),
    "conversation_visibility": ("user_id", "other_user_id"),
}


class LocalCollectionClient:
    """
    SQLite-backed RemoteCollectionClient.

    Failures can be injected per operation with ``inject_failure`` to exercise
    the error paths of the stores built on top of it.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        user: Optional[UserIdentity] = None,
        unique_keys: Optional[Dict[str, Tuple[str, ...]]] = None,
        latency_seconds: float = 0.0,
    ):
        self.db_path = db_path
        self.user = user
        self.unique_keys = DEFAULT_UNIQUE_KEYS if unique_keys is None else unique_keys
        self.latency_seconds = latency_seconds
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._subscriptions: Dict[str, SubscriptionHandle] = {}
        self._faults: Dict[str, RemoteError] = {}
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the rows table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS rows (
                tbl TEXT NOT NULL,
                id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                row_json TEXT NOT NULL,
                PRIMARY KEY (tbl, id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_rows_order ON rows(tbl, created_at)
        """)
        self._conn.commit()

    # --- Failure injection ---

    def inject_failure(self, operation: str, error: Optional[RemoteError] = None) -> None:
        """Make the next call to ``operation`` fail with ``error``."""
        if error is None:
            defaults = {
                "fetch": FetchError,
                "subscribe": SubscriptionError,
            }
            error = defaults.get(operation, MutationError)(f"Injected {operation} failure")
        self._faults[operation] = error

    def _raise_injected(self, operation: str) -> None:
        error = self._faults.pop(operation, None)
        if error is not None:
            raise error

    async def _round_trip(self, operation: str) -> None:
        await asyncio.sleep(self.latency_seconds)
        self._raise_injected(operation)

    # --- Queries ---

    async def fetch(self, query: ListQuery) -> List[dict]:
        await self._round_trip("fetch")
        try:
            rows = self._load_table(query.table)
        except sqlite3.Error as e:
            raise FetchError(f"Fetch from {query.table} failed: {e}")

        matched = [r for r in rows if query.matches(r)]
        matched.sort(key=lambda r: _sort_key(r.get(query.order_by)), reverse=query.descending)
        end = None if query.limit is None else query.offset + query.limit
        page = matched[query.offset:end]
        return [_project(r, query.columns) for r in page]

    def _load_table(self, table: str) -> List[dict]:
        rows = self._conn.execute(
            "SELECT row_json FROM rows WHERE tbl = ? ORDER BY created_at, rowid",
            (table,),
        ).fetchall()
        return [json.loads(r["row_json"]) for r in rows]

    # --- Mutations ---

    async def insert(self, table: str, row: dict) -> dict:
        await self._round_trip("insert")
        stored = dict(row)
        stored["id"] = str(stored.get("id") or uuid4().hex)
        stored["created_at"] = _timestamp(stored.get("created_at"))
        self._check_unique(table, stored)

        try:
            self._conn.execute(
                "INSERT INTO rows (tbl, id, created_at, row_json) VALUES (?, ?, ?, ?)",
                (table, stored["id"], stored["created_at"], json.dumps(stored, default=str)),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            raise MutationError(f"Insert into {table} failed: {e}", code=UNIQUE_VIOLATION)
        except sqlite3.Error as e:
            raise MutationError(f"Insert into {table} failed: {e}")

        self._publish(ChangeEvent.inserted(table, Record.from_row(stored)))
        return dict(stored)

    async def update(self, table: str, filters: List[Filter], patch: dict) -> List[dict]:
        await self._round_trip("update")
        patch = {k: v for k, v in patch.items() if k not in ("id", "created_at")}
        targets = self._matching(table, filters)
        updated = []
        try:
            for old in targets:
                new = dict(old)
                new.update(patch)
                self._conn.execute(
                    "UPDATE rows SET row_json = ? WHERE tbl = ? AND id = ?",
                    (json.dumps(new, default=str), table, new["id"]),
                )
                updated.append((old, new))
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise MutationError(f"Update of {table} failed: {e}")

        for old, new in updated:
            self._publish(ChangeEvent.updated(table, Record.from_row(new), old=old))
        return [new for _, new in updated]

    async def delete(self, table: str, filters: List[Filter]) -> None:
        await self._round_trip("delete")
        targets = self._matching(table, filters)
        try:
            for old in targets:
                self._conn.execute(
                    "DELETE FROM rows WHERE tbl = ? AND id = ?", (table, old["id"])
                )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise MutationError(f"Delete from {table} failed: {e}")

        for old in targets:
            self._publish(ChangeEvent.deleted(table, old["id"], old=old))

    def _matching(self, table: str, filters: Sequence[Filter]) -> List[dict]:
        return [
            r for r in self._load_table(table)
            if all(f.matches(r) for f in filters)
        ]

    def _check_unique(self, table: str, row: dict) -> None:
        key = self.unique_keys.get(table)
        if not key:
            return
        for existing in self._load_table(table):
            if all(existing.get(k) == row.get(k) for k in key):
                raise MutationError(
                    f"duplicate key value violates unique constraint on {table}{key}",
                    code=UNIQUE_VIOLATION,
                )

    # --- Change feed ---

    def subscribe(
        self,
        table: str,
        on_event: EventCallback,
        events: str = "*",
        filter: Optional[str] = None,
    ) -> SubscriptionHandle:
        self._raise_injected("subscribe")
        try:
            parse_feed_filter(filter)
        except ValueError as e:
            raise SubscriptionError(str(e))
        handle = SubscriptionHandle(table, on_event, events=events, filter=filter)
        self._subscriptions[handle.id] = handle
        logger.debug("Subscribed %s to %s (%s, filter=%s)", handle.id, table, events, filter)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.release()
        self._subscriptions.pop(handle.id, None)
        logger.debug("Unsubscribed %s from %s", handle.id, handle.table)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _publish(self, event: ChangeEvent) -> None:
        for handle in list(self._subscriptions.values()):
            if handle.table != event.table or not handle.wants(event):
                continue
            row_filter = parse_feed_filter(handle.filter)
            if row_filter is not None and not row_filter.matches(event.row):
                continue
            try:
                handle.deliver(event)
            except Exception:
                # One subscriber's failure must not fail the writer's mutation.
                logger.exception("Subscriber %s failed handling %s", handle.id, event.kind.value)

    # --- Auth ---

    async def current_user(self) -> Optional[UserIdentity]:
        return self.user

    def sign_in_as(self, user: Optional[UserIdentity]) -> None:
        self.user = user

    def close(self) -> None:
        """Close the database connection."""
        for handle in list(self._subscriptions.values()):
            self.unsubscribe(handle)
        self._conn.close()


def _timestamp(value) -> str:
    if value is None:
        return datetime.utcnow().isoformat()
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _sort_key(value):
    # Rows without the order column sort first; mixed types compare as text.
    if value is None:
        return (0, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, value)
    return (2, str(value))


def _project(row: dict, columns: str) -> dict:
    if not columns or columns.strip() == "*":
        return dict(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: row[c] for c in wanted if c in row}
