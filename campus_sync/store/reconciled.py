"""
Reconciled List Store — a client-side mirror of one remote record set.

Blends three sources into one de-duplicated, ordered list:
  1. Bulk fetches (initialize / refresh / load_more)
  2. A live change feed (fine-grained merge, or "something changed, refetch")
  3. Locally originated optimistic mutations, confirmed or rolled back later

States:
  UNINITIALIZED → LOADING → READY (self-loops on every operation)
  LOADING → ERROR on fetch failure; ERROR → LOADING on caller retry

Behavioral Contract:
- Every merge is keyed on the stable record id, never on list position, so
  any arrival order of events, refreshes and confirmations yields no
  duplicate ids and never resurrects a deleted record.
- Optimistic entries live in their own provisional id space ("temp-...")
  and are resolved by handle, not by business-key matching.
- Nothing is retried here. Failures surface to the caller and in the status.
- After dispose(), late completions are silently discarded.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

from pydantic import ValidationError

from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.models.record import (
    PROVISIONAL_PREFIX,
    ChangeEvent,
    ChangeKind,
    OptimisticKind,
    OptimisticRecord,
    Record,
)
from campus_sync.models.store import MergeMode, StoreConfig, StoreSnapshot, StoreStatus
from campus_sync.remote.contract import (
    Enricher,
    FetchError,
    MutationError,
    RemoteCollectionClient,
    SubscriptionHandle,
)
from campus_sync.store.predicates import RelevancePredicate, broadcast

logger = logging.getLogger(__name__)

Listener = Callable[[StoreSnapshot], None]
HandleRef = Union[OptimisticRecord, str]


class ReconciledListStore:
    """
    De-duplicated, ordered view of a remote record set.

    The query's filter and limit are fixed for the store's lifetime. The list
    is ascending or descending by the query's ``descending`` flag; ties keep
    arrival order.
    """

    def __init__(
        self,
        client: RemoteCollectionClient,
        query: Optional[ListQuery] = None,
        predicate: Optional[RelevancePredicate] = None,
        config: Optional[StoreConfig] = None,
        enrich: Optional[Enricher] = None,
    ):
        self.client = client
        self.config = config or StoreConfig()
        self.predicate = predicate or broadcast()
        self.enrich = enrich
        self._query = query

        self._entries: List[Record] = []
        self._optimistic: Dict[str, OptimisticRecord] = {}
        self._tombstones: Set[str] = set()
        # Feed arrivals seen while a bulk fetch was in flight
        self._fetch_in_flight = False
        self._arrived_inserts: Dict[str, Record] = {}
        self._arrived_updates: Dict[str, Record] = {}
        self._status = StoreStatus.UNINITIALIZED
        self._loaded: Optional[asyncio.Event] = None
        self._error: Optional[str] = None
        self._generation = 0
        self._next_offset = 0
        self._has_more = False
        self._subscription: Optional[SubscriptionHandle] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_again = False
        self._listeners: List[Listener] = []
        self._disposed = False

    # --- Read side ---

    @property
    def query(self) -> Optional[ListQuery]:
        return self._query

    @property
    def status(self) -> StoreStatus:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def records(self) -> List[Record]:
        """Current ListState (a copy)."""
        return list(self._entries)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def pending(self) -> List[OptimisticRecord]:
        """Unresolved optimistic mutations."""
        return list(self._optimistic.values())

    def get(self, record_id: str) -> Optional[Record]:
        index = self._index_of(record_id)
        return self._entries[index] if index is not None else None

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            status=self._status,
            records=list(self._entries),
            error=self._error,
            has_more=self._has_more,
            pending=len(self._optimistic),
        )

    def on_change(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every change."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    # --- Bulk fetch ---

    async def initialize(self, query: Optional[ListQuery] = None) -> List[Record]:
        """
        Full fetch. On failure the store adopts an empty list, moves to ERROR
        and re-raises the FetchError for the caller to report.
        """
        self._bind_query(query)
        loaded = asyncio.Event()
        self._loaded = loaded
        self._set_status(StoreStatus.LOADING)
        generation = self._begin_fetch()
        first_page = self._query.page(self._query.offset)
        try:
            try:
                records = await self._fetch(first_page)
            except FetchError as e:
                if self._end_fetch(generation):
                    return self.records
                self._entries = []
                self._has_more = False
                self._error = str(e)
                self._set_status(StoreStatus.ERROR)
                logger.warning("Initial load of %s failed: %s", self._query.table, e)
                raise

            if self._end_fetch(generation):
                return self.records
            self._adopt(records)
            self._set_status(StoreStatus.READY)
            logger.info("Loaded %d records from %s", len(records), self._query.table)
            return self.records
        finally:
            loaded.set()

    async def refresh(self) -> List[Record]:
        """
        Re-run the bulk fetch and replace the list wholesale. Pending
        optimistic entries are carried over.

        A refresh requested while the initial load is in flight waits for it
        and then runs. From UNINITIALIZED or ERROR this is a retry of
        ``initialize``. From READY a failure keeps the current list, records
        the error and re-raises.
        """
        while self._status == StoreStatus.LOADING and not self._loaded.is_set():
            await self._loaded.wait()
            if self._disposed:
                return self.records
        if self._status in (StoreStatus.UNINITIALIZED, StoreStatus.ERROR):
            return await self.initialize()

        generation = self._begin_fetch()
        try:
            records = await self._fetch(self._query.page(self._query.offset))
        except FetchError as e:
            if self._end_fetch(generation):
                return self.records
            self._error = str(e)
            self._notify()
            logger.warning("Refresh of %s failed: %s", self._query.table, e)
            raise

        if self._end_fetch(generation):
            return self.records
        self._adopt(records)
        self._set_status(StoreStatus.READY)
        return self.records

    async def load_more(self) -> List[Record]:
        """
        Append the next page. Only a query with a limit (the page size) ever
        has more. Records already present are skipped. Returns the records
        actually added.
        """
        if self._status != StoreStatus.READY or not self._has_more:
            return []

        generation = self._generation
        offset = self._next_offset
        try:
            records = await self._fetch(self._query.page(offset))
        except FetchError as e:
            if self._is_stale(generation):
                return []
            self._error = str(e)
            self._notify()
            raise

        if self._is_stale(generation):
            return []
        added = []
        for record in records:
            if record.id in self._tombstones or self._index_of(record.id) is not None:
                continue
            self._insert_ordered(record)
            added.append(record)
        self._next_offset = offset + len(records)
        self._has_more = len(records) >= self._query.limit
        self._error = None
        self._notify()
        return added

    async def _fetch(self, query: ListQuery) -> List[Record]:
        try:
            if self.config.fetch_timeout_seconds is not None:
                rows = await asyncio.wait_for(
                    self.client.fetch(query), timeout=self.config.fetch_timeout_seconds
                )
            else:
                rows = await self.client.fetch(query)
        except asyncio.TimeoutError:
            raise FetchError(
                f"Fetch from {query.table} timed out after "
                f"{self.config.fetch_timeout_seconds}s"
            )
        if self.enrich is not None:
            rows = await self.enrich(rows)
        try:
            return [
                Record.from_row(r, self.config.id_field, self.config.order_field)
                for r in rows
            ]
        except (KeyError, ValidationError) as e:
            raise FetchError(f"Malformed row from {query.table}: {e}")

    def _bind_query(self, query: Optional[ListQuery]) -> None:
        if query is not None:
            if self._query is not None and query != self._query:
                raise ValueError("A store's query is fixed for its lifetime")
            self._query = query
        if self._query is None:
            raise ValueError("No query to initialize with")

    def _begin_fetch(self) -> int:
        self._generation += 1
        self._fetch_in_flight = True
        self._arrived_inserts = {}
        self._arrived_updates = {}
        return self._generation

    def _end_fetch(self, generation: int) -> bool:
        """Close out a bulk fetch; returns whether its result is stale."""
        if generation == self._generation:
            self._fetch_in_flight = False
        return self._is_stale(generation)

    def _is_stale(self, generation: int) -> bool:
        if self._disposed:
            logger.debug("Discarding fetch result for disposed store")
            return True
        return generation != self._generation

    def _adopt(self, records: List[Record]) -> None:
        """Replace the list with fetched records, keeping local intent on top."""
        pending_deletes = {
            o.record.id for o in self._optimistic.values()
            if o.kind == OptimisticKind.DELETE
        }

        self._entries = []
        seen: Set[str] = set()
        for record in records:
            if record.id in self._tombstones or record.id in seen:
                continue
            seen.add(record.id)
            shown = self._rebase(record)
            if record.id not in pending_deletes:
                self._entries.append(shown)
        self._sort()

        # Rows the feed delivered during the fetch may postdate its snapshot.
        for record in self._arrived_updates.values():
            self._apply_update(record)
        for record in self._arrived_inserts.values():
            if record.id not in self._tombstones and self._index_of(record.id) is None:
                self._insert_ordered(record)
        self._arrived_inserts = {}
        self._arrived_updates = {}

        for o in self._optimistic.values():
            if o.kind == OptimisticKind.INSERT:
                self._insert_ordered(o.record)

        fetched = len(records)
        self._next_offset = self._query.offset + fetched
        self._has_more = self._query.limit is not None and fetched >= self._query.limit
        self._error = None

    # --- Optimistic mutations ---

    def apply_optimistic(self, record: Union[Record, dict]) -> OptimisticRecord:
        """
        Show a locally created record immediately, under a provisional id.
        Synchronous; always succeeds locally.
        """
        if isinstance(record, dict):
            row = dict(record)
            created = row.pop(self.config.order_field, None) or datetime.utcnow()
            row.pop(self.config.id_field, None)
            record = Record(id=_provisional_id(), created_at=created, fields=row)
        else:
            record = record.model_copy(update={"id": _provisional_id()})

        optimistic = OptimisticRecord(
            handle=f"opt_{uuid4().hex[:12]}",
            kind=OptimisticKind.INSERT,
            record=record,
        )
        self._optimistic[optimistic.handle] = optimistic
        self._insert_ordered(record)
        self._notify()
        return optimistic

    def apply_optimistic_update(self, record_id: str, patch: dict) -> OptimisticRecord:
        """Patch an existing entry in place; rollback restores it exactly."""
        index = self._index_of(record_id)
        if index is None:
            raise KeyError(f"Record {record_id} is not in the list")
        previous = self._entries[index]
        patch = {
            k: v for k, v in patch.items()
            if k not in (self.config.id_field, self.config.order_field)
        }
        updated = previous.model_copy(update={"fields": {**previous.fields, **patch}})
        self._entries[index] = updated

        optimistic = OptimisticRecord(
            handle=f"opt_{uuid4().hex[:12]}",
            kind=OptimisticKind.UPDATE,
            record=updated,
            previous=previous,
            patch=patch,
        )
        self._optimistic[optimistic.handle] = optimistic
        self._notify()
        return optimistic

    def apply_optimistic_delete(self, record_id: str) -> OptimisticRecord:
        """Hide an existing entry; rollback puts it back at its ordered position."""
        index = self._index_of(record_id)
        if index is None:
            raise KeyError(f"Record {record_id} is not in the list")
        previous = self._entries.pop(index)

        optimistic = OptimisticRecord(
            handle=f"opt_{uuid4().hex[:12]}",
            kind=OptimisticKind.DELETE,
            record=previous,
            previous=previous,
        )
        self._optimistic[optimistic.handle] = optimistic
        self._notify()
        return optimistic

    def confirm_optimistic(
        self,
        handle: HandleRef,
        authoritative: Optional[Record] = None,
    ) -> bool:
        """
        Resolve an optimistic mutation.

        With ``authoritative`` the remote call succeeded: inserts and updates
        are replaced by the authoritative record, deletes become final.
        With ``None`` it failed: the local change is rolled back.
        Idempotent: resolving an already resolved handle is a no-op.
        Returns whether anything was resolved.
        """
        key = handle.handle if isinstance(handle, OptimisticRecord) else handle
        if self._disposed:
            return False
        optimistic = self._optimistic.pop(key, None)
        if optimistic is None:
            return False
        optimistic.pending = False

        if optimistic.kind == OptimisticKind.INSERT:
            self._resolve_insert(optimistic, authoritative)
        elif optimistic.kind == OptimisticKind.UPDATE:
            self._resolve_update(optimistic, authoritative)
        else:
            self._resolve_delete(optimistic, authoritative)

        self._notify()
        return True

    def _resolve_insert(self, o: OptimisticRecord, authoritative: Optional[Record]) -> None:
        self._remove(o.record.id)
        if authoritative is None or authoritative.id in self._tombstones:
            return
        # The feed may have delivered the authoritative row first.
        if self._index_of(authoritative.id) is not None:
            self._replace(authoritative)
        else:
            self._insert_ordered(authoritative)

    def _resolve_update(self, o: OptimisticRecord, authoritative: Optional[Record]) -> None:
        if o.record.id in self._tombstones:
            return
        if authoritative is not None:
            self._replace(self._rebase(self._merged(authoritative)))
        elif o.previous is not None:
            self._replace(o.previous)

    def _resolve_delete(self, o: OptimisticRecord, authoritative: Optional[Record]) -> None:
        if authoritative is not None:
            self._tombstones.add(o.record.id)
            self._remove(o.record.id)
            return
        if o.record.id in self._tombstones or o.previous is None:
            return
        if self._index_of(o.record.id) is None:
            self._insert_ordered(o.previous)

    # --- Optimistic + remote round trip ---

    async def submit(self, row: dict) -> Record:
        """
        Insert with an optimistic preview: apply locally, insert remotely,
        then confirm (or roll back and re-raise on MutationError).
        """
        optimistic = self.apply_optimistic(row)
        payload = {
            k: v for k, v in row.items()
            if k not in (self.config.id_field, self.config.order_field)
        }
        try:
            saved = await self.client.insert(self._table, payload)
        except MutationError:
            self.confirm_optimistic(optimistic, None)
            raise
        try:
            record = Record.from_row(saved, self.config.id_field, self.config.order_field)
        except (KeyError, ValidationError) as e:
            self.confirm_optimistic(optimistic, None)
            raise MutationError(f"Insert into {self._table} returned a malformed row: {e}")
        self.confirm_optimistic(optimistic, record)
        return record

    async def submit_update(self, record_id: str, patch: dict) -> Record:
        """Update with an optimistic preview."""
        optimistic = self.apply_optimistic_update(record_id, patch)
        try:
            rows = await self.client.update(self._table, [self._id_filter(record_id)], patch)
        except MutationError:
            self.confirm_optimistic(optimistic, None)
            raise
        if not rows:
            self.confirm_optimistic(optimistic, None)
            raise MutationError(f"No row {record_id} updated in {self._table}")
        try:
            record = Record.from_row(rows[0], self.config.id_field, self.config.order_field)
        except (KeyError, ValidationError) as e:
            self.confirm_optimistic(optimistic, None)
            raise MutationError(f"Update of {self._table} returned a malformed row: {e}")
        self.confirm_optimistic(optimistic, record)
        return record

    async def submit_delete(
        self,
        record_id: str,
        extra_filters: Optional[List[Filter]] = None,
    ) -> None:
        """
        Delete with an optimistic preview. ``extra_filters`` narrow the remote
        delete, e.g. to rows owned by the current user.
        """
        optimistic = self.apply_optimistic_delete(record_id)
        filters = [self._id_filter(record_id)] + list(extra_filters or [])
        try:
            await self.client.delete(self._table, filters)
        except MutationError:
            self.confirm_optimistic(optimistic, None)
            raise
        self.confirm_optimistic(optimistic, optimistic.record)

    def _id_filter(self, record_id: str) -> Filter:
        return Filter(field=self.config.id_field, op=FilterOp.EQ, value=record_id)

    @property
    def _table(self) -> str:
        if self._query is None:
            raise ValueError("Store has no query")
        return self._query.table

    # --- Change feed ---

    def ingest_change_event(self, event: ChangeEvent) -> bool:
        """
        Fine-grained merge of one feed event, applied only if the relevance
        predicate accepts it. Returns whether the list changed.
        """
        if self._disposed:
            return False
        if self._query is not None and event.table != self._query.table:
            return False
        if not self.predicate(event):
            return False

        changed = False
        if event.kind == ChangeKind.INSERTED:
            record = event.record
            if record is not None and self._fetch_in_flight:
                self._arrived_inserts[record.id] = record
            if (
                record is not None
                and record.id not in self._tombstones
                and self._index_of(record.id) is None
            ):
                self._insert_ordered(record)
                changed = True
        elif event.kind == ChangeKind.UPDATED:
            record = event.record
            if record is not None and self._fetch_in_flight:
                self._arrived_updates[record.id] = record
            if record is not None:
                changed = self._apply_update(record)
        elif event.kind == ChangeKind.DELETED:
            target = event.target_id
            if target is not None:
                self._tombstones.add(target)
                self._arrived_inserts.pop(target, None)
                self._arrived_updates.pop(target, None)
                changed = self._remove(target)

        if changed:
            logger.debug("Merged %s %s into %s", event.kind.value, event.target_id, event.table)
            self._notify()
        return changed

    def attach(self) -> SubscriptionHandle:
        """
        Subscribe to the table's change feed. Raises SubscriptionError; the
        owning view decides when to try again.
        """
        if self._disposed:
            raise RuntimeError("Cannot attach a disposed store")
        if self._subscription is not None and self._subscription.active:
            return self._subscription
        self._subscription = self.client.subscribe(
            self._table,
            self._on_feed_event,
            events=self.config.feed_events,
            filter=self.config.feed_filter,
        )
        return self._subscription

    def detach(self) -> None:
        """Release the feed subscription synchronously."""
        if self._subscription is not None:
            self.client.unsubscribe(self._subscription)
            self._subscription = None

    @property
    def attached(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def _on_feed_event(self, event: ChangeEvent) -> None:
        if self._disposed:
            return
        if self.config.merge_mode == MergeMode.FINE_GRAINED:
            self.ingest_change_event(event)
        elif self.predicate(event):
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_again = True
            return
        self._refresh_again = False
        self._refresh_task = asyncio.ensure_future(self._background_refresh())

    async def _background_refresh(self) -> None:
        while not self._disposed:
            self._refresh_again = False
            try:
                await self.refresh()
            except FetchError as e:
                # Already recorded on the store's status for the view to show.
                logger.warning("Background refresh of %s failed: %s", self._table, e)
            if not self._refresh_again:
                break

    async def settle(self) -> None:
        """Wait for any feed-triggered refresh in flight."""
        while self._refresh_task is not None and not self._refresh_task.done():
            await self._refresh_task

    def dispose(self) -> None:
        """
        Tear down: release the feed, cancel background refreshes, drop
        listeners. Later completions of in-flight calls become no-ops.
        """
        if self._disposed:
            return
        self.detach()
        self._disposed = True
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._listeners.clear()
        logger.info("Disposed store for %s", self._query.table if self._query else "<unbound>")

    # --- List primitives ---

    def _index_of(self, record_id: str) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if entry.id == record_id:
                return i
        return None

    def _precedes(self, a: datetime, b: datetime) -> bool:
        """Whether key ``a`` sorts strictly before key ``b`` in this view."""
        descending = self._query.descending if self._query is not None else False
        return a > b if descending else a < b

    def _insert_ordered(self, record: Record) -> None:
        # Scan from the tail so equal keys land after existing ones.
        index = len(self._entries)
        while index > 0 and self._precedes(record.created_at, self._entries[index - 1].created_at):
            index -= 1
        self._entries.insert(index, record)

    def _sort(self) -> None:
        descending = self._query.descending if self._query is not None else False
        self._entries.sort(key=lambda r: r.created_at, reverse=descending)

    def _replace(self, record: Record) -> bool:
        index = self._index_of(record.id)
        if index is None:
            return False
        self._entries[index] = record
        return True

    def _merged(self, record: Record, base: Optional[Record] = None) -> Record:
        """
        Overlay a changed row onto ``base`` (the current entry by default).
        Fields the backend row does not carry (joined profiles) survive; the
        ordering key does not move.
        """
        current = base if base is not None else self.get(record.id)
        if current is None:
            return record
        return record.model_copy(update={
            "created_at": current.created_at,
            "fields": {**current.fields, **record.fields},
        })

    def _pending_for(self, record_id: str) -> List[OptimisticRecord]:
        """Unresolved updates and deletes of one record, oldest first."""
        return [
            o for o in self._optimistic.values()
            if o.kind != OptimisticKind.INSERT and o.record.id == record_id
        ]

    def _rebase(self, authoritative: Record) -> Record:
        """
        Slide pending updates and deletes of a record onto a newer
        authoritative version, so a rollback restores what the backend last
        reported. Returns the version to display.
        """
        shown = authoritative
        for o in self._pending_for(authoritative.id):
            o.previous = shown
            if o.kind == OptimisticKind.UPDATE:
                o.record = shown.model_copy(update={"fields": {**shown.fields, **o.patch}})
                shown = o.record
            else:
                o.record = shown
        return shown

    def _apply_update(self, record: Record) -> bool:
        """Merge a changed row from the feed. Returns whether the list changed."""
        pending = self._pending_for(record.id)
        if pending:
            return self._replace(self._rebase(self._merged(record, pending[0].previous)))
        if self._index_of(record.id) is None:
            return False
        return self._replace(self._merged(record))

    def _remove(self, record_id: str) -> bool:
        index = self._index_of(record_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def _set_status(self, status: StoreStatus) -> None:
        self._status = status
        if status == StoreStatus.LOADING:
            self._error = None
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)


def _provisional_id() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid4().hex}"
