"""Saved collections — a user's named lists of items, and what is in each."""

import logging
from typing import List, Optional

from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import RemoteCollectionClient
from campus_sync.store.join import fetch_related
from campus_sync.store.predicates import field_equals
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView

logger = logging.getLogger(__name__)

COLLECTIONS_TABLE = "user_collections"
COLLECTION_ITEMS_TABLE = "collection_items"


class CollectionsView(StoreView):
    """The signed-in user's collections, newest first."""

    name = "collections"

    def __init__(
        self,
        client: RemoteCollectionClient,
        me: str,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={
            "merge_mode": MergeMode.FINE_GRAINED,
            "feed_filter": f"user_id=eq.{me}",
        })
        query = ListQuery(
            table=COLLECTIONS_TABLE,
            filters=[Filter(field="user_id", value=me)],
            descending=True,
        )
        store = ReconciledListStore(
            client, query, predicate=field_equals("user_id", me), config=config
        )
        super().__init__(client, store)
        self.me = me

    async def create(self, name: str) -> Record:
        name = (name or "").strip()
        if not name:
            raise ValueError("Collection name cannot be empty")
        return await self.store.submit({
            "user_id": self.me,
            "name": name,
            "is_default": False,
        })

    async def delete(self, collection_id: str) -> None:
        """Empty the collection, then remove it."""
        if self.store.get(collection_id) is None:
            raise KeyError(f"Collection {collection_id} not found")
        await self.client.delete(
            COLLECTION_ITEMS_TABLE, [Filter(field="collection_id", value=collection_id)]
        )
        logger.info("Deleting collection %s for user %s", collection_id, self.me)
        await self.store.submit_delete(
            collection_id, extra_filters=[Filter(field="user_id", value=self.me)]
        )


class CollectionItemsView(StoreView):
    """
    Memberships of one collection, each joined with its item. Joined rows
    cannot come from the feed, so any change refetches.
    """

    name = "collection_items"

    def __init__(
        self,
        client: RemoteCollectionClient,
        collection_id: str,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={
            "merge_mode": MergeMode.REFETCH,
            "feed_filter": f"collection_id=eq.{collection_id}",
        })
        query = ListQuery(
            table=COLLECTION_ITEMS_TABLE,
            filters=[Filter(field="collection_id", value=collection_id)],
            descending=True,
        )

        async def _with_items(rows: List[dict]) -> List[dict]:
            return await fetch_related(client, rows, "items", "item_id", "items")

        store = ReconciledListStore(
            client,
            query,
            predicate=field_equals("collection_id", collection_id),
            config=config,
            enrich=_with_items,
        )
        super().__init__(client, store)
        self.collection_id = collection_id

    @property
    def items(self) -> List[dict]:
        """Items still on offer, in membership order."""
        items = (r.get("items") for r in self.store.records)
        return [i for i in items if i and i.get("status") == "available"]

    def _membership(self, item_id: str) -> Optional[Record]:
        for record in self.store.records:
            if str(record.get("item_id")) == str(item_id):
                return record
        return None

    async def add(self, item_id: str) -> Record:
        existing = self._membership(item_id)
        if existing is not None:
            return existing
        return await self.store.submit({
            "collection_id": self.collection_id,
            "item_id": item_id,
        })

    async def remove(self, item_id: str) -> None:
        membership = self._membership(item_id)
        if membership is None:
            raise KeyError(f"Item {item_id} is not in collection {self.collection_id}")
        await self.store.submit_delete(
            membership.id,
            extra_filters=[Filter(field="collection_id", value=self.collection_id)],
        )
