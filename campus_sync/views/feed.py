"""Marketplace item feed — newest available items first, paged."""

import logging
from typing import List, Optional

from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import RemoteCollectionClient
from campus_sync.store.join import profile_enricher
from campus_sync.store.predicates import broadcast
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView

logger = logging.getLogger(__name__)

ITEMS_TABLE = "items"
ALL_CATEGORIES = "All"
CATEGORIES = [ALL_CATEGORIES, "Books", "Notes", "Electronics", "Furniture", "Clothing", "Other"]


def feed_query(page_size: int = 10) -> ListQuery:
    return ListQuery(
        table=ITEMS_TABLE,
        filters=[Filter(field="status", value="available")],
        order_by="created_at",
        descending=True,
        limit=page_size,
    )


class FeedView(StoreView):
    """
    Coarse-grained feed: the items table's change feed is only a "something
    changed" signal, so any event triggers a full refetch (profiles are
    joined onto every page, which a bare feed row cannot carry).
    """

    name = "feed"

    def __init__(
        self,
        client: RemoteCollectionClient,
        page_size: int = 10,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={"merge_mode": MergeMode.REFETCH})
        store = ReconciledListStore(
            client,
            feed_query(page_size),
            predicate=broadcast(),
            config=config,
            enrich=profile_enricher(client),
        )
        super().__init__(client, store)

    async def load_more(self) -> List[Record]:
        """Next page (end of list reached)."""
        return await self.store.load_more()

    def filtered(self, category: str = ALL_CATEGORIES, search: str = "") -> List[Record]:
        """Local category + text filter over title, description and author name."""
        items = self.store.records
        if category and category != ALL_CATEGORIES:
            items = [i for i in items if i.get("category") == category]
        needle = (search or "").strip().lower()
        if needle:
            items = [i for i in items if _matches_search(i, needle)]
        return items

    async def delete_item(self, item_id: str) -> None:
        """Delete one of the signed-in user's own items."""
        user = await self.client.current_user()
        if user is None:
            raise PermissionError("You must be logged in to delete items")
        item = self.store.get(item_id)
        if item is None:
            raise KeyError(f"Item {item_id} is not in the feed")
        if str(item.get("user_id")) != user.id:
            raise PermissionError("Not authorized to delete this item")
        logger.info("Deleting item %s as user %s", item_id, user.id)
        await self.store.submit_delete(
            item_id, extra_filters=[Filter(field="user_id", value=user.id)]
        )


def _matches_search(item: Record, needle: str) -> bool:
    profile = item.get("profiles") or {}
    haystacks = [
        item.get("title"),
        item.get("description"),
        profile.get("full_name"),
    ]
    return any(h and needle in str(h).lower() for h in haystacks)
