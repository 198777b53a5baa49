"""The signed-in user's own listings, newest first, whatever their status."""

import logging
from typing import Optional

from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import RemoteCollectionClient
from campus_sync.store.predicates import field_equals
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView
from campus_sync.views.feed import ITEMS_TABLE

logger = logging.getLogger(__name__)


class MyItemsView(StoreView):
    """Own rows need no profile join, so feed events merge in place."""

    name = "my_items"

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
            table=ITEMS_TABLE,
            filters=[Filter(field="user_id", value=me)],
            descending=True,
        )
        store = ReconciledListStore(
            client, query, predicate=field_equals("user_id", me), config=config
        )
        super().__init__(client, store)
        self.me = me

    async def delete_item(self, item_id: str) -> None:
        """Only while still signed in as the owner."""
        user = await self.client.current_user()
        if user is None:
            raise PermissionError("You must be logged in to delete items")
        if user.id != self.me:
            raise PermissionError("Not authorized to delete this item")
        if self.store.get(item_id) is None:
            raise KeyError(f"Item {item_id} not found")
        logger.info("Deleting own item %s", item_id)
        await self.store.submit_delete(
            item_id, extra_filters=[Filter(field="user_id", value=user.id)]
        )
