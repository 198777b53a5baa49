"""Likes — the signed-in user's reactions to items."""

from typing import Optional, Set

from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import RemoteCollectionClient
from campus_sync.store.predicates import field_equals
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView

REACTIONS_TABLE = "reactions"


class ReactionsView(StoreView):
    """A like toggles instantly and rolls back if the backend refuses it."""

    name = "reactions"

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
            table=REACTIONS_TABLE,
            filters=[Filter(field="user_id", value=me)],
        )
        store = ReconciledListStore(
            client, query, predicate=field_equals("user_id", me), config=config
        )
        super().__init__(client, store)
        self.me = me

    def _reaction_for(self, item_id: str) -> Optional[Record]:
        for record in self.store.records:
            if str(record.get("item_id")) == str(item_id):
                return record
        return None

    def is_liked(self, item_id: str) -> bool:
        return self._reaction_for(item_id) is not None

    @property
    def liked_items(self) -> Set[str]:
        return {str(r.get("item_id")) for r in self.store.records}

    async def toggle(self, item_id: str) -> bool:
        """Like or unlike an item. Returns whether it is now liked."""
        reaction = self._reaction_for(item_id)
        if reaction is None:
            await self.store.submit({"item_id": item_id, "user_id": self.me})
            return True
        if reaction.is_provisional:
            # The like is still in flight; unliking now would race it.
            return True
        await self.store.submit_delete(
            reaction.id, extra_filters=[Filter(field="user_id", value=self.me)]
        )
        return False
