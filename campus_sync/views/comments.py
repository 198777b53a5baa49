"""Comments (and optional star ratings) on one item."""

from typing import Optional

from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import RemoteCollectionClient
from campus_sync.store.join import profile_enricher
from campus_sync.store.predicates import field_equals
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView

COMMENTS_TABLE = "comments"
MIN_RATING = 1
MAX_RATING = 5


class CommentsView(StoreView):
    """Newest first; refetches whenever a comment on this item is inserted."""

    name = "comments"

    def __init__(
        self,
        client: RemoteCollectionClient,
        item_id: str,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={
            "merge_mode": MergeMode.REFETCH,
            "feed_events": "INSERT",
            "feed_filter": f"item_id=eq.{item_id}",
        })
        query = ListQuery(
            table=COMMENTS_TABLE,
            filters=[Filter(field="item_id", value=item_id)],
            descending=True,
        )
        store = ReconciledListStore(
            client,
            query,
            predicate=field_equals("item_id", item_id),
            config=config,
            enrich=profile_enricher(client, columns="id, full_name"),
        )
        super().__init__(client, store)
        self.item_id = item_id

    async def add_comment(self, content: str, rating: Optional[int] = None) -> Record:
        text = (content or "").strip()
        if not text:
            raise ValueError("Comment cannot be empty")
        if rating == 0:
            rating = None
        if rating is not None and not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        user = await self.client.current_user()
        if user is None:
            raise PermissionError("Please login to comment")
        return await self.store.submit({
            "item_id": self.item_id,
            "user_id": user.id,
            "content": text,
            "rating": rating,
        })

    async def delete_comment(self, comment_id: str) -> None:
        """Authors may delete their own comments."""
        user = await self.client.current_user()
        if user is None:
            raise PermissionError("Please login to delete comments")
        comment = self.store.get(comment_id)
        if comment is None:
            raise KeyError(f"Comment {comment_id} not found")
        if str(comment.get("user_id")) != user.id:
            raise PermissionError("Not authorized to delete this comment")
        await self.store.submit_delete(
            comment_id, extra_filters=[Filter(field="user_id", value=user.id)]
        )

    @property
    def average_rating(self) -> Optional[float]:
        ratings = [r.get("rating") for r in self.store.records if r.get("rating")]
        if not ratings:
            return None
        return round(sum(ratings) / len(ratings), 1)
