"""Direct-message thread between the signed-in user and one other user."""

import logging
from typing import List, Optional

from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import MutationError, RemoteCollectionClient
from campus_sync.store.predicates import between_participants
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView
from campus_sync.views.conversations import hide_conversation

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


def thread_query(me: str, other: str, limit: int = 500) -> ListQuery:
    """Messages between two users, in either direction, oldest first."""
    return ListQuery(
        table=MESSAGES_TABLE,
        any_of=[
            [Filter(field="sender_id", value=me), Filter(field="receiver_id", value=other)],
            [Filter(field="sender_id", value=other), Filter(field="receiver_id", value=me)],
        ],
        order_by="created_at",
        descending=False,
        limit=limit,
    )


class ChatView(StoreView):
    """
    Fine-grained chat: every message event between the pair is merged by id,
    and sends appear instantly as optimistic entries.
    """

    name = "chat"

    def __init__(
        self,
        client: RemoteCollectionClient,
        me: str,
        other: str,
        history_limit: int = 500,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={"merge_mode": MergeMode.FINE_GRAINED})
        store = ReconciledListStore(
            client,
            thread_query(me, other, history_limit),
            predicate=between_participants(me, other),
            config=config,
        )
        super().__init__(client, store)
        self.me = me
        self.other = other

    async def after_load(self) -> None:
        await self.mark_read()

    async def mark_read(self) -> int:
        """Mark unread incoming messages as read. Returns how many were marked."""
        unread = [
            r.id for r in self.store.records
            if not r.is_provisional
            and str(r.get("receiver_id")) == self.me
            and not r.get("is_read")
        ]
        if not unread:
            return 0
        try:
            await self.client.update(
                MESSAGES_TABLE,
                [Filter(field="id", op=FilterOp.IN, value=unread)],
                {"is_read": True},
            )
        except MutationError as e:
            # Read receipts are best effort; the thread stays usable.
            logger.warning("Marking %d messages read failed: %s", len(unread), e)
            return 0
        logger.debug("Marked %d messages as read", len(unread))
        return len(unread)

    async def send(self, text: str) -> Optional[Record]:
        """
        Send a message. Blank text is ignored. On failure the optimistic
        entry is withdrawn and the MutationError propagates.
        """
        content = (text or "").strip()
        if not content:
            return None
        return await self.store.submit({
            "sender_id": self.me,
            "receiver_id": self.other,
            "content": content,
        })

    async def archive(self) -> None:
        """Hide this conversation from the signed-in user's inbox."""
        await hide_conversation(self.client, self.me, self.other)

    @property
    def messages(self) -> List[Record]:
        return self.store.records
