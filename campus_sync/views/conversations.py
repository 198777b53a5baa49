"""
Conversation list — the inbox, grouped by counterpart.

Archiving is per user: a ``conversation_visibility`` row hides a thread from
one participant only. Threads hidden by the backend's row-level security
still show in the archive tab as "archived only" entries.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from campus_sync.models.conversation import Conversation
from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.models.record import Record
from campus_sync.models.store import MergeMode, StoreConfig
from campus_sync.remote.contract import FetchError, MutationError, RemoteCollectionClient
from campus_sync.store.join import attach_related
from campus_sync.store.predicates import involving
from campus_sync.store.reconciled import ReconciledListStore
from campus_sync.views.base import StoreView

logger = logging.getLogger(__name__)

VISIBILITY_TABLE = "conversation_visibility"
PROFILES_TABLE = "profiles"


async def hide_conversation(client: RemoteCollectionClient, me: str, other: str) -> None:
    """Archive a thread for ``me``; re-archiving refreshes ``hidden_at``."""
    hidden_at = datetime.utcnow().isoformat()
    try:
        await client.insert(VISIBILITY_TABLE, {
            "user_id": me,
            "other_user_id": other,
            "hidden_at": hidden_at,
        })
    except MutationError as e:
        if not e.is_unique_violation:
            raise
        await client.update(
            VISIBILITY_TABLE,
            [Filter(field="user_id", value=me), Filter(field="other_user_id", value=other)],
            {"hidden_at": hidden_at},
        )
    logger.info("Archived conversation %s -> %s", me, other)


async def unhide_conversation(client: RemoteCollectionClient, me: str, other: str) -> None:
    await client.delete(
        VISIBILITY_TABLE,
        [Filter(field="user_id", value=me), Filter(field="other_user_id", value=other)],
    )
    logger.info("Unarchived conversation %s -> %s", me, other)


def group_conversations(
    messages: List[Record],
    me: str,
    archived: Dict[str, Optional[datetime]],
    profiles: Dict[str, dict],
) -> Tuple[List[Conversation], List[Conversation]]:
    """
    Group messages (newest first) by counterpart into (active, archived),
    each sorted newest activity first.
    """
    latest: Dict[str, Record] = {}
    unread: Dict[str, int] = {}
    for message in messages:
        sender = str(message.get("sender_id"))
        receiver = str(message.get("receiver_id"))
        other = receiver if sender == me else sender
        if other not in latest or message.created_at > latest[other].created_at:
            latest[other] = message
        if receiver == me and not message.get("is_read"):
            unread[other] = unread.get(other, 0) + 1

    active, hidden = [], []
    for other, message in latest.items():
        convo = Conversation(
            user_id=other,
            last_message=message,
            last_activity=message.created_at,
            unread_count=unread.get(other, 0),
            profile=profiles.get(other),
            archived=other in archived,
            archived_at=archived.get(other),
        )
        (hidden if convo.archived else active).append(convo)

    for other, hidden_at in archived.items():
        if other in latest:
            continue
        hidden.append(Conversation(
            user_id=other,
            last_activity=hidden_at or datetime.utcnow(),
            profile=profiles.get(other),
            archived=True,
            archived_at=hidden_at,
            archived_only=True,
        ))

    active.sort(key=lambda c: c.last_activity, reverse=True)
    hidden.sort(key=lambda c: c.last_activity, reverse=True)
    return active, hidden


class ConversationsView(StoreView):
    """Refetches on any message change involving the signed-in user."""

    name = "conversations"

    def __init__(
        self,
        client: RemoteCollectionClient,
        me: str,
        scan_limit: int = 200,
        config: Optional[StoreConfig] = None,
    ):
        if config is None:
            config = StoreConfig()
        config = config.model_copy(update={"merge_mode": MergeMode.REFETCH})
        query = ListQuery(
            table="messages",
            any_of=[
                [Filter(field="sender_id", value=me)],
                [Filter(field="receiver_id", value=me)],
            ],
            descending=True,
            limit=scan_limit,
        )
        store = ReconciledListStore(client, query, predicate=involving(me), config=config)
        super().__init__(client, store)
        self.me = me
        self._archived: Dict[str, Optional[datetime]] = {}
        self._profiles: Dict[str, dict] = {}

    async def after_load(self) -> None:
        await self._load_archived()
        await self._load_profiles()

    async def _load_archived(self) -> None:
        try:
            rows = await self.client.fetch(ListQuery(
                table=VISIBILITY_TABLE,
                columns="other_user_id, hidden_at",
                filters=[Filter(field="user_id", value=self.me)],
                order_by="hidden_at",
            ))
        except FetchError as e:
            logger.warning("Loading archived conversations failed: %s", e)
            return
        self._archived = {
            str(r["other_user_id"]): _parse_time(r.get("hidden_at")) for r in rows
        }

    async def _load_profiles(self) -> None:
        ids = set(self._archived)
        for message in self.store.records:
            sender = str(message.get("sender_id"))
            ids.add(str(message.get("receiver_id")) if sender == self.me else sender)
        ids -= set(self._profiles)
        if not ids:
            return
        try:
            rows = await self.client.fetch(ListQuery(
                table=PROFILES_TABLE,
                columns="id, full_name, email",
                filters=[Filter(field="id", op=FilterOp.IN, value=sorted(ids))],
                order_by="id",
            ))
        except FetchError as e:
            logger.warning("Loading %d profiles failed: %s", len(ids), e)
            return
        joined = attach_related([{"id": i} for i in ids], rows, "id", "profile")
        for entry in joined:
            if entry["profile"] is not None:
                self._profiles[entry["id"]] = entry["profile"]

    def _grouped(self) -> Tuple[List[Conversation], List[Conversation]]:
        return group_conversations(self.store.records, self.me, self._archived, self._profiles)

    @property
    def active(self) -> List[Conversation]:
        return self._grouped()[0]

    @property
    def archived(self) -> List[Conversation]:
        return self._grouped()[1]

    @property
    def unread_total(self) -> int:
        return sum(c.unread_count for c in self.active)

    async def archive(self, other: str) -> None:
        """Move a thread to the archive tab now; undo if the backend refuses."""
        previous = self._archived.get(other, _MISSING)
        self._archived[other] = datetime.utcnow()
        try:
            await hide_conversation(self.client, self.me, other)
        except MutationError:
            _restore(self._archived, other, previous)
            raise

    async def unarchive(self, other: str) -> None:
        previous = self._archived.pop(other, _MISSING)
        try:
            await unhide_conversation(self.client, self.me, other)
        except MutationError:
            _restore(self._archived, other, previous)
            raise


_MISSING = object()


def _restore(mapping: dict, key: str, previous) -> None:
    if previous is _MISSING:
        mapping.pop(key, None)
    else:
        mapping[key] = previous


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
