"""campus_sync data models."""

from campus_sync.models.conversation import Conversation
from campus_sync.models.identity import UserIdentity
from campus_sync.models.query import Filter, FilterOp, ListQuery
from campus_sync.models.record import (
    ChangeEvent,
    ChangeKind,
    OptimisticKind,
    OptimisticRecord,
    Record,
)
from campus_sync.models.store import MergeMode, StoreConfig, StoreSnapshot, StoreStatus

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "Conversation",
    "Filter",
    "FilterOp",
    "ListQuery",
    "MergeMode",
    "OptimisticKind",
    "OptimisticRecord",
    "Record",
    "StoreConfig",
    "StoreSnapshot",
    "StoreStatus",
    "UserIdentity",
]
