"""Store configuration, status and snapshots."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from campus_sync.models.record import Record


class StoreStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class MergeMode(str, Enum):
    """How a store folds change-feed events into its list."""
    FINE_GRAINED = "fine_grained"   # Patch the single changed row by id
    REFETCH = "refetch"             # Treat any event as "something changed", refetch all


class StoreConfig(BaseModel):
    """Configuration for a ReconciledListStore."""

    merge_mode: MergeMode = MergeMode.FINE_GRAINED
    fetch_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    id_field: str = "id"
    order_field: str = "created_at"
    # Change-feed event types to subscribe to: "*", "INSERT", "UPDATE", "DELETE"
    feed_events: str = "*"
    # Server-side feed filter, e.g. "item_id=eq.42"
    feed_filter: Optional[str] = None


class StoreSnapshot(BaseModel):
    """Read-only view of a store, re-rendered on every mutation."""

    status: StoreStatus
    records: List[Record] = []
    error: Optional[str] = None
    has_more: bool = False
    pending: int = 0
