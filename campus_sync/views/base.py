"""
Store View — the lifecycle every data-bearing screen shares.

  open()    mount: subscribe to the feed, then load
  focus()   regain focus: resubscribe if the feed dropped, then refresh
  close()   unmount: release the feed, discard late results
"""

import logging
from typing import List, Optional

from campus_sync.models.record import Record
from campus_sync.models.store import StoreSnapshot, StoreStatus
from campus_sync.remote.contract import (
    FetchError,
    RemoteCollectionClient,
    SubscriptionError,
)
from campus_sync.store.reconciled import ReconciledListStore

logger = logging.getLogger(__name__)


class StoreView:
    """Owns exactly one ReconciledListStore for its mounted lifetime."""

    name = "view"

    def __init__(self, client: RemoteCollectionClient, store: ReconciledListStore):
        self.client = client
        self.store = store
        self.subscription_error: Optional[str] = None

    @property
    def records(self) -> List[Record]:
        return self.store.records

    @property
    def status(self) -> StoreStatus:
        return self.store.status

    def snapshot(self) -> StoreSnapshot:
        return self.store.snapshot()

    async def open(self) -> List[Record]:
        """
        Subscribe first so nothing committed during the initial fetch is
        missed, then load. A feed that cannot be established does not block
        loading; ``focus()`` tries again.
        """
        self._subscribe()
        records = await self.store.initialize()
        await self.after_load()
        return records

    async def focus(self) -> List[Record]:
        """Screen regained focus."""
        if not self.store.attached:
            self._subscribe()
        records = await self.store.refresh()
        await self.after_load()
        return records

    async def refresh(self) -> List[Record]:
        """Pull-to-refresh."""
        records = await self.store.refresh()
        await self.after_load()
        return records

    async def retry(self) -> Optional[List[Record]]:
        """Retry after a failed load; returns None if it failed again."""
        try:
            return await self.refresh()
        except FetchError as e:
            logger.info("Retry of %s failed: %s", self.name, e)
            return None

    async def after_load(self) -> None:
        """Hook for follow-up work after a successful (re)load."""

    def close(self) -> None:
        self.store.dispose()

    def _subscribe(self) -> None:
        try:
            self.store.attach()
            self.subscription_error = None
        except SubscriptionError as e:
            self.subscription_error = str(e)
            logger.warning("%s could not subscribe: %s", self.name, e)
