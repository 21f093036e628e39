"""Per-owner guards around sync and enrichment runs."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ..cache import CacheStore, last_sync_key, lease_key
from ..config import Settings
from ..errors import OwnerBusyError, SyncCooldownError
from ..models import EnrichmentResult, SyncResult
from .collection import CollectionSynchronizer, ProgressCallback
from .enrichment import EnrichmentEngine

logger = logging.getLogger(__name__)

LAST_SYNC_TTL_SECONDS = 86_400


class SyncCoordinator:
    """Serialises sync and enrichment per owner with a short-lived lease."""

    def __init__(
        self,
        settings: Settings,
        collection: CollectionSynchronizer,
        enrichment: EnrichmentEngine,
        cache: CacheStore,
    ):
        self._settings = settings
        self._collection = collection
        self._enrichment = enrichment
        self._cache = cache

    @asynccontextmanager
    async def owner_lease(self, user_id: str) -> AsyncIterator[None]:
        key = lease_key(user_id)
        acquired = await self._cache.acquire_lease(key, self._settings.lease_ttl_seconds)
        if not acquired:
            raise OwnerBusyError(user_id)
        try:
            yield
        finally:
            await self._cache.release_lease(key)

    async def cooldown_remaining(self, user_id: str) -> int:
        """Seconds until another sync is allowed, zero when one may start."""

        cooldown = self._settings.sync_cooldown_seconds
        if cooldown <= 0:
            return 0
        last_sync = await self._cache.get(last_sync_key(user_id))
        if not isinstance(last_sync, (int, float)):
            return 0
        elapsed = time.time() - float(last_sync)
        return max(0, int(cooldown - elapsed))

    async def sync(
        self,
        user_id: str,
        username: str | None = None,
        *,
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Sync one owner's collection once the cooldown and lease allow it.

        Without ``username`` the account name is resolved from the identity
        endpoint, which only happens after both guards have passed.
        """

        if not force:
            wait = await self.cooldown_remaining(user_id)
            if wait > 0:
                raise SyncCooldownError(wait)

        async with self.owner_lease(user_id):
            resolved = username or await self._collection.get_username()
            result = await self._collection.sync_collection(
                user_id, resolved, on_progress
            )
            await self._cache.put(
                last_sync_key(user_id), time.time(), ttl_seconds=LAST_SYNC_TTL_SECONDS
            )
        return result

    async def enrich(self, user_id: str, max_items: int | None = None) -> EnrichmentResult:
        async with self.owner_lease(user_id):
            return await self._enrichment.enrich_batch(user_id, max_items)
