"""Resumable backfill of master-release metadata.

Each call to :meth:`EnrichmentEngine.enrich_batch` handles at most one batch
so that it fits inside a bounded execution window. The work list is always
recomputed from the stored snapshot; progress counters are checkpointed so a
later call resumes where an interrupted one stopped.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from ..cache import CacheStore, progress_key
from ..config import Settings
from ..models import (
    CollectionSnapshot,
    EnrichmentNeeded,
    EnrichmentProgress,
    EnrichmentResult,
    NormalizedRelease,
)
from ..utils import isoformat_now
from .collection import CollectionSynchronizer, calculate_stats
from .rate_limit import SleepFunc

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
# 1.1s between requests is roughly 54 req/min, under the 60 req/min quota.
REQUEST_DELAY_SECONDS = 1.1
SAVE_INTERVAL = 25


class EnrichmentEngine:
    """Fills ``originalYear`` and master genres/styles for a stored collection."""

    def __init__(
        self,
        settings: Settings,
        collection: CollectionSynchronizer,
        cache: CacheStore,
        *,
        sleep: SleepFunc = asyncio.sleep,
        request_delay: float = REQUEST_DELAY_SECONDS,
        save_interval: int = SAVE_INTERVAL,
    ):
        self._settings = settings
        self._collection = collection
        self._cache = cache
        self._sleep = sleep
        self._request_delay = request_delay
        self._save_interval = max(1, save_interval)

    async def get_progress(self, user_id: str) -> EnrichmentProgress | None:
        raw = await self._cache.get(progress_key(user_id))
        if not raw:
            return None
        try:
            return EnrichmentProgress.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring unreadable enrichment progress for %s", user_id)
            return None

    async def get_enrichment_needed(self, user_id: str) -> EnrichmentNeeded:
        """Classify every stored release by its enrichment state."""

        snapshot = await self._collection.get_cached_collection(user_id)
        if snapshot is None:
            return EnrichmentNeeded()

        needed = EnrichmentNeeded(total=len(snapshot.releases))
        for release in snapshot.releases:
            if not release.master_id:
                needed.no_master_id += 1
            elif release.master_enriched:
                needed.already_enriched += 1
            else:
                needed.needs_enrichment += 1
        return needed

    async def enrich_batch(
        self, user_id: str, max_items: int | None = None
    ) -> EnrichmentResult:
        """Enrich up to ``max_items`` releases and report what is left.

        ``remaining`` counts releases this pass has not reached yet. Releases
        that failed stay unenriched and are picked up by a later pass.
        """

        limit = max_items if max_items and max_items > 0 else self._settings.enrichment_batch_size
        snapshot = await self._collection.get_cached_collection(user_id)
        if snapshot is None:
            return EnrichmentResult()

        work = [release for release in snapshot.releases if release.needs_enrichment]
        if not work:
            await self._cache.delete(progress_key(user_id))
            return EnrichmentResult()

        progress = await self._load_or_start_progress(user_id, len(work))
        batch = work[:limit]
        remaining = len(work) - len(batch)
        errors = 0
        since_checkpoint = 0

        try:
            for index, release in enumerate(batch):
                progress.current_release = release.display_name
                progress.last_updated_at = isoformat_now()

                if not await self._enrich_release(release, progress):
                    errors += 1
                progress.processed += 1
                since_checkpoint += 1

                if since_checkpoint >= self._save_interval:
                    await self._checkpoint(snapshot, progress)
                    since_checkpoint = 0

                if index < len(batch) - 1:
                    await self._sleep(self._request_delay)

            progress.status = "completed" if remaining == 0 else "running"
            progress.current_release = None
            progress.last_updated_at = isoformat_now()
            if remaining == 0:
                snapshot.stats = calculate_stats(snapshot.releases)
            await self._collection.save_snapshot(snapshot)
            await self._save_progress(progress)
        except Exception:
            progress.status = "failed"
            progress.last_updated_at = isoformat_now()
            try:
                await self._save_progress(progress)
            except Exception:
                logger.exception("Unable to record failed enrichment for %s", user_id)
            raise

        logger.info(
            "Enrichment batch for %s processed %s releases (%s errors, %s remaining)",
            user_id,
            len(batch),
            errors,
            remaining,
        )
        return EnrichmentResult(processed=len(batch), remaining=remaining, errors=errors)

    async def _load_or_start_progress(
        self, user_id: str, outstanding: int
    ) -> EnrichmentProgress:
        progress = await self.get_progress(user_id)
        now = isoformat_now()
        if progress is None or progress.status == "completed":
            return EnrichmentProgress(
                user_id=user_id,
                total=outstanding,
                started_at=now,
                last_updated_at=now,
                status="running",
            )

        # Resume: counters accumulate across invocations.
        progress.total = max(progress.total, progress.processed + outstanding)
        progress.status = "running"
        progress.last_updated_at = now
        return progress

    async def _enrich_release(
        self, release: NormalizedRelease, progress: EnrichmentProgress
    ) -> bool:
        """Apply master data to ``release``; return ``False`` on a fetch error."""

        master_id = release.master_id
        if not master_id:
            progress.skipped += 1
            return True
        try:
            master = await self._collection.get_master_release(master_id)
        except Exception as exc:
            logger.warning(
                "Failed to enrich release %s (master %s): %s",
                release.id,
                release.master_id,
                exc,
            )
            progress.errors += 1
            return False

        if master:
            release.original_year = master.get("year") or None
            release.master_genres = list(master.get("genres") or [])
            release.master_styles = list(master.get("styles") or [])
            release.master_enriched = True
            progress.enriched += 1
        else:
            # Nothing to copy; mark it so the release is not retried forever.
            release.master_enriched = True
            progress.skipped += 1
        return True

    async def _checkpoint(
        self, snapshot: CollectionSnapshot, progress: EnrichmentProgress
    ) -> None:
        try:
            await self._save_progress(progress)
            await self._collection.save_snapshot(snapshot)
        except Exception:
            logger.exception(
                "Enrichment checkpoint failed for %s; continuing batch",
                progress.user_id,
            )

    async def _save_progress(self, progress: EnrichmentProgress) -> None:
        await self._cache.put(
            progress_key(progress.user_id),
            progress.to_payload(),
            ttl_seconds=self._settings.progress_ttl_seconds,
        )
