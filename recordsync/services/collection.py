"""Collection fetching, normalisation, statistics and merge-preserving sync."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from ..cache import CacheStore, collection_key, master_key
from ..config import Settings
from ..errors import CatalogApiError
from ..models import CollectionSnapshot, CollectionStats, NormalizedRelease, SyncResult
from ..utils import isoformat_now, parse_timestamp, strip_disambiguation
from .discogs import DiscogsClient
from .rate_limit import SleepFunc

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
PAGE_DELAY_SECONDS = 0.5
RELEASE_URL = "https://www.discogs.com/release/{id}"

ProgressCallback = Callable[[int, int], None]


@dataclass(slots=True)
class ReleaseFilters:
    """Optional filters applied to a cached collection."""

    genre: str | None = None
    format: str | None = None
    decade: str | None = None
    style: str | None = None
    search: str | None = None

    def matches(self, release: NormalizedRelease) -> bool:
        if self.genre and self.genre not in release.effective_genres:
            return False
        if self.format and release.format != self.format:
            return False
        if self.style and self.style not in release.effective_styles:
            return False
        if self.decade:
            try:
                start = int(self.decade.rstrip("s"))
            except ValueError:
                return False
            year = release.effective_year
            if not year or not start <= year < start + 10:
                return False
        if self.search:
            needle = self.search.lower()
            haystacks = (release.title, release.artist, release.label)
            if not any(needle in value.lower() for value in haystacks):
                return False
        return True


def normalize_release(raw: dict[str, Any]) -> NormalizedRelease:
    """Map a raw collection entry onto :class:`NormalizedRelease`."""

    info = raw.get("basic_information") or {}
    artists = [a for a in info.get("artists") or [] if isinstance(a, dict)]
    formats = [f for f in info.get("formats") or [] if isinstance(f, dict)]
    labels = [lbl for lbl in info.get("labels") or [] if isinstance(lbl, dict)]
    primary_artist = artists[0] if artists else {}
    primary_format = formats[0] if formats else {}
    primary_label = labels[0] if labels else {}

    artist_name = primary_artist.get("name") or "Unknown Artist"
    if len(artists) > 1:
        artist_name = ", ".join(a.get("name") or "" for a in artists)
    artist_name = strip_disambiguation(artist_name)

    release_id = int(info.get("id") or raw.get("id") or 0)
    return NormalizedRelease(
        id=release_id,
        instance_id=int(raw.get("instance_id") or 0),
        title=info.get("title") or "",
        artist=artist_name,
        artist_id=int(primary_artist.get("id") or 0),
        year=info.get("year") or None,
        original_year=None,
        format=primary_format.get("name") or "Unknown",
        format_details=list(primary_format.get("descriptions") or []),
        label=primary_label.get("name") or "Unknown",
        catalog_number=primary_label.get("catno") or "",
        genres=list(info.get("genres") or []),
        styles=list(info.get("styles") or []),
        image_url=info.get("cover_image") or "",
        thumb_url=info.get("thumb") or "",
        discogs_url=RELEASE_URL.format(id=release_id),
        date_added=raw.get("date_added") or "",
        rating=int(raw.get("rating") or 0),
        master_id=info.get("master_id") or None,
        master_enriched=False,
    )


def calculate_stats(releases: list[NormalizedRelease]) -> CollectionStats:
    """Aggregate genre, style, format, decade and artist statistics."""

    genre_counts: Counter[str] = Counter()
    format_counts: Counter[str] = Counter()
    decade_counts: Counter[str] = Counter()
    artist_counts: Counter[str] = Counter()
    styles: set[str] = set()
    earliest: int | None = None
    latest: int | None = None
    last_added: str | None = None
    last_added_at: datetime | None = None

    for release in releases:
        genre_counts.update(release.effective_genres)
        styles.update(release.effective_styles)
        format_counts[release.format] += 1
        artist_counts[release.artist] += 1

        year = release.effective_year
        if year and year > 1900:
            earliest = year if earliest is None else min(earliest, year)
            latest = year if latest is None else max(latest, year)
            decade_counts[f"{year // 10 * 10}s"] += 1

        added_at = parse_timestamp(release.date_added)
        if added_at is not None and (last_added_at is None or added_at > last_added_at):
            last_added_at = added_at
            last_added = release.date_added

    if last_added is None and releases:
        last_added = releases[0].date_added or None

    return CollectionStats(
        total_items=len(releases),
        unique_genres=sorted(genre_counts),
        unique_formats=sorted(format_counts),
        unique_styles=sorted(styles),
        unique_artists=len(artist_counts),
        earliest_year=earliest,
        latest_year=latest,
        last_added=last_added,
        genre_counts=dict(genre_counts),
        format_counts=dict(format_counts),
        decade_counts=dict(decade_counts),
        artist_counts=dict(artist_counts),
    )


class CollectionSynchronizer:
    """Mirrors a user's Discogs collection into the cache store."""

    def __init__(
        self,
        settings: Settings,
        client: DiscogsClient,
        cache: CacheStore,
        *,
        username: str | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._settings = settings
        self._client = client
        self._cache = cache
        self._username = username
        self._sleep = sleep

    def set_username(self, username: str) -> None:
        self._username = username

    async def get_username(self) -> str:
        """Return the configured username, resolving it from identity once."""

        if self._username:
            return self._username
        identity = await self._client.get_identity()
        username = identity.get("username") if isinstance(identity, dict) else None
        if not username:
            raise CatalogApiError(
                502, "Identity response did not include a username"
            )
        self._username = str(username)
        return self._username

    async def get_collection_page(
        self, page: int = 1, per_page: int = PAGE_SIZE
    ) -> dict[str, Any]:
        username = await self.get_username()
        return await self._client.get_collection_page(username, page, per_page)

    async def get_all_releases(
        self, on_progress: ProgressCallback | None = None
    ) -> list[NormalizedRelease]:
        """Fetch every page of the collection, newest additions first.

        Any failure propagates; callers never see a partial collection.
        """

        releases: list[NormalizedRelease] = []
        page = 1
        total_pages = 1

        while page <= total_pages:
            response = await self.get_collection_page(page, PAGE_SIZE)
            pagination = response.get("pagination") or {}
            total_pages = int(pagination.get("pages") or 0)
            releases.extend(
                normalize_release(raw)
                for raw in response.get("releases") or []
                if isinstance(raw, dict)
            )
            if on_progress is not None:
                on_progress(page, total_pages)

            page += 1
            if page <= total_pages:
                await self._sleep(PAGE_DELAY_SECONDS)

        return releases

    async def get_master_release(self, master_id: int) -> dict[str, Any] | None:
        """Return the master payload, consulting the shared master cache first.

        ``None`` means the master resolved to nothing usable. Transport and
        API errors other than 404 propagate.
        """

        key = master_key(master_id)
        cached = await self._cache.get(key)
        if cached:
            return cached

        try:
            master = await self._client.get_master(master_id)
        except CatalogApiError as exc:
            if exc.status == 404:
                logger.info("Master release %s no longer exists", master_id)
                return None
            raise
        if not isinstance(master, dict) or not master:
            return None

        await self._cache.put(key, master, ttl_seconds=self._settings.master_ttl_seconds)
        return master

    async def get_cached_collection(self, user_id: str) -> CollectionSnapshot | None:
        raw = await self._cache.get(collection_key(user_id))
        if not raw:
            return None
        try:
            return CollectionSnapshot.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable collection snapshot for %s", user_id)
            return None

    async def save_snapshot(self, snapshot: CollectionSnapshot) -> None:
        snapshot.release_count = len(snapshot.releases)
        await self._cache.put(
            collection_key(snapshot.user_id),
            snapshot.to_payload(),
            ttl_seconds=self._settings.collection_ttl_seconds,
        )

    async def sync_collection(
        self,
        user_id: str,
        username: str,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Replace the stored snapshot while carrying enrichment forward."""

        previous = await self.get_cached_collection(user_id)
        previous_by_id = previous.release_map() if previous else {}

        self.set_username(username)
        releases = await self.get_all_releases(on_progress)

        for release in releases:
            prior = previous_by_id.get(release.id)
            if prior is not None and prior.master_enriched:
                release.carry_enrichment_from(prior)

        fresh_ids = {release.id for release in releases}
        added_count = len(fresh_ids - previous_by_id.keys())
        deleted_count = len(previous_by_id.keys() - fresh_ids)

        snapshot = CollectionSnapshot(
            user_id=user_id,
            discogs_username=username,
            last_synced=isoformat_now(),
            release_count=len(releases),
            releases=releases,
            stats=calculate_stats(releases),
        )
        await self.save_snapshot(snapshot)
        logger.info(
            "Synced %s releases for %s (%s added, %s removed)",
            len(releases),
            user_id,
            added_count,
            deleted_count,
        )
        return SyncResult(
            snapshot=snapshot, added_count=added_count, deleted_count=deleted_count
        )

    async def get_collection_stats(self, user_id: str) -> dict[str, Any] | None:
        snapshot = await self.get_cached_collection(user_id)
        if snapshot is None:
            return None
        return {
            "lastSynced": snapshot.last_synced,
            "releaseCount": snapshot.release_count,
            "stats": snapshot.stats.to_payload(),
        }

    async def get_filtered_releases(
        self, user_id: str, filters: ReleaseFilters | None = None
    ) -> list[NormalizedRelease]:
        snapshot = await self.get_cached_collection(user_id)
        if snapshot is None:
            return []
        if filters is None:
            return snapshot.releases
        return [release for release in snapshot.releases if filters.matches(release)]
