"""Tests for collection normalisation, statistics and merge-preserving sync."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from recordsync.cache import MemoryCacheStore, collection_key
from recordsync.errors import CatalogApiError
from recordsync.models import CollectionSnapshot, NormalizedRelease
from recordsync.services.collection import (
    CollectionSynchronizer,
    ReleaseFilters,
    calculate_stats,
    normalize_release,
)
from recordsync.services.discogs import DiscogsClient, TokenAuthorizer

from discogs_fixtures import SleepRecorder, build_settings, collection_page, raw_release


def _synchronizer(
    http_client: httpx.AsyncClient,
    cache: MemoryCacheStore,
    sleep: SleepRecorder,
) -> CollectionSynchronizer:
    settings = build_settings()
    client = DiscogsClient(settings, http_client, TokenAuthorizer("t"), sleep=sleep)
    return CollectionSynchronizer(settings, client, cache, sleep=sleep)


def _pages_handler(pages: list[list[dict[str, Any]]], requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        page = int(request.url.params.get("page", "1"))
        return httpx.Response(
            200, json=collection_page(pages[page - 1], page=page, pages=len(pages))
        )

    return handler


def _enriched(release_id: int, *, master_id: int = 900) -> dict[str, Any]:
    release = normalize_release(raw_release(release_id, master_id=master_id))
    release.original_year = 1967
    release.master_genres = ["Jazz"]
    release.master_styles = ["Modal"]
    release.master_enriched = True
    return release.to_payload()


async def _seed_snapshot(cache: MemoryCacheStore, releases: list[dict[str, Any]]) -> None:
    snapshot = CollectionSnapshot(
        user_id="user-1",
        discogs_username="digger",
        last_synced="2024-01-01T00:00:00Z",
        release_count=len(releases),
        releases=releases,
    )
    await cache.put(collection_key("user-1"), snapshot.to_payload())


@pytest.mark.parametrize(
    ("artists", "expected"),
    [
        (("Nirvana (2)",), "Nirvana"),
        (("Prince",), "Prince"),
        (("Alpha", "Beta (12)"), "Alpha, Beta"),
        (("Sunn O))) (3)",), "Sunn O)))"),
        (("Album (Deluxe)",), "Album (Deluxe)"),
    ],
)
def test_normalize_release_strips_disambiguation(artists, expected) -> None:
    release = normalize_release(raw_release(1, artists=artists))

    assert release.artist == expected


def test_normalize_release_maps_fields() -> None:
    release = normalize_release(raw_release(42, master_id=7, year=1985, instance_id=9001))

    assert release.id == 42
    assert release.instance_id == 9001
    assert release.title == "Release 42"
    assert release.format == "Vinyl"
    assert release.format_details == ["LP", "Album"]
    assert release.label == "Label"
    assert release.catalog_number == "CAT-42"
    assert release.year == 1985
    assert release.original_year is None
    assert release.master_id == 7
    assert release.master_enriched is False
    assert release.discogs_url == "https://www.discogs.com/release/42"
    assert release.image_url == "https://img.test/42.jpg"
    assert release.thumb_url == "https://img.test/42-thumb.jpg"


def test_normalize_release_defaults_for_sparse_payload() -> None:
    release = normalize_release({"id": 5, "instance_id": 6, "basic_information": {"id": 5}})

    assert release.artist == "Unknown Artist"
    assert release.format == "Unknown"
    assert release.label == "Unknown"
    assert release.catalog_number == ""
    assert release.year is None
    assert release.master_id is None


def test_calculate_stats_prefers_enriched_values() -> None:
    first = normalize_release(
        raw_release(1, artists=("A",), year=1995, genres=("Rock",), date_added="2024-03-01T10:00:00-08:00")
    )
    first.original_year = 1971
    first.master_genres = ["Blues"]
    first.master_styles = ["Delta Blues"]
    second = normalize_release(
        raw_release(2, artists=("A",), year=1988, format_name="CD", date_added="2024-05-01T10:00:00-08:00")
    )
    third = normalize_release(raw_release(3, artists=("B",), year=0, genres=("Electronic",)))

    stats = calculate_stats([first, second, third])

    assert stats.total_items == 3
    assert stats.unique_genres == ["Blues", "Electronic", "Rock"]
    assert stats.unique_styles == ["Delta Blues", "Indie Rock"]
    assert stats.unique_formats == ["CD", "Vinyl"]
    assert stats.unique_artists == 2
    assert stats.earliest_year == 1971
    assert stats.latest_year == 1988
    assert stats.decade_counts == {"1970s": 1, "1980s": 1}
    assert stats.genre_counts == {"Blues": 1, "Rock": 1, "Electronic": 1}
    assert stats.format_counts == {"Vinyl": 2, "CD": 1}
    assert stats.artist_counts == {"A": 2, "B": 1}
    assert stats.last_added == "2024-05-01T10:00:00-08:00"


def test_calculate_stats_empty() -> None:
    stats = calculate_stats([])

    assert stats.total_items == 0
    assert stats.earliest_year is None
    assert stats.last_added is None


@pytest.mark.anyio("asyncio")
async def test_get_all_releases_paginates_with_delay() -> None:
    requests: list[httpx.Request] = []
    pages = [[raw_release(1), raw_release(2)], [raw_release(3)], [raw_release(4)]]
    progress: list[tuple[int, int]] = []
    sleep = SleepRecorder()

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(_pages_handler(pages, requests))
    ) as http_client:
        synchronizer = _synchronizer(http_client, MemoryCacheStore(), sleep)
        synchronizer.set_username("digger")
        releases = await synchronizer.get_all_releases(
            lambda page, total: progress.append((page, total))
        )

    assert [release.id for release in releases] == [1, 2, 3, 4]
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert sleep.calls == [0.5, 0.5]
    assert [request.url.params["page"] for request in requests] == ["1", "2", "3"]
    assert all(request.url.params["per_page"] == "100" for request in requests)
    assert all(request.url.params["sort"] == "added" for request in requests)
    assert all(request.url.params["sort_order"] == "desc" for request in requests)


@pytest.mark.anyio("asyncio")
async def test_username_resolved_from_identity_once() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/oauth/identity":
            return httpx.Response(200, json={"id": 1, "username": "crate digger"})
        return httpx.Response(200, json=collection_page([]))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        synchronizer = _synchronizer(http_client, MemoryCacheStore(), SleepRecorder())
        await synchronizer.get_collection_page()
        await synchronizer.get_collection_page()

    assert paths.count("/oauth/identity") == 1
    assert await synchronizer.get_username() == "crate digger"


@pytest.mark.anyio("asyncio")
async def test_sync_preserves_enrichment_for_unchanged_releases() -> None:
    cache = MemoryCacheStore()
    await _seed_snapshot(cache, [_enriched(1)])
    pages = [[raw_release(1, master_id=900), raw_release(2, master_id=901)]]

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(_pages_handler(pages, []))
    ) as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())
        result = await synchronizer.sync_collection("user-1", "digger")

    assert result.added_count == 1
    assert result.deleted_count == 0
    stored = CollectionSnapshot.model_validate(await cache.get(collection_key("user-1")))
    by_id = stored.release_map()
    assert by_id[1].master_enriched is True
    assert by_id[1].original_year == 1967
    assert by_id[1].master_genres == ["Jazz"]
    assert by_id[1].master_styles == ["Modal"]
    assert by_id[2].master_enriched is False
    assert stored.release_count == 2
    assert stored.stats.genre_counts == {"Jazz": 1, "Rock": 1}


@pytest.mark.anyio("asyncio")
async def test_sync_counts_and_drops_removed_releases() -> None:
    cache = MemoryCacheStore()
    await _seed_snapshot(
        cache,
        [
            normalize_release(raw_release(1)).to_payload(),
            normalize_release(raw_release(2)).to_payload(),
        ],
    )
    pages = [[raw_release(1)]]

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(_pages_handler(pages, []))
    ) as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())
        result = await synchronizer.sync_collection("user-1", "digger")

    assert result.deleted_count == 1
    assert result.added_count == 0
    assert [release.id for release in result.snapshot.releases] == [1]
    payload = result.to_payload()
    assert payload["deletedCount"] == 1
    assert payload["releaseCount"] == 1


@pytest.mark.anyio("asyncio")
async def test_sync_failure_leaves_previous_snapshot_untouched() -> None:
    cache = MemoryCacheStore()
    await _seed_snapshot(cache, [_enriched(1), _enriched(2)])
    before = await cache.get(collection_key("user-1"))

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        if page == 2:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json=collection_page([raw_release(1)], page=1, pages=2))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())
        with pytest.raises(CatalogApiError):
            await synchronizer.sync_collection("user-1", "digger")

    assert await cache.get(collection_key("user-1")) == before


@pytest.mark.anyio("asyncio")
async def test_master_release_is_cached_by_master_id() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": 77, "year": 1959})

    cache = MemoryCacheStore()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())
        first = await synchronizer.get_master_release(77)
        second = await synchronizer.get_master_release(77)

    assert first == second == {"id": 77, "year": 1959}
    assert len(requests) == 1
    assert requests[0].url.path == "/masters/77"


@pytest.mark.anyio("asyncio")
async def test_missing_master_resolves_to_none() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Master Release not found."})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        synchronizer = _synchronizer(http_client, MemoryCacheStore(), SleepRecorder())
        assert await synchronizer.get_master_release(1) is None


@pytest.mark.anyio("asyncio")
async def test_filtered_releases_and_stats_from_snapshot() -> None:
    cache = MemoryCacheStore()
    jazz = _enriched(1)
    rock = normalize_release(raw_release(2, title="Loud Record", year=1994)).to_payload()
    cd = normalize_release(raw_release(3, format_name="CD", year=2005)).to_payload()
    await _seed_snapshot(cache, [jazz, rock, cd])

    async with httpx.AsyncClient() as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())

    async def ids(**filters: str) -> list[int]:
        releases = await synchronizer.get_filtered_releases("user-1", ReleaseFilters(**filters))
        return [release.id for release in releases]

    assert await ids(genre="Jazz") == [1]
    assert await ids(genre="Rock") == [2, 3]
    assert await ids(style="Modal") == [1]
    assert await ids(format="CD") == [3]
    assert await ids(decade="1960s") == [1]
    assert await ids(decade="1990s") == [2]
    assert await ids(search="loud") == [2]
    assert await ids() == [1, 2, 3]
    assert await synchronizer.get_filtered_releases("missing") == []
    assert await synchronizer.get_collection_stats("missing") is None

    stats = await synchronizer.get_collection_stats("user-1")
    assert stats is not None
    assert stats["releaseCount"] == 3
    assert stats["lastSynced"] == "2024-01-01T00:00:00Z"


def test_normalized_release_round_trips_through_payload() -> None:
    release = normalize_release(raw_release(3, master_id=4))
    payload = release.to_payload()

    assert payload["masterEnriched"] is False
    assert payload["instanceId"] == 30
    assert NormalizedRelease.model_validate(payload) == release


@pytest.mark.anyio("asyncio")
async def test_identity_without_username_is_bad_gateway() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 1})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        synchronizer = _synchronizer(http_client, MemoryCacheStore(), SleepRecorder())
        with pytest.raises(CatalogApiError) as excinfo:
            await synchronizer.get_username()

    assert excinfo.value.status == 502


@pytest.mark.anyio("asyncio")
async def test_get_cached_collection_reads_stored_snapshot() -> None:
    cache = MemoryCacheStore()
    await _seed_snapshot(cache, [_enriched(1)])

    async with httpx.AsyncClient() as http_client:
        synchronizer = _synchronizer(http_client, cache, SleepRecorder())
        snapshot = await synchronizer.get_cached_collection("user-1")
        missing = await synchronizer.get_cached_collection("user-2")

    assert snapshot is not None
    assert snapshot.discogs_username == "digger"
    assert snapshot.release_map()[1].master_enriched is True
    assert missing is None
