"""Pydantic models describing the mirrored collection and its enrichment state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EnrichmentStatus = Literal["pending", "running", "completed", "failed"]


class _CamelModel(BaseModel):
    """Base model serialising with the camelCase keys stored in the cache."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(slots=True)
class CredentialPair:
    """An OAuth token and its secret; the secret never appears in ``repr``."""

    token: str
    secret: str = field(repr=False)

    def __repr__(self) -> str:
        return f"CredentialPair(token={self.token!r}, secret='***')"


class NormalizedRelease(_CamelModel):
    """Canonical per-item record derived from a collection entry."""

    id: int
    instance_id: int
    title: str
    artist: str
    artist_id: int = 0
    year: int | None = None
    original_year: int | None = None
    format: str = "Unknown"
    format_details: list[str] = Field(default_factory=list)
    label: str = "Unknown"
    catalog_number: str = ""
    genres: list[str] = Field(default_factory=list)
    styles: list[str] = Field(default_factory=list)
    master_genres: list[str] = Field(default_factory=list)
    master_styles: list[str] = Field(default_factory=list)
    image_url: str = ""
    thumb_url: str = ""
    discogs_url: str = ""
    date_added: str = ""
    rating: int = 0
    master_id: int | None = None
    master_enriched: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.artist} - {self.title}"

    @property
    def effective_year(self) -> int | None:
        return self.original_year or self.year

    @property
    def effective_genres(self) -> list[str]:
        return self.master_genres or self.genres

    @property
    def effective_styles(self) -> list[str]:
        return self.master_styles or self.styles

    @property
    def needs_enrichment(self) -> bool:
        return bool(self.master_id) and not self.master_enriched

    def carry_enrichment_from(self, previous: "NormalizedRelease") -> None:
        """Copy master-derived fields from an earlier enriched copy."""

        self.original_year = previous.original_year
        self.master_genres = list(previous.master_genres)
        self.master_styles = list(previous.master_styles)
        self.master_enriched = True


class CollectionStats(_CamelModel):
    """Aggregates recomputed whenever the release set changes."""

    total_items: int = 0
    unique_genres: list[str] = Field(default_factory=list)
    unique_formats: list[str] = Field(default_factory=list)
    unique_styles: list[str] = Field(default_factory=list)
    unique_artists: int = 0
    earliest_year: int | None = None
    latest_year: int | None = None
    last_added: str | None = None
    genre_counts: dict[str, int] = Field(default_factory=dict)
    format_counts: dict[str, int] = Field(default_factory=dict)
    decade_counts: dict[str, int] = Field(default_factory=dict)
    artist_counts: dict[str, int] = Field(default_factory=dict)


class CollectionSnapshot(_CamelModel):
    """The persisted mirror of one owner's collection."""

    user_id: str
    discogs_username: str
    last_synced: str
    release_count: int
    releases: list[NormalizedRelease] = Field(default_factory=list)
    stats: CollectionStats = Field(default_factory=CollectionStats)

    def release_map(self) -> dict[int, NormalizedRelease]:
        """Index releases by id; later copies of the same release win."""

        return {release.id: release for release in self.releases}


class EnrichmentProgress(_CamelModel):
    """Checkpointed counters for a resumable enrichment run."""

    user_id: str
    total: int
    processed: int = 0
    enriched: int = 0
    skipped: int = 0
    errors: int = 0
    started_at: str
    last_updated_at: str
    status: EnrichmentStatus = "pending"
    current_release: str | None = None


@dataclass(slots=True)
class EnrichmentNeeded:
    total: int = 0
    needs_enrichment: int = 0
    already_enriched: int = 0
    no_master_id: int = 0

    def to_payload(self) -> dict[str, int]:
        return {
            "total": self.total,
            "needsEnrichment": self.needs_enrichment,
            "alreadyEnriched": self.already_enriched,
            "noMasterId": self.no_master_id,
        }


@dataclass(slots=True)
class EnrichmentResult:
    processed: int = 0
    remaining: int = 0
    errors: int = 0

    def to_payload(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class SyncResult:
    """Outcome of a sync: the new snapshot plus the diff against the prior one."""

    snapshot: CollectionSnapshot
    added_count: int = 0
    deleted_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "releaseCount": self.snapshot.release_count,
            "lastSynced": self.snapshot.last_synced,
            "addedCount": self.added_count,
            "deletedCount": self.deleted_count,
        }
