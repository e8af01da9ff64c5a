"""
Typed data models for the restaurant ingestion and search pipeline.
All data structures used throughout the codebase should be defined here.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass
class NormalizedRecord:
    """Business record produced by an adapter, in the shape every source shares."""
    external_id: Optional[str]  # Prefixed with the source, e.g. "yelp:abc123"
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    categories: List[str] = field(default_factory=list)
    photos: List[str] = field(default_factory=list)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class Progress:
    """Position of one record within an adapter's paginated result set."""
    current: int
    total: int
    percent: float


class ProgressPhase(str, Enum):
    STARTING = "starting"
    INDEXING = "indexing"
    COMPLETED = "completed"


@dataclass
class ProgressEvent:
    """Notification sent to the progress sink while indexing."""
    phase: ProgressPhase
    adapter: str
    current: int = 0
    total: int = 0
    percent: float = 0.0
    item_name: Optional[str] = None
    stats: Optional["AdapterStats"] = None


@dataclass
class ExternalId:
    restaurant_id: int
    source: str
    external_id: str
    id: Optional[int] = None


@dataclass
class Rating:
    restaurant_id: int
    source: str
    score: Optional[float]
    review_count: Optional[int] = None
    fetched_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Review:
    restaurant_id: int
    source: str
    snippet: Optional[str] = None
    url: Optional[str] = None
    fetched_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Media:
    restaurant_id: int
    source: str
    media_type: str  # "photo" or "video"
    url: str
    fetched_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Category:
    name: str
    id: Optional[int] = None


@dataclass
class Restaurant:
    """Canonical catalog entry for one physical restaurant."""
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    location: Optional[str] = None  # Label the entry was indexed under, e.g. "barrie, ontario"
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Associations, loaded separately by the catalog store
    ratings: List[Rating] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)
    media: List[Media] = field(default_factory=list)
    categories: List[Category] = field(default_factory=list)
    external_ids: List[ExternalId] = field(default_factory=list)

    @property
    def photos(self) -> List[Media]:
        return [m for m in self.media if m.media_type == "photo"]

    @property
    def category_names(self) -> List[str]:
        return [c.name for c in self.categories]

    @property
    def sources(self) -> List[str]:
        seen: List[str] = []
        for ext in self.external_ids:
            if ext.source not in seen:
                seen.append(ext.source)
        return seen

    @property
    def average_rating(self) -> Optional[float]:
        scores = [r.score for r in self.ratings if r.score is not None]
        if not scores:
            return None
        return sum(scores) / len(scores)

    @property
    def total_reviews(self) -> int:
        return sum(r.review_count or 0 for r in self.ratings)


@dataclass
class MatchResult:
    """Best catalog candidate for an incoming record."""
    restaurant: Restaurant
    score: int


class IndexOutcome(str, Enum):
    """What the indexer did with one ingested record."""
    CREATED = "created"
    UPDATED = "updated"
    MERGED = "merged"


@dataclass
class AdapterStats:
    adapter: str
    total: int = 0
    created: int = 0
    updated: int = 0
    merged: int = 0
    reported_total: Optional[int] = None

    def record(self, outcome: IndexOutcome) -> None:
        self.total += 1
        if outcome is IndexOutcome.CREATED:
            self.created += 1
        elif outcome is IndexOutcome.UPDATED:
            self.updated += 1
        elif outcome is IndexOutcome.MERGED:
            self.merged += 1


@dataclass
class IndexStats:
    """Aggregated result of an indexing run across all adapters."""
    limit: int
    total: int = 0
    created: int = 0
    updated: int = 0
    merged: int = 0
    limit_reached: bool = False
    adapters: Dict[str, AdapterStats] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def add(self, adapter_stats: AdapterStats) -> None:
        self.adapters[adapter_stats.adapter] = adapter_stats
        self.total += adapter_stats.total
        self.created += adapter_stats.created
        self.updated += adapter_stats.updated
        self.merged += adapter_stats.merged
        if adapter_stats.total >= self.limit:
            self.limit_reached = True


@dataclass
class ReindexResult:
    """Outcome of refreshing one restaurant from all of its known sources."""
    sources_updated: List[str] = field(default_factory=list)
    sources_failed: List[Tuple[str, str]] = field(default_factory=list)  # (source, error message)
    changes: Dict[str, Tuple[object, object]] = field(default_factory=dict)  # field -> (old, new)
    message: str = ""


@dataclass
class MergeDetail:
    duplicate_id: int
    duplicate_name: str
    target_id: Optional[int] = None
    target_name: Optional[str] = None
    similarity: Optional[float] = None
    merged: bool = False
    reason: str = ""


@dataclass
class MergeResult:
    merged_count: int = 0
    skipped_count: int = 0
    details: List[MergeDetail] = field(default_factory=list)


@dataclass
class RequestQuota:
    """Request ledger entry for one adapter."""
    adapter: str
    request_count: int
    reset_at: datetime
    updated_at: Optional[datetime] = None
