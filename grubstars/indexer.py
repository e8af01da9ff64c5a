"""
Ingestion pipeline: pulls records from every configured adapter and decides,
record by record, whether to update, merge into, or create a catalog entry.
"""
import asyncio
from contextlib import aclosing
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from grubstars.adapters.base import BaseAdapter, strip_source_prefix
from grubstars.config import DEFAULT_INDEX_LIMIT
from grubstars.errors import (
    ConfigurationError,
    IndexingError,
    NoAdaptersConfiguredError,
    RateLimitError,
    RestaurantNotFoundError,
)
from grubstars.matchers.restaurant_matcher import find_match
from grubstars.models import (
    AdapterStats,
    IndexOutcome,
    IndexStats,
    MatchResult,
    NormalizedRecord,
    ProgressEvent,
    ProgressPhase,
    ReindexResult,
    Restaurant,
)
from grubstars.store.catalog import CatalogStore

ProgressSink = Callable[[ProgressEvent], None]
Matcher = Callable[[NormalizedRecord, List[Restaurant]], Optional[MatchResult]]

# Half-width, in degrees, of the box searched for match candidates (~1 km)
CANDIDATE_DELTA = 0.01


def log_progress(event: ProgressEvent) -> None:
    """Default progress sink: one log line per event."""
    if event.phase is ProgressPhase.STARTING:
        logger.info(f"📡 Indexing from {event.adapter}...")
    elif event.phase is ProgressPhase.INDEXING:
        logger.info(f"[{event.adapter}] {event.percent:5.1f}% ({event.current}/{event.total}) {event.item_name}")
    elif event.stats is not None:
        s = event.stats
        logger.info(f"✅ [{event.adapter}] {s.total} found ({s.created} new, {s.merged} merged, {s.updated} updated)")


class Indexer:
    """
    Drives adapters into the catalog.

    Adapters run concurrently, one task each. Catalog writes are serialized
    through a single lock so two adapters can't both create the same
    restaurant. Each store decision runs in its own transaction.

    Example:
        indexer = Indexer(store, adapters=default_adapters(quota_ledger=ledger))
        stats = await indexer.index("barrie, ontario", limit=100)
    """

    def __init__(
        self,
        store: CatalogStore,
        adapters: Sequence[BaseAdapter],
        matcher: Matcher = find_match,
        progress_sink: Optional[ProgressSink] = None,
        candidate_delta: float = CANDIDATE_DELTA,
    ):
        self.store = store
        self.adapters = list(adapters)
        self.matcher = matcher
        self.progress_sink = progress_sink or log_progress
        self.candidate_delta = candidate_delta
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # Multi-adapter runs
    # =========================================================================

    async def index(
        self,
        location: str,
        categories: Optional[str] = None,
        limit: int = DEFAULT_INDEX_LIMIT,
    ) -> IndexStats:
        """
        Index a location from every configured adapter.

        `limit` applies to each adapter separately, so two adapters with a
        limit of 100 can ingest up to 200 records between them.

        Args:
            location (str): Location to index, e.g. "barrie, ontario".
            categories (Optional[str]): Optional category filter, e.g. "bakery".
            limit (int): Maximum records ingested per adapter.

        Returns:
            IndexStats: Aggregated totals plus per-adapter stats and rate-limit/config failures.

        Raises:
            ValueError: `limit` is below 1.
            NoAdaptersConfiguredError: No adapter has credentials.
            IndexingError: An adapter failed for another reason (e.g. APIError);
                           carries the partial stats of the whole run.
        """
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        configured = [adapter for adapter in self.adapters if adapter.configured()]
        if not configured:
            raise NoAdaptersConfiguredError("No adapters configured. Set API keys in .env file.")

        per_adapter = [AdapterStats(adapter=adapter.source_name()) for adapter in configured]
        results = await asyncio.gather(
            *[
                self._index_with_adapter(adapter, stats, location, categories, limit)
                for adapter, stats in zip(configured, per_adapter)
            ],
            return_exceptions=True,
        )

        stats = IndexStats(limit=limit)
        fatal: Dict[str, Exception] = {}
        for adapter_stats, result in zip(per_adapter, results):
            stats.add(adapter_stats)
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                stats.failures[adapter_stats.adapter] = str(result)
                if isinstance(result, (RateLimitError, ConfigurationError)):
                    logger.warning(f"⚠️ {adapter_stats.adapter} stopped: {result}")
                else:
                    logger.error(f"❌ {adapter_stats.adapter} failed: {result}")
                    fatal[adapter_stats.adapter] = result

        if fatal:
            raise IndexingError(
                f"Indexing failed for {', '.join(fatal)}",
                stats=stats,
                failures=stats.failures,
            )
        return stats

    async def _index_with_adapter(
        self,
        adapter: BaseAdapter,
        stats: AdapterStats,
        location: str,
        categories: Optional[str],
        limit: int,
    ) -> AdapterStats:
        source = adapter.source_name()
        self._emit(ProgressEvent(phase=ProgressPhase.STARTING, adapter=source))

        async with aclosing(adapter.search_all_businesses(location, categories, limit)) as results:
            async for record, progress in results:
                if stats.total >= limit:
                    break
                self._emit(ProgressEvent(
                    phase=ProgressPhase.INDEXING,
                    adapter=source,
                    current=progress.current,
                    total=progress.total,
                    percent=progress.percent,
                    item_name=record.name,
                ))
                outcome = await self.index_restaurant(record, source, location)
                stats.record(outcome)

        stats.reported_total = adapter.last_total
        self._emit(ProgressEvent(
            phase=ProgressPhase.COMPLETED,
            adapter=source,
            current=stats.total,
            total=stats.total,
            percent=100.0,
            stats=stats,
        ))
        return stats

    def _emit(self, event: ProgressEvent) -> None:
        self.progress_sink(event)

    # =========================================================================
    # Single-record decisions
    # =========================================================================

    async def index_restaurant(
        self,
        record: NormalizedRecord,
        source: str,
        location: Optional[str] = None,
    ) -> IndexOutcome:
        """Create, update or merge one record, holding the catalog write lock."""
        async with self._write_lock:
            return self.store_business(record, source, location)

    def store_business(
        self,
        record: NormalizedRecord,
        source: str,
        location: Optional[str] = None,
    ) -> IndexOutcome:
        """
        Decide what one adapter record means for the catalog.

        1. A restaurant already owns this (source, external id): overwrite its core fields.
        2. Otherwise a nearby restaurant scores as the same place: fill its gaps and link the source.
        3. Otherwise: create a new restaurant.

        Not locked; concurrent callers should go through index_restaurant().
        """
        with self.store.transaction():
            existing = None
            if record.external_id:
                existing = self.store.find_by_external_id(source, record.external_id)
            if existing is not None:
                self._update_restaurant(existing, record, source, location)
                outcome = IndexOutcome.UPDATED
            else:
                match = self._find_match(record)
                if match is not None:
                    self._merge_restaurant(match.restaurant, record, source, location)
                    outcome = IndexOutcome.MERGED
                else:
                    self._create_restaurant(record, source, location)
                    outcome = IndexOutcome.CREATED

        logger.debug(f"{source}: '{record.name}' -> {outcome.value}")
        return outcome

    def _find_match(self, record: NormalizedRecord) -> Optional[MatchResult]:
        # Without coordinates there is no bounded candidate set; such records
        # are created and left for the duplicate sweep.
        if not record.has_coordinates:
            return None
        candidates = self.store.find_candidates_near(record.latitude, record.longitude, self.candidate_delta)
        return self.matcher(record, candidates)

    def _create_restaurant(self, record: NormalizedRecord, source: str, location: Optional[str]) -> Restaurant:
        restaurant = self.store.create(Restaurant(
            name=record.name,
            address=record.address,
            latitude=record.latitude,
            longitude=record.longitude,
            phone=record.phone,
            location=location,
        ))
        if record.external_id:
            self.store.save_external_id(restaurant.id, source, record.external_id)
        self._store_source_data(restaurant.id, record, source)
        return restaurant

    def _update_restaurant(
        self,
        existing: Restaurant,
        record: NormalizedRecord,
        source: str,
        location: Optional[str],
    ) -> None:
        # The source is authoritative for an entity it has already given us
        existing.name = record.name
        existing.address = record.address
        existing.latitude = record.latitude
        existing.longitude = record.longitude
        existing.phone = record.phone
        if location:
            existing.location = location
        self.store.update(existing)
        self._store_source_data(existing.id, record, source)

    def _merge_restaurant(
        self,
        existing: Restaurant,
        record: NormalizedRecord,
        source: str,
        location: Optional[str],
    ) -> None:
        # Only fill gaps; never overwrite what another source already attested
        updates: Dict[str, Any] = {}
        for field_name in ("phone", "address", "latitude", "longitude"):
            new_value = getattr(record, field_name)
            if getattr(existing, field_name) is None and new_value is not None:
                updates[field_name] = new_value
        if existing.location is None and location:
            updates["location"] = location
        if updates:
            self.store.update_fields(existing.id, updates)

        if record.external_id:
            self.store.save_external_id(existing.id, source, record.external_id)
        self._store_source_data(existing.id, record, source)

    def _store_source_data(self, restaurant_id: int, record: NormalizedRecord, source: str) -> None:
        if record.categories:
            self.store.link_categories(restaurant_id, record.categories)
        if record.rating is not None:
            self.store.upsert_rating(restaurant_id, source, record.rating, record.review_count)
        if record.photos:
            self.store.replace_media(restaurant_id, source, "photo", record.photos)

    # =========================================================================
    # Single-restaurant refresh
    # =========================================================================

    async def reindex_restaurant(self, restaurant_id: int) -> ReindexResult:
        """
        Refresh one restaurant from every source it is linked to.

        Sources are fetched independently: one failing source is recorded in
        `sources_failed` and the rest still refresh.

        Args:
            restaurant_id (int): Catalog id of the restaurant.

        Returns:
            ReindexResult: Sources refreshed/failed, field-level changes and a summary message.

        Raises:
            RestaurantNotFoundError: No restaurant has this id.
        """
        restaurant = self.store.find_by_id_with_associations(restaurant_id)
        if restaurant is None:
            raise RestaurantNotFoundError(f"Restaurant with ID {restaurant_id} not found")

        if not restaurant.external_ids:
            return ReindexResult(message="No external sources to refresh")

        before = _capture_state(restaurant)
        result = ReindexResult()

        for ext in restaurant.external_ids:
            adapter = self._adapter_for(ext.source)
            if adapter is None or not adapter.configured():
                continue
            try:
                fresh = await adapter.get_business(strip_source_prefix(ext.external_id, ext.source))
                if fresh is None:
                    continue
                await self.index_restaurant(fresh, ext.source, restaurant.location)
                result.sources_updated.append(ext.source)
            except Exception as e:
                logger.warning(f"⚠️ Failed to refresh restaurant {restaurant_id} from {ext.source}: {e}")
                result.sources_failed.append((ext.source, str(e)))

        refreshed = self.store.find_by_id_with_associations(restaurant_id)
        result.changes = _calculate_changes(before, _capture_state(refreshed)) if refreshed else {}
        result.message = _build_result_message(result)
        return result

    def _adapter_for(self, source: str) -> Optional[BaseAdapter]:
        for adapter in self.adapters:
            if adapter.source_name() == source:
                return adapter
        return None


def _capture_state(restaurant: Restaurant) -> Dict[str, Any]:
    return {
        "name": restaurant.name,
        "address": restaurant.address,
        "phone": restaurant.phone,
        "ratings": {r.source: (r.score, r.review_count) for r in restaurant.ratings},
        "photos": len(restaurant.photos),
    }


def _calculate_changes(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}

    for field_name in ("name", "address", "phone"):
        if before[field_name] != after[field_name]:
            changes[field_name] = (before[field_name], after[field_name])

    for source, (old_score, old_count) in before["ratings"].items():
        if source not in after["ratings"]:
            continue
        new_score, new_count = after["ratings"][source]
        if old_score != new_score:
            changes[f"{source}_rating"] = (old_score, new_score)
        if old_count != new_count:
            changes[f"{source}_review_count"] = (old_count, new_count)

    if before["photos"] != after["photos"]:
        changes["photos"] = (before["photos"], after["photos"])

    return changes


def _build_result_message(result: ReindexResult) -> str:
    parts = []
    if result.sources_updated:
        parts.append(f"Updated from {', '.join(result.sources_updated)}")
    if result.sources_failed:
        parts.append(f"Failed: {', '.join(source for source, _ in result.sources_failed)}")

    descriptions = []
    for key, (old, new) in result.changes.items():
        if key == "photos":
            diff = new - old
            descriptions.append(f"{diff} new photos" if diff > 0 else f"{-diff} photos removed")
        elif key.endswith("_review_count"):
            diff = (new or 0) - (old or 0)
            if diff > 0:
                descriptions.append(f"{diff} new {key[:-len('_review_count')]} reviews")
        elif key.endswith("_rating"):
            descriptions.append(f"{key[:-len('_rating')]} rating: {old} → {new}")
    if descriptions:
        parts.append(", ".join(descriptions))

    return ". ".join(parts) if parts else "Data refreshed (no changes detected)"
