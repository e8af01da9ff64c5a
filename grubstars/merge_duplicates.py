"""Duplicate-merge sweep.

Some sources (TripAdvisor) return search results without coordinates, so the
indexer can't find nearby candidates for them and creates a new restaurant
even when another source already has it. This sweep finds restaurants known
only from such a GPS-weak source and folds each into the best-matching
restaurant backed by a GPS-reliable source.

The sweep is idempotent: once a duplicate is merged it no longer exists, and
a restaurant without a match is left untouched.
"""

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from grubstars.models import MergeDetail, MergeResult, Restaurant
from grubstars.similarity import similarity
from grubstars.store.catalog import CatalogStore, row_to_restaurant

# Minimum name similarity (0.0 to 1.0) for a candidate to count as the same restaurant
NAME_SIMILARITY_THRESHOLD = 0.85

# Maximum per-axis distance in degrees between two restaurants (~500 meters)
GPS_DISTANCE_THRESHOLD = 0.005

GPS_WEAK_SOURCE = "tripadvisor"
GPS_RELIABLE_SOURCES = ("yelp", "google")


class DuplicateMerger:
    """Finds and merges restaurants that only a GPS-weak source knows about.

    Example:
        merger = DuplicateMerger(store)
        plan = merger.merge_duplicates(dry_run=True)
        for detail in plan.details:
            print(detail.duplicate_name, "->", detail.target_name, detail.similarity)
    """

    def __init__(
        self,
        store: CatalogStore,
        weak_source: str = GPS_WEAK_SOURCE,
        reliable_sources: Sequence[str] = GPS_RELIABLE_SOURCES,
    ):
        self.store = store
        self.weak_source = weak_source
        self.reliable_sources = tuple(reliable_sources)

    # =========================================================================
    # Finding duplicates and candidates
    # =========================================================================

    def find_weak_source_only_restaurants(self) -> List[Restaurant]:
        """Restaurants linked to the weak source and to no reliable source."""
        placeholders = ", ".join("?" for _ in self.reliable_sources)
        rows = self.store.conn.execute(f"""
            SELECT DISTINCT r.* FROM restaurants r
            JOIN external_ids e ON e.restaurant_id = r.id
            WHERE e.source = ?
              AND r.id NOT IN (
                  SELECT restaurant_id FROM external_ids WHERE source IN ({placeholders})
              )
            ORDER BY r.id
        """, (self.weak_source, *self.reliable_sources)).fetchall()
        return [row_to_restaurant(row) for row in rows]

    def find_potential_matches(self, restaurant: Restaurant) -> List[Tuple[Restaurant, float]]:
        """
        Reliable-source restaurants that could be the same place as `restaurant`.

        Args:
            restaurant (Restaurant): The suspected duplicate.

        Returns:
            List[Tuple[Restaurant, float]]: (candidate, name similarity) pairs at or
            above the threshold, best first. When `restaurant` has coordinates,
            candidates must also sit within the GPS box.
        """
        placeholders = ", ".join("?" for _ in self.reliable_sources)
        rows = self.store.conn.execute(f"""
            SELECT DISTINCT r.* FROM restaurants r
            JOIN external_ids e ON e.restaurant_id = r.id
            WHERE e.source IN ({placeholders}) AND r.id != ?
            ORDER BY r.id
        """, (*self.reliable_sources, restaurant.id)).fetchall()

        matches = []
        for row in rows:
            candidate = row_to_restaurant(row)
            score = self.calculate_name_similarity(restaurant.name, candidate.name)
            if score < NAME_SIMILARITY_THRESHOLD:
                continue
            if _has_coordinates(restaurant) and not _within_gps_threshold(restaurant, candidate):
                continue
            matches.append((candidate, score))

        matches.sort(key=lambda pair: -pair[1])
        return matches

    @staticmethod
    def calculate_name_similarity(name1: Optional[str], name2: Optional[str]) -> float:
        return similarity(name1, name2)

    def sources_for(self, restaurant_id: int) -> List[str]:
        return [ext.source for ext in self.store.external_ids_for(restaurant_id)]

    # =========================================================================
    # Merging
    # =========================================================================

    def merge_restaurants(self, duplicate: Restaurant, target: Restaurant) -> bool:
        """
        Fold `duplicate` into `target` in one transaction, then delete it.

        Returns:
            bool: True on success. On a database error nothing is changed,
                  the error is logged and False is returned.
        """
        try:
            with self.store.transaction() as conn:
                self._move_external_ids(conn, duplicate.id, target.id)
                self._move_ratings(conn, duplicate.id, target.id)
                self._move_reviews(conn, duplicate.id, target.id)
                self._move_media(conn, duplicate.id, target.id)
                self._move_categories(conn, duplicate.id, target.id)
                self._backfill_target(conn, duplicate, target.id)
                conn.execute("DELETE FROM restaurants WHERE id = ?", (duplicate.id,))
        except sqlite3.Error as e:
            logger.warning(f"⚠️ Error merging restaurant {duplicate.id} into {target.id}: {e}")
            return False
        return True

    def _move_external_ids(self, conn: sqlite3.Connection, duplicate_id: int, target_id: int) -> None:
        conn.execute(
            "UPDATE external_ids SET restaurant_id = ? WHERE restaurant_id = ?",
            (target_id, duplicate_id),
        )

    def _move_ratings(self, conn: sqlite3.Connection, duplicate_id: int, target_id: int) -> None:
        # The target keeps its own rating for any source both have
        conn.execute("""
            UPDATE ratings SET restaurant_id = ?
            WHERE restaurant_id = ?
              AND source NOT IN (SELECT source FROM ratings WHERE restaurant_id = ?)
        """, (target_id, duplicate_id, target_id))
        conn.execute("DELETE FROM ratings WHERE restaurant_id = ?", (duplicate_id,))

    def _move_reviews(self, conn: sqlite3.Connection, duplicate_id: int, target_id: int) -> None:
        conn.execute("""
            UPDATE reviews SET restaurant_id = ?
            WHERE restaurant_id = ?
              AND (url IS NULL OR url NOT IN (
                  SELECT url FROM reviews WHERE restaurant_id = ? AND url IS NOT NULL
              ))
        """, (target_id, duplicate_id, target_id))
        conn.execute("DELETE FROM reviews WHERE restaurant_id = ?", (duplicate_id,))

    def _move_media(self, conn: sqlite3.Connection, duplicate_id: int, target_id: int) -> None:
        conn.execute("""
            UPDATE media SET restaurant_id = ?
            WHERE restaurant_id = ?
              AND url NOT IN (SELECT url FROM media WHERE restaurant_id = ?)
        """, (target_id, duplicate_id, target_id))
        conn.execute("DELETE FROM media WHERE restaurant_id = ?", (duplicate_id,))

    def _move_categories(self, conn: sqlite3.Connection, duplicate_id: int, target_id: int) -> None:
        conn.execute("""
            UPDATE restaurant_categories SET restaurant_id = ?
            WHERE restaurant_id = ?
              AND category_id NOT IN (
                  SELECT category_id FROM restaurant_categories WHERE restaurant_id = ?
              )
        """, (target_id, duplicate_id, target_id))
        conn.execute("DELETE FROM restaurant_categories WHERE restaurant_id = ?", (duplicate_id,))

    def _backfill_target(self, conn: sqlite3.Connection, duplicate: Restaurant, target_id: int) -> None:
        conn.execute("""
            UPDATE restaurants
            SET latitude = COALESCE(latitude, ?),
                longitude = COALESCE(longitude, ?),
                phone = COALESCE(phone, ?),
                updated_at = ?
            WHERE id = ?
        """, (duplicate.latitude, duplicate.longitude, duplicate.phone, datetime.now(timezone.utc).isoformat(), target_id))

    # =========================================================================
    # Sweep
    # =========================================================================

    def merge_duplicates(self, dry_run: bool = True) -> MergeResult:
        """
        Find every weak-source-only restaurant and merge it into its best match.

        Args:
            dry_run (bool): Report planned merges without changing anything.

        Returns:
            MergeResult: merged_count counts planned merges in a dry run and
            successful merges otherwise; failed merges count as skipped.
        """
        result = MergeResult()

        for duplicate in self.find_weak_source_only_restaurants():
            matches = self.find_potential_matches(duplicate)
            if not matches:
                result.details.append(MergeDetail(
                    duplicate_id=duplicate.id,
                    duplicate_name=duplicate.name,
                    reason="No matching restaurant found",
                ))
                result.skipped_count += 1
                continue

            target, score = matches[0]
            detail = MergeDetail(
                duplicate_id=duplicate.id,
                duplicate_name=duplicate.name,
                target_id=target.id,
                target_name=target.name,
                similarity=score,
            )

            if dry_run:
                detail.reason = "Dry run - would merge"
                result.merged_count += 1
                logger.info(f"Would merge '{duplicate.name}' ({duplicate.id}) into '{target.name}' ({target.id}), similarity {score:.2f}")
            elif self.merge_restaurants(duplicate, target):
                detail.merged = True
                detail.reason = "Merged successfully"
                result.merged_count += 1
                logger.info(f"Merged '{duplicate.name}' ({duplicate.id}) into '{target.name}' ({target.id})")
            else:
                detail.reason = "Merge failed"
                result.skipped_count += 1

            result.details.append(detail)

        return result


def _has_coordinates(restaurant: Restaurant) -> bool:
    return restaurant.latitude is not None and restaurant.longitude is not None


def _within_gps_threshold(a: Restaurant, b: Restaurant) -> bool:
    if not _has_coordinates(b):
        return False
    return (
        abs(a.latitude - b.latitude) <= GPS_DISTANCE_THRESHOLD
        and abs(a.longitude - b.longitude) <= GPS_DISTANCE_THRESHOLD
    )
