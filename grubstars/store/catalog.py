"""Catalog Store.

Persistence for the restaurant entity graph: restaurants, their external ids,
ratings, reviews, media and categories, plus the read queries used by the
indexer, the duplicate sweep and search. Holds no matching or merge policy.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from grubstars.models import (
    Category,
    ExternalId,
    Media,
    Rating,
    Restaurant,
    Review,
)
from grubstars.ranking import SortOrder, apply_sort
from grubstars.store.database import transaction

# Minimum similarity for fuzzy name, category and location matches
FUZZY_THRESHOLD = 0.6

# Columns update_fields() is allowed to touch
UPDATABLE_FIELDS = ("name", "address", "latitude", "longitude", "phone", "location")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _normalize_location(location: Optional[str]) -> Optional[str]:
    if location is None:
        return None
    location = location.strip().lower()
    return location or None


class CatalogStore:
    """SQLite-backed catalog.

    Example:
        conn = connect(":memory:")
        store = CatalogStore(conn)
        restaurant = store.create(Restaurant(name="Joe's Pizza"))
        store.save_external_id(restaurant.id, "yelp", "yelp:joes-pizza")
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with transaction(self.conn) as conn:
            yield conn

    # =========================================================================
    # Restaurants
    # =========================================================================

    def find_by_id(self, restaurant_id: int) -> Optional[Restaurant]:
        row = self.conn.execute(
            "SELECT * FROM restaurants WHERE id = ?", (restaurant_id,)
        ).fetchone()
        return row_to_restaurant(row) if row else None

    def find_by_id_with_associations(self, restaurant_id: int) -> Optional[Restaurant]:
        restaurant = self.find_by_id(restaurant_id)
        if restaurant is None:
            return None
        restaurant.ratings = self.ratings_for(restaurant_id)
        restaurant.reviews = self.reviews_for(restaurant_id)
        restaurant.media = self.media_for(restaurant_id)
        restaurant.categories = self.categories_for(restaurant_id)
        restaurant.external_ids = self.external_ids_for(restaurant_id)
        return restaurant

    def find_by_external_id(self, source: str, external_id: str) -> Optional[Restaurant]:
        row = self.conn.execute("""
            SELECT r.* FROM restaurants r
            JOIN external_ids e ON e.restaurant_id = r.id
            WHERE e.source = ? AND e.external_id = ?
        """, (source, external_id)).fetchone()
        return row_to_restaurant(row) if row else None

    def find_candidates_near(self, latitude: float, longitude: float, delta: float) -> List[Restaurant]:
        """Restaurants inside a +/- delta degree box around a coordinate."""
        rows = self.conn.execute("""
            SELECT * FROM restaurants
            WHERE latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
            ORDER BY id
        """, (latitude - delta, latitude + delta, longitude - delta, longitude + delta)).fetchall()
        return [row_to_restaurant(row) for row in rows]

    def create(self, restaurant: Restaurant) -> Restaurant:
        """Insert a restaurant and populate its id and timestamps."""
        now = _now()
        restaurant.location = _normalize_location(restaurant.location)
        cursor = self.conn.execute("""
            INSERT INTO restaurants
            (name, address, latitude, longitude, phone, location, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            restaurant.name,
            restaurant.address,
            restaurant.latitude,
            restaurant.longitude,
            restaurant.phone,
            restaurant.location,
            now.isoformat(),
            now.isoformat(),
        ))
        restaurant.id = cursor.lastrowid
        restaurant.created_at = now
        restaurant.updated_at = now
        return restaurant

    def update(self, restaurant: Restaurant) -> Restaurant:
        now = _now()
        restaurant.location = _normalize_location(restaurant.location)
        self.conn.execute("""
            UPDATE restaurants
            SET name = ?, address = ?, latitude = ?, longitude = ?,
                phone = ?, location = ?, updated_at = ?
            WHERE id = ?
        """, (
            restaurant.name,
            restaurant.address,
            restaurant.latitude,
            restaurant.longitude,
            restaurant.phone,
            restaurant.location,
            now.isoformat(),
            restaurant.id,
        ))
        restaurant.updated_at = now
        return restaurant

    def update_fields(self, restaurant_id: int, fields: Dict[str, Any]) -> None:
        """Update a subset of core columns (used when merging sources)."""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update restaurant fields: {sorted(unknown)}")

        values = dict(fields)
        if "location" in values:
            values["location"] = _normalize_location(values["location"])
        values["updated_at"] = _now().isoformat()

        assignments = ", ".join(f"{column} = ?" for column in values)
        self.conn.execute(
            f"UPDATE restaurants SET {assignments} WHERE id = ?",
            (*values.values(), restaurant_id),
        )

    def delete(self, restaurant_id: int) -> None:
        """Delete a restaurant; dependent rows cascade."""
        self.conn.execute("DELETE FROM restaurants WHERE id = ?", (restaurant_id,))

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM restaurants").fetchone()[0]

    # =========================================================================
    # External ids
    # =========================================================================

    def save_external_id(self, restaurant_id: int, source: str, external_id: str) -> Optional[ExternalId]:
        """Link a source record to a restaurant.

        Returns None without raising if (source, external_id) is already linked.
        """
        cursor = self.conn.execute("""
            INSERT INTO external_ids (restaurant_id, source, external_id)
            VALUES (?, ?, ?)
            ON CONFLICT(source, external_id) DO NOTHING
        """, (restaurant_id, source, external_id))
        if cursor.rowcount == 0:
            return None
        return ExternalId(
            id=cursor.lastrowid,
            restaurant_id=restaurant_id,
            source=source,
            external_id=external_id,
        )

    def external_ids_for(self, restaurant_id: int) -> List[ExternalId]:
        rows = self.conn.execute(
            "SELECT * FROM external_ids WHERE restaurant_id = ? ORDER BY id", (restaurant_id,)
        ).fetchall()
        return [
            ExternalId(
                id=row["id"],
                restaurant_id=row["restaurant_id"],
                source=row["source"],
                external_id=row["external_id"],
            )
            for row in rows
        ]

    # =========================================================================
    # Ratings, reviews, media
    # =========================================================================

    def upsert_rating(
        self,
        restaurant_id: int,
        source: str,
        score: Optional[float],
        review_count: Optional[int],
    ) -> None:
        """Store the latest rating observation for (restaurant, source)."""
        self.conn.execute("""
            INSERT INTO ratings (restaurant_id, source, score, review_count, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(restaurant_id, source) DO UPDATE SET
                score = excluded.score,
                review_count = excluded.review_count,
                fetched_at = excluded.fetched_at
        """, (restaurant_id, source, score, review_count, _now().isoformat()))

    def ratings_for(self, restaurant_id: int) -> List[Rating]:
        rows = self.conn.execute(
            "SELECT * FROM ratings WHERE restaurant_id = ? ORDER BY id", (restaurant_id,)
        ).fetchall()
        return [
            Rating(
                id=row["id"],
                restaurant_id=row["restaurant_id"],
                source=row["source"],
                score=row["score"],
                review_count=row["review_count"],
                fetched_at=_parse_timestamp(row["fetched_at"]),
            )
            for row in rows
        ]

    def add_review(
        self,
        restaurant_id: int,
        source: str,
        snippet: Optional[str] = None,
        url: Optional[str] = None,
    ) -> Review:
        now = _now()
        cursor = self.conn.execute("""
            INSERT INTO reviews (restaurant_id, source, snippet, url, fetched_at)
            VALUES (?, ?, ?, ?, ?)
        """, (restaurant_id, source, snippet, url, now.isoformat()))
        return Review(
            id=cursor.lastrowid,
            restaurant_id=restaurant_id,
            source=source,
            snippet=snippet,
            url=url,
            fetched_at=now,
        )

    def reviews_for(self, restaurant_id: int) -> List[Review]:
        rows = self.conn.execute(
            "SELECT * FROM reviews WHERE restaurant_id = ? ORDER BY id", (restaurant_id,)
        ).fetchall()
        return [
            Review(
                id=row["id"],
                restaurant_id=row["restaurant_id"],
                source=row["source"],
                snippet=row["snippet"],
                url=row["url"],
                fetched_at=_parse_timestamp(row["fetched_at"]),
            )
            for row in rows
        ]

    def replace_media(self, restaurant_id: int, source: str, media_type: str, urls: Iterable[str]) -> None:
        """Swap the full set of media URLs for (restaurant, source, media_type)."""
        now = _now().isoformat()
        with self.transaction() as conn:
            conn.execute("""
                DELETE FROM media
                WHERE restaurant_id = ? AND source = ? AND media_type = ?
            """, (restaurant_id, source, media_type))
            conn.executemany("""
                INSERT INTO media (restaurant_id, source, media_type, url, fetched_at)
                VALUES (?, ?, ?, ?, ?)
            """, [(restaurant_id, source, media_type, url, now) for url in urls])

    def media_for(self, restaurant_id: int, media_type: Optional[str] = None) -> List[Media]:
        query = "SELECT * FROM media WHERE restaurant_id = ?"
        params: List[Any] = [restaurant_id]
        if media_type:
            query += " AND media_type = ?"
            params.append(media_type)
        rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            Media(
                id=row["id"],
                restaurant_id=row["restaurant_id"],
                source=row["source"],
                media_type=row["media_type"],
                url=row["url"],
                fetched_at=_parse_timestamp(row["fetched_at"]),
            )
            for row in rows
        ]

    # =========================================================================
    # Categories
    # =========================================================================

    def link_categories(self, restaurant_id: int, category_names: Iterable[str]) -> None:
        """Create missing categories and link them to the restaurant (idempotent)."""
        with self.transaction() as conn:
            for name in category_names:
                if not name:
                    continue
                conn.execute(
                    "INSERT INTO categories (name) VALUES (?) ON CONFLICT(name) DO NOTHING",
                    (name,),
                )
                category_id = conn.execute(
                    "SELECT id FROM categories WHERE name = ?", (name,)
                ).fetchone()["id"]
                conn.execute("""
                    INSERT INTO restaurant_categories (restaurant_id, category_id)
                    VALUES (?, ?)
                    ON CONFLICT(restaurant_id, category_id) DO NOTHING
                """, (restaurant_id, category_id))

    def categories_for(self, restaurant_id: int) -> List[Category]:
        rows = self.conn.execute("""
            SELECT c.id, c.name FROM categories c
            JOIN restaurant_categories rc ON rc.category_id = c.id
            WHERE rc.restaurant_id = ?
            ORDER BY c.name
        """, (restaurant_id,)).fetchall()
        return [Category(id=row["id"], name=row["name"]) for row in rows]

    def all_category_names(self) -> List[str]:
        rows = self.conn.execute("SELECT name FROM categories ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    # =========================================================================
    # Search
    # =========================================================================

    def search_by_name(
        self,
        query: str,
        location: Optional[str] = None,
        sort: Union[SortOrder, str, None] = SortOrder.RELEVANCE,
    ) -> List[Restaurant]:
        """Restaurants whose name contains `query` or fuzzy-matches it.

        Relevance order is fuzzy score descending, then name ascending.
        """
        params: Dict[str, Any] = {"query": query, "threshold": FUZZY_THRESHOLD}
        sql = """
            SELECT r.*, fuzzy_match(r.name, :query) AS match_score
            FROM restaurants r
            WHERE (instr(lower(r.name), lower(:query)) > 0
                   OR fuzzy_match(r.name, :query) >= :threshold)
        """
        sql += self._location_clause(location, params)
        sql += " ORDER BY match_score DESC, r.name ASC"
        return self._hydrate_search_results(self.conn.execute(sql, params).fetchall(), sort)

    def search_by_category(
        self,
        category: str,
        location: Optional[str] = None,
        sort: Union[SortOrder, str, None] = SortOrder.RELEVANCE,
    ) -> List[Restaurant]:
        """Restaurants linked to a category containing or resembling `category`."""
        params: Dict[str, Any] = {"query": category, "threshold": FUZZY_THRESHOLD}
        sql = """
            SELECT r.*, MAX(similarity(c.name, :query)) AS match_score
            FROM restaurants r
            JOIN restaurant_categories rc ON rc.restaurant_id = r.id
            JOIN categories c ON c.id = rc.category_id
            WHERE (instr(lower(c.name), lower(:query)) > 0
                   OR similarity(c.name, :query) >= :threshold)
        """
        sql += self._location_clause(location, params)
        sql += " GROUP BY r.id ORDER BY match_score DESC, r.name ASC"
        return self._hydrate_search_results(self.conn.execute(sql, params).fetchall(), sort)

    def all_indexed_locations(self) -> List[str]:
        rows = self.conn.execute("""
            SELECT DISTINCT location FROM restaurants
            WHERE location IS NOT NULL
            ORDER BY location
        """).fetchall()
        return [row["location"] for row in rows]

    @staticmethod
    def _location_clause(location: Optional[str], params: Dict[str, Any]) -> str:
        if not location:
            return ""
        params["location"] = location
        return """
            AND (instr(lower(coalesce(r.location, '')), lower(:location)) > 0
                 OR similarity(r.location, :location) >= :threshold)
        """

    def _hydrate_search_results(self, rows: List[sqlite3.Row], sort: Union[SortOrder, str, None]) -> List[Restaurant]:
        results = []
        for row in rows:
            restaurant = row_to_restaurant(row)
            restaurant.ratings = self.ratings_for(restaurant.id)
            restaurant.external_ids = self.external_ids_for(restaurant.id)
            results.append(restaurant)
        return apply_sort(results, sort)


def row_to_restaurant(row: sqlite3.Row) -> Restaurant:
    return Restaurant(
        id=row["id"],
        name=row["name"],
        address=row["address"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        phone=row["phone"],
        location=row["location"],
        created_at=_parse_timestamp(row["created_at"]),
        updated_at=_parse_timestamp(row["updated_at"]),
    )
