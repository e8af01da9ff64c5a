"""Catalog database setup.

This module owns the SQLite connection used by the catalog store and the
request quota ledger:
- Connection setup (row factory, foreign keys, autocommit)
- Registration of the fuzzy matching SQL functions
- Schema initialization
- A nestable transaction helper

Writes outside an explicit transaction are committed immediately.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from loguru import logger

from grubstars.config import DB_PATH
from grubstars.similarity import fuzzy_match, levenshtein, similarity


def connect(db_path: Union[str, Path] = DB_PATH) -> sqlite3.Connection:
    """Open the catalog database, creating it and its schema if needed.

    Args:
        db_path: Path to the SQLite file, or ":memory:" for a throwaway database

    Returns:
        Connection with sqlite3.Row rows and the fuzzy functions registered
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # isolation_level=None: we issue BEGIN/COMMIT ourselves
    conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    register_fuzzy_functions(conn)
    create_schema(conn)
    logger.debug(f"Opened catalog database at {db_path}")
    return conn


def register_fuzzy_functions(conn: sqlite3.Connection) -> None:
    """Expose the similarity primitives to SQL.

    - levenshtein(a, b): case-insensitive edit distance
    - similarity(a, b): 1 - distance / max length, in [0, 1]
    - fuzzy_match(text, query): word-level best-match score, in [0, 1]
    """
    conn.create_function("levenshtein", 2, levenshtein, deterministic=True)
    conn.create_function("similarity", 2, similarity, deterministic=True)
    conn.create_function("fuzzy_match", 2, fuzzy_match, deterministic=True)


def create_schema(conn: sqlite3.Connection) -> None:
    """Create catalog tables and indexes if they don't exist."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS restaurants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            address TEXT,
            latitude REAL,
            longitude REAL,
            phone TEXT,
            location TEXT,
            created_at TEXT,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS external_ids (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            restaurant_id INTEGER NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            external_id TEXT NOT NULL,
            UNIQUE(source, external_id)
        );

        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        );

        CREATE TABLE IF NOT EXISTS restaurant_categories (
            restaurant_id INTEGER NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            category_id INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
            PRIMARY KEY (restaurant_id, category_id)
        );

        CREATE TABLE IF NOT EXISTS ratings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            restaurant_id INTEGER NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            score REAL,
            review_count INTEGER,
            fetched_at TEXT,
            UNIQUE(restaurant_id, source)
        );

        CREATE TABLE IF NOT EXISTS reviews (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            restaurant_id INTEGER NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            snippet TEXT,
            url TEXT,
            fetched_at TEXT
        );

        CREATE TABLE IF NOT EXISTS media (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            restaurant_id INTEGER NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            media_type TEXT NOT NULL,
            url TEXT NOT NULL,
            fetched_at TEXT
        );

        CREATE TABLE IF NOT EXISTS api_requests (
            adapter TEXT PRIMARY KEY,
            request_count INTEGER NOT NULL DEFAULT 0,
            reset_at TEXT,
            updated_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_restaurants_coords ON restaurants(latitude, longitude);
        CREATE INDEX IF NOT EXISTS idx_restaurants_location ON restaurants(location);
        CREATE INDEX IF NOT EXISTS idx_external_ids_restaurant ON external_ids(restaurant_id, source);
        CREATE INDEX IF NOT EXISTS idx_media_owner ON media(restaurant_id, source, media_type);
        CREATE INDEX IF NOT EXISTS idx_reviews_restaurant ON reviews(restaurant_id);
    """)


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Run a block atomically.

    Nested calls join the outer transaction. On any exception the whole
    outer transaction is rolled back and the exception re-raised.

    Args:
        conn: Connection opened by connect()
        immediate: Take the write lock up front (BEGIN IMMEDIATE)
    """
    if conn.in_transaction:
        yield conn
        return

    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")
