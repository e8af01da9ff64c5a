"""Request quota ledger.

Tracks how many API requests each adapter has made in the current monthly
window. The window resets lazily: whenever an entry is read or written and a
month has passed since its reset timestamp, its count goes back to zero.

Two interchangeable ledgers are provided:
- SqliteQuotaLedger persists to the catalog database (api_requests table)
- InMemoryQuotaLedger keeps counts in a dict, for tests and one-off runs
"""

import calendar
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional

from grubstars.errors import RateLimitError
from grubstars.models import RequestQuota
from grubstars.store.database import transaction

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the end of shorter months (Jan 31 -> Feb 28)."""
    if value.month == 12:
        year, month = value.year + 1, 1
    else:
        year, month = value.year, value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class QuotaLedger:
    """Shared ledger behaviour; subclasses provide storage.

    All public operations run under `_locked()`, so a budget check and the
    increment that follows it cannot interleave with another caller.
    """

    def __init__(self, now: Optional[Clock] = None):
        self._now = now or utcnow
        self._lock = threading.RLock()

    # Storage hooks ---------------------------------------------------------

    def _load(self, adapter: str) -> Optional[RequestQuota]:
        raise NotImplementedError

    def _save(self, entry: RequestQuota) -> None:
        raise NotImplementedError

    def _adapters(self) -> Iterator[str]:
        raise NotImplementedError

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            yield

    # Public API ------------------------------------------------------------

    def get_count(self, adapter: str) -> int:
        with self._locked():
            entry = self._current(adapter)
            return entry.request_count if entry else 0

    def increment(self, adapter: str, amount: int = 1) -> int:
        """Add to the adapter's count, creating the entry on first use. Returns the new count."""
        with self._locked():
            return self._increment(adapter, amount)

    def acquire(self, adapter: str, limit: Optional[int]) -> Optional[int]:
        """
        Reserve one request against the adapter's budget.

        Args:
            adapter (str): Adapter name.
            limit (Optional[int]): Monthly budget; None means unconstrained and untracked.

        Returns:
            Optional[int]: New request count, or None when unconstrained.

        Raises:
            RateLimitError: The budget for the current window is used up.
        """
        if limit is None:
            return None
        with self._locked():
            entry = self._current(adapter)
            current = entry.request_count if entry else 0
            if current >= limit:
                raise RateLimitError(adapter=adapter, limit=limit, current_count=current)
            return self._increment(adapter, 1)

    def reset(self, adapter: str) -> None:
        with self._locked():
            now = self._now()
            self._save(RequestQuota(adapter=adapter, request_count=0, reset_at=now, updated_at=now))

    def reset_date(self, adapter: str) -> Optional[datetime]:
        with self._locked():
            entry = self._current(adapter)
            return entry.reset_at if entry else None

    def days_until_reset(self, adapter: str) -> Optional[int]:
        reset_at = self.reset_date(adapter)
        if reset_at is None:
            return None
        return (add_one_month(reset_at).date() - self._now().date()).days

    def all_counts(self) -> Dict[str, RequestQuota]:
        with self._locked():
            entries = {}
            for adapter in list(self._adapters()):
                entry = self._current(adapter)
                if entry:
                    entries[adapter] = entry
            return entries

    # Internals -------------------------------------------------------------

    def _current(self, adapter: str) -> Optional[RequestQuota]:
        entry = self._load(adapter)
        if entry is None:
            return None
        now = self._now()
        if now >= add_one_month(entry.reset_at):
            entry = RequestQuota(adapter=adapter, request_count=0, reset_at=now, updated_at=now)
            self._save(entry)
        return entry

    def _increment(self, adapter: str, amount: int) -> int:
        now = self._now()
        entry = self._current(adapter)
        if entry is None:
            entry = RequestQuota(adapter=adapter, request_count=0, reset_at=now)
        entry.request_count += amount
        entry.updated_at = now
        self._save(entry)
        return entry.request_count


class InMemoryQuotaLedger(QuotaLedger):

    def __init__(self, now: Optional[Clock] = None):
        super().__init__(now)
        self._entries: Dict[str, RequestQuota] = {}

    def _load(self, adapter: str) -> Optional[RequestQuota]:
        entry = self._entries.get(adapter)
        if entry is None:
            return None
        return RequestQuota(
            adapter=entry.adapter,
            request_count=entry.request_count,
            reset_at=entry.reset_at,
            updated_at=entry.updated_at,
        )

    def _save(self, entry: RequestQuota) -> None:
        self._entries[entry.adapter] = entry

    def _adapters(self) -> Iterator[str]:
        return iter(sorted(self._entries))


class SqliteQuotaLedger(QuotaLedger):

    def __init__(self, conn: sqlite3.Connection, now: Optional[Clock] = None):
        super().__init__(now)
        self.conn = conn

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock, transaction(self.conn, immediate=True):
            yield

    def _load(self, adapter: str) -> Optional[RequestQuota]:
        row = self.conn.execute(
            "SELECT * FROM api_requests WHERE adapter = ?", (adapter,)
        ).fetchone()
        if row is None:
            return None
        return RequestQuota(
            adapter=row["adapter"],
            request_count=row["request_count"],
            reset_at=datetime.fromisoformat(row["reset_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )

    def _save(self, entry: RequestQuota) -> None:
        self.conn.execute("""
            INSERT INTO api_requests (adapter, request_count, reset_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(adapter) DO UPDATE SET
                request_count = excluded.request_count,
                reset_at = excluded.reset_at,
                updated_at = excluded.updated_at
        """, (
            entry.adapter,
            entry.request_count,
            entry.reset_at.isoformat(),
            entry.updated_at.isoformat() if entry.updated_at else None,
        ))

    def _adapters(self) -> Iterator[str]:
        rows = self.conn.execute("SELECT adapter FROM api_requests ORDER BY adapter").fetchall()
        return iter([row["adapter"] for row in rows])
