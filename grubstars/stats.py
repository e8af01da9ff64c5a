"""
Catalog and API-usage statistics.
"""
from typing import Any, Dict, List, Sequence

from grubstars.adapters.base import BaseAdapter
from grubstars.store.catalog import CatalogStore
from grubstars.store.quota import QuotaLedger


class StatsService:
    """
    Summarizes what the catalog holds and how much of each adapter's
    monthly request budget has been spent.
    """

    def __init__(self, store: CatalogStore, adapters: Sequence[BaseAdapter], quota_ledger: QuotaLedger):
        self.store = store
        self.adapters = list(adapters)
        self.quota_ledger = quota_ledger

    def get_stats(self) -> Dict[str, Any]:
        """
        Returns:
            Dict[str, Any]: {
                "restaurants": counts by data coverage,
                "provider_coverage": {source: restaurant count},
                "api_usage": [per-adapter usage dicts],
                "locations": [indexed location labels],
            }
        """
        return {
            "restaurants": self.restaurant_stats(),
            "provider_coverage": self.provider_coverage(),
            "api_usage": self.api_usage(),
            "locations": self.store.all_indexed_locations(),
        }

    def restaurant_stats(self) -> Dict[str, int]:
        with_external_ids = self._distinct_restaurants("external_ids")
        single_source = self._scalar("""
            SELECT COUNT(*) FROM (
                SELECT restaurant_id FROM external_ids
                GROUP BY restaurant_id
                HAVING COUNT(DISTINCT source) = 1
            )
        """)
        return {
            "total": self.store.count(),
            "with_photos": self._distinct_restaurants("media"),
            "with_reviews": self._distinct_restaurants("reviews"),
            "with_ratings": self._distinct_restaurants("ratings"),
            "with_external_ids": with_external_ids,
            "single_source_only": single_source,
            "multi_source": with_external_ids - single_source,
        }

    def provider_coverage(self) -> Dict[str, int]:
        rows = self.store.conn.execute("""
            SELECT source, COUNT(DISTINCT restaurant_id) AS count
            FROM external_ids
            GROUP BY source
            ORDER BY source
        """).fetchall()
        return {row["source"]: row["count"] for row in rows}

    def api_usage(self) -> List[Dict[str, Any]]:
        usage = []
        for adapter in self.adapters:
            name = adapter.source_name()
            count = self.quota_ledger.get_count(name)
            limit = adapter.request_limit()
            reset_at = self.quota_ledger.reset_date(name)
            usage.append({
                "name": name,
                "configured": adapter.configured(),
                "request_count": count,
                "request_limit": limit,
                "remaining": max(limit - count, 0) if limit is not None else None,
                "usage_percent": round(count / limit * 100, 1) if limit else None,
                "reset_at": reset_at.isoformat() if reset_at else None,
                "days_until_reset": self.quota_ledger.days_until_reset(name),
            })
        return usage

    def _distinct_restaurants(self, table: str) -> int:
        return self._scalar(f"SELECT COUNT(DISTINCT restaurant_id) FROM {table}")

    def _scalar(self, sql: str) -> int:
        return self.store.conn.execute(sql).fetchone()[0]
