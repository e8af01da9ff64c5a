import asyncio
from typing import Dict, List, Optional

import pytest

from grubstars.adapters.base import BaseAdapter, make_progress
from grubstars.models import NormalizedRecord
from grubstars.store.catalog import CatalogStore
from grubstars.store.database import connect


class FakeAdapter(BaseAdapter):
    """
    In-process adapter serving canned records.

    `fail_after` raises `error` once that many records have been yielded.
    `details` maps raw ids to the record (or exception) get_business returns.
    `interleave` yields to the event loop before each record, the way a
    paginated HTTP adapter does between responses.
    """

    def __init__(
        self,
        source: str,
        records: Optional[List[NormalizedRecord]] = None,
        configured: bool = True,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        details: Optional[Dict[str, object]] = None,
        track_requests: bool = False,
        interleave: bool = False,
        **kwargs,
    ):
        super().__init__(api_key="test-key" if configured else None, **kwargs)
        self.SOURCE = source
        self.DISPLAY_NAME = source.title()
        self.records = records or []
        self.fail_after = fail_after
        self.error = error
        self.details = details or {}
        self.track_requests = track_requests
        self.interleave = interleave
        self.fetched_ids: List[str] = []

    async def search_all_businesses(self, location, categories=None, limit=None):
        self.ensure_configured()
        total = min(len(self.records), limit) if limit is not None else len(self.records)
        self.last_total = total
        for index, record in enumerate(self.records, start=1):
            if self.fail_after is not None and index > self.fail_after:
                raise self.error
            if self.track_requests:
                self.track_request()
            if self.interleave:
                await asyncio.sleep(0)
            yield record, make_progress(index, total)

    async def get_business(self, business_id):
        self.fetched_ids.append(business_id)
        detail = self.details.get(business_id)
        if isinstance(detail, Exception):
            raise detail
        return detail


def make_record(source: str, raw_id: str, name: str, **fields) -> NormalizedRecord:
    return NormalizedRecord(external_id=f"{source}:{raw_id}", name=name, **fields)


@pytest.fixture
def conn():
    connection = connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def store(conn):
    return CatalogStore(conn)
