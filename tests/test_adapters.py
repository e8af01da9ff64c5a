from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from grubstars.adapters import GoogleAdapter, TripAdvisorAdapter, YelpAdapter, default_adapters
from grubstars.adapters.base import strip_source_prefix
from grubstars.errors import APIError, ConfigurationError, RateLimitError
from grubstars.store.quota import InMemoryQuotaLedger


def yelp_business(i):
    return {
        "id": f"biz-{i}",
        "name": f"Place {i}",
        "coordinates": {"latitude": 44.38 + i / 1000, "longitude": -79.69},
        "location": {"address1": f"{i} Dunlop St", "city": "Barrie", "state": "ON"},
        "phone": "+17055550100",
        "rating": 4.5,
        "review_count": 12,
        "categories": [{"alias": "pizza", "title": "Pizza"}],
        "image_url": "https://example.com/biz.jpg",
    }


async def collect(adapter, *args, **kwargs):
    return [item async for item in adapter.search_all_businesses(*args, **kwargs)]


@pytest.mark.asyncio
async def test_yelp_paginates_and_respects_limit():
    adapter = YelpAdapter(api_key="test")
    pages = [
        {"total": 120, "businesses": [yelp_business(i) for i in range(50)]},
        {"total": 120, "businesses": [yelp_business(i) for i in range(50, 100)]},
    ]

    with patch.object(adapter, "_get_json", AsyncMock(side_effect=pages)) as get_json:
        results = await collect(adapter, "barrie, ontario", "pizza", limit=60)

    assert len(results) == 60
    assert adapter.last_total == 60
    assert get_json.await_count == 2
    assert get_json.await_args_list[1].args[1]["offset"] == 50
    assert get_json.await_args_list[0].args[1]["term"] == "pizza"

    record, progress = results[0]
    assert record.external_id == "yelp:biz-0"
    assert record.address == "0 Dunlop St, Barrie, ON"
    assert record.categories == ["pizza"]
    assert record.photos == ["https://example.com/biz.jpg"]
    assert (progress.current, progress.total, progress.percent) == (1, 60, 1.7)


@pytest.mark.asyncio
async def test_unconfigured_adapter_raises_before_any_request():
    adapter = YelpAdapter(api_key="")

    with patch.object(adapter, "_get_json", AsyncMock()) as get_json:
        with pytest.raises(ConfigurationError, match="YELP_API_KEY"):
            await collect(adapter, "barrie, ontario")

    assert adapter.configured() is False
    get_json.assert_not_awaited()


@pytest.mark.asyncio
async def test_google_follows_page_tokens():
    adapter = GoogleAdapter(api_key="test")
    adapter.PAGE_TOKEN_DELAY = 0
    spot = {
        "place_id": "p1",
        "name": "Joe's Pizza",
        "formatted_address": "123 Main St, Barrie",
        "geometry": {"location": {"lat": 44.389, "lng": -79.69}},
        "rating": 4.2,
        "user_ratings_total": 80,
        "types": ["restaurant", "food", "point_of_interest"],
        "photos": [{"photo_reference": f"ref{i}"} for i in range(7)],
    }
    pages = [
        {"results": [spot], "next_page_token": "next"},
        {"results": [dict(spot, place_id="p2")]},
    ]

    with patch.object(adapter, "_get_json", AsyncMock(side_effect=pages)) as get_json:
        results = await collect(adapter, "barrie, ontario")

    assert [r.external_id for r, _ in results] == ["google:p1", "google:p2"]
    assert get_json.await_args_list[0].args[1]["query"] == "restaurants in barrie, ontario"
    assert get_json.await_args_list[1].args[1]["pagetoken"] == "next"
    record = results[0][0]
    assert record.categories == ["restaurant"]
    assert len(record.photos) == 5
    assert record.review_count == 80


@pytest.mark.asyncio
async def test_tripadvisor_search_and_details():
    adapter = TripAdvisorAdapter(api_key="test")
    search_page = {"data": [
        {"location_id": "111", "name": "Joe's Pizza", "address_obj": {"address_string": "123 Main St, Barrie"}},
        {"location_id": "222", "name": "Sushi Palace", "address_obj": {}},
    ]}

    with patch.object(adapter, "_get_json", AsyncMock(return_value=search_page)):
        results = await collect(adapter, "barrie, ontario", limit=1)

    assert len(results) == 1
    record = results[0][0]
    assert record.external_id == "tripadvisor:111"
    assert record.has_coordinates is False

    details = {
        "location_id": "111",
        "name": "Joe's Pizza",
        "latitude": "44.389",
        "longitude": "-79.69",
        "rating": "4.5",
        "num_reviews": "210",
        "phone": "+1 705-555-0100",
        "category": {"name": "Restaurant"},
        "subcategory": [{"name": "Pizza"}, {"name": "Restaurant"}],
    }
    with patch.object(adapter, "_get_json", AsyncMock(return_value=details)) as get_json:
        record = await adapter.get_business("tripadvisor:111")

    assert get_json.await_args.args[0] == "location/111"
    assert (record.latitude, record.longitude) == (44.389, -79.69)
    assert (record.rating, record.review_count) == (4.5, 210)
    assert record.categories == ["Restaurant", "Pizza"]


@pytest.mark.asyncio
async def test_zero_limit_yields_nothing():
    adapter = TripAdvisorAdapter(api_key="test")
    search_page = {"data": [{"location_id": "111", "name": "Joe's Pizza"}]}

    with patch.object(adapter, "_get_json", AsyncMock(return_value=search_page)):
        assert await collect(adapter, "barrie, ontario", limit=0) == []

    assert adapter.last_total == 0


def test_track_request_enforces_budget():
    ledger = InMemoryQuotaLedger()
    adapter = YelpAdapter(api_key="test", quota_ledger=ledger, request_limit=2)

    adapter.track_request()
    adapter.track_request()

    assert adapter.request_count() == 2
    assert adapter.remaining_requests() == 0
    assert adapter.requests_available() is False
    with pytest.raises(RateLimitError):
        adapter.track_request()


def test_unconstrained_budget():
    adapter = TripAdvisorAdapter(api_key="test")
    adapter.track_request()
    assert adapter.request_limit() is None
    assert adapter.remaining_requests() is None
    assert adapter.requests_available() is True


def mock_session(status, text):
    response = MagicMock(status=status)
    response.text = AsyncMock(return_value=text)
    session = MagicMock()
    session.get.return_value.__aenter__.return_value = response
    return session


@pytest.mark.asyncio
async def test_get_json_raises_api_error_on_non_2xx():
    ledger = InMemoryQuotaLedger()
    adapter = YelpAdapter(api_key="test", base_url="http://mock", quota_ledger=ledger)
    session = mock_session(400, '{"error": {"description": "Invalid location"}}')

    with patch.object(adapter, "_get_session", AsyncMock(return_value=session)):
        with pytest.raises(APIError) as exc_info:
            await adapter._get_json("businesses/search", {"location": "nowhere", "term": None})

    assert exc_info.value.status == 400
    assert str(exc_info.value) == "Yelp API error: Invalid location"
    assert session.get.call_args.kwargs["params"] == {"location": "nowhere"}
    assert session.get.call_args.args[0] == "http://mock/businesses/search"
    assert ledger.get_count("yelp") == 1


@pytest.mark.asyncio
async def test_get_json_returns_parsed_body():
    adapter = GoogleAdapter(api_key="test", base_url="http://mock/")
    session = mock_session(200, '{"results": []}')

    with patch.object(adapter, "_get_session", AsyncMock(return_value=session)):
        body = await adapter._get_json("textsearch/json")

    assert body == {"results": []}
    assert adapter.request_count() == 1


def test_strip_source_prefix():
    assert strip_source_prefix("yelp:abc123", "yelp") == "abc123"
    assert strip_source_prefix("abc123", "yelp") == "abc123"


def test_default_adapters_share_ledger():
    ledger = InMemoryQuotaLedger()
    adapters = default_adapters(quota_ledger=ledger)
    assert [a.source_name() for a in adapters] == ["yelp", "google", "tripadvisor"]
    assert all(a.quota_ledger is ledger for a in adapters)
