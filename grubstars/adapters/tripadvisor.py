from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from grubstars.adapters.base import BaseAdapter, make_progress, strip_source_prefix
from grubstars.config import TRIPADVISOR_API_BASE_URL, TRIPADVISOR_API_KEY, TRIPADVISOR_REQUEST_LIMIT
from grubstars.models import NormalizedRecord, Progress


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class TripAdvisorAdapter(BaseAdapter):
    """
    TripAdvisor Content API location search.

    Search results usually come back without coordinates, phone, categories
    or photos, so these records rarely merge at ingestion time; the duplicate
    sweep cleans them up afterwards.
    """
    SOURCE = "tripadvisor"
    DISPLAY_NAME = "TripAdvisor"
    API_KEY_ENV = "TRIPADVISOR_API_KEY"
    REQUEST_LIMIT = TRIPADVISOR_REQUEST_LIMIT

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            api_key=api_key if api_key is not None else TRIPADVISOR_API_KEY,
            base_url=base_url or TRIPADVISOR_API_BASE_URL,
            **kwargs,
        )

    def _error_message(self, body: Any) -> str:
        if isinstance(body, dict):
            return body.get("message") or body.get("error") or str(body)
        return str(body)

    async def search_all_businesses(
        self,
        location: str,
        categories: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Tuple[NormalizedRecord, Progress]]:
        self.ensure_configured()
        self.last_total = 0
        data = await self._get_json("location/search", {
            "searchQuery": f"{categories or 'restaurants'} in {location}",
            "key": self.api_key,
            "language": "en",
        })
        locations = data.get("data") or []
        if limit is not None:
            locations = locations[:limit]

        total = len(locations)
        self.last_total = total
        for index, item in enumerate(locations, start=1):
            yield self.normalize_location(item), make_progress(index, total)

    async def get_business(self, location_id: str) -> Optional[NormalizedRecord]:
        location_id = strip_source_prefix(str(location_id), self.SOURCE)
        data = await self._get_json(f"location/{location_id}", {"key": self.api_key, "language": "en"})
        if not data:
            return None
        record = self.normalize_location(data)
        record.phone = data.get("phone")
        record.categories = _extract_categories(data)
        return record

    def normalize_location(self, data: Dict[str, Any]) -> NormalizedRecord:
        address_obj = data.get("address_obj") or {}
        return NormalizedRecord(
            external_id=f"tripadvisor:{data.get('location_id')}",
            name=data.get("name") or "",
            address=_format_address(address_obj),
            latitude=_to_float(data.get("latitude", address_obj.get("latitude"))),
            longitude=_to_float(data.get("longitude", address_obj.get("longitude"))),
            rating=_to_float(data.get("rating")),
            review_count=_to_int(data.get("num_reviews")),
        )


def _format_address(address_obj: Dict[str, Any]) -> Optional[str]:
    if not address_obj:
        return None
    if address_obj.get("address_string"):
        return address_obj["address_string"]
    keys = ["street1", "street2", "city", "state", "postalcode", "country"]
    parts = [address_obj[k] for k in keys if address_obj.get(k)]
    return ", ".join(parts) or None


def _extract_categories(data: Dict[str, Any]) -> List[str]:
    names: List[str] = []
    category = (data.get("category") or {}).get("name")
    if category:
        names.append(category)
    for subcategory in data.get("subcategory") or []:
        if subcategory.get("name") and subcategory["name"] not in names:
            names.append(subcategory["name"])
    return names
