from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from loguru import logger

from grubstars.adapters.base import BaseAdapter, make_progress
from grubstars.config import YELP_API_BASE_URL, YELP_API_KEY, YELP_REQUEST_LIMIT
from grubstars.models import NormalizedRecord, Progress


class YelpAdapter(BaseAdapter):
    """Yelp Fusion business search. Paginates by offset, 50 per page, 240 results max."""
    SOURCE = "yelp"
    DISPLAY_NAME = "Yelp"
    API_KEY_ENV = "YELP_API_KEY"
    REQUEST_LIMIT = YELP_REQUEST_LIMIT

    PAGE_SIZE = 50
    MAX_RESULTS = 240

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            api_key=api_key if api_key is not None else YELP_API_KEY,
            base_url=base_url or YELP_API_BASE_URL,
            **kwargs,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _error_message(self, body: Any) -> str:
        if isinstance(body, dict):
            return (body.get("error") or {}).get("description") or str(body)
        return str(body)

    async def search_all_businesses(
        self,
        location: str,
        categories: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Tuple[NormalizedRecord, Progress]]:
        self.ensure_configured()
        max_results = min(limit, self.MAX_RESULTS) if limit is not None else self.MAX_RESULTS
        offset = 0
        processed = 0
        total: Optional[int] = None
        self.last_total = 0

        while True:
            # Categories go in as both free text (term) and alias filter; Yelp
            # silently ignores unknown aliases, so term does the real filtering.
            data = await self._get_json("businesses/search", {
                "location": location,
                "limit": self.PAGE_SIZE,
                "offset": offset,
                "term": categories,
                "categories": categories,
            })
            if total is None:
                total = min(data.get("total") or 0, max_results)
                self.last_total = total

            businesses = [self.normalize_business(b) for b in data.get("businesses") or []]
            if not businesses:
                break

            for business in businesses:
                if processed >= max_results:
                    break
                processed += 1
                yield business, make_progress(processed, total or processed)

            offset += self.PAGE_SIZE
            if offset >= max_results or offset >= total or processed >= max_results:
                break

        logger.debug(f"Yelp: {processed} businesses for '{location}' (reported total {total})")

    async def get_business(self, business_id: str) -> Optional[NormalizedRecord]:
        data = await self._get_json(f"businesses/{business_id}")
        return self.normalize_business(data)

    def normalize_business(self, data: Dict[str, Any]) -> NormalizedRecord:
        coordinates = data.get("coordinates") or {}
        photos = data.get("photos") or ([data["image_url"]] if data.get("image_url") else [])
        return NormalizedRecord(
            external_id=f"yelp:{data.get('id')}",
            name=data.get("name") or "",
            address=_format_address(data.get("location")),
            latitude=coordinates.get("latitude"),
            longitude=coordinates.get("longitude"),
            phone=data.get("phone") or None,
            rating=data.get("rating"),
            review_count=data.get("review_count"),
            categories=[c["alias"] for c in data.get("categories") or [] if c.get("alias")],
            photos=list(photos),
        )


def _format_address(location: Optional[Dict[str, Any]]) -> Optional[str]:
    if not location:
        return None
    keys = ["address1", "address2", "address3", "city", "state", "zip_code", "country"]
    parts: List[str] = [location[k] for k in keys if location.get(k)]
    return ", ".join(parts) or None
