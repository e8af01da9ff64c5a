import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from grubstars.adapters.base import BaseAdapter, make_progress
from grubstars.config import GOOGLE_API_BASE_URL, GOOGLE_API_KEY, GOOGLE_REQUEST_LIMIT
from grubstars.models import NormalizedRecord, Progress

# Place types too generic to be useful as categories
IGNORED_TYPES = {"point_of_interest", "establishment", "food"}

DETAIL_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,geometry,rating,"
    "user_ratings_total,types,photos"
)


class GoogleAdapter(BaseAdapter):
    """Google Places text search. Follows next_page_token for up to 60 results."""
    SOURCE = "google"
    DISPLAY_NAME = "Google"
    API_KEY_ENV = "GOOGLE_API_KEY"
    REQUEST_LIMIT = GOOGLE_REQUEST_LIMIT

    MAX_RESULTS = 60
    # Google rejects a next_page_token used immediately after it is issued
    PAGE_TOKEN_DELAY = 2.0

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            api_key=api_key if api_key is not None else GOOGLE_API_KEY,
            base_url=base_url or GOOGLE_API_BASE_URL,
            **kwargs,
        )

    def _error_message(self, body: Any) -> str:
        if isinstance(body, dict):
            return body.get("error_message") or body.get("status") or str(body)
        return str(body)

    async def search_all_businesses(
        self,
        location: str,
        categories: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Tuple[NormalizedRecord, Progress]]:
        self.ensure_configured()
        max_results = min(limit, self.MAX_RESULTS) if limit is not None else self.MAX_RESULTS
        query = _build_query(location, categories)
        spots: List[Dict[str, Any]] = []
        next_page_token: Optional[str] = None
        self.last_total = 0

        while True:
            data = await self._get_json("textsearch/json", {
                "query": query,
                "key": self.api_key,
                "pagetoken": next_page_token,
            })
            spots.extend(data.get("results") or [])

            next_page_token = data.get("next_page_token")
            if not next_page_token or len(spots) >= max_results:
                break
            await asyncio.sleep(self.PAGE_TOKEN_DELAY)

        spots = spots[:max_results]
        total = len(spots)
        self.last_total = total
        for index, spot in enumerate(spots, start=1):
            yield self.normalize_spot(spot), make_progress(index, total)

    async def get_business(self, place_id: str) -> Optional[NormalizedRecord]:
        data = await self._get_json("details/json", {
            "placeid": place_id,
            "fields": DETAIL_FIELDS,
            "key": self.api_key,
        })
        result = data.get("result")
        return self.normalize_spot(result) if result else None

    def normalize_spot(self, spot: Dict[str, Any]) -> NormalizedRecord:
        geometry = (spot.get("geometry") or {}).get("location") or {}
        return NormalizedRecord(
            external_id=f"google:{spot.get('place_id')}",
            name=spot.get("name") or "",
            address=spot.get("formatted_address") or spot.get("vicinity"),
            latitude=geometry.get("lat"),
            longitude=geometry.get("lng"),
            phone=spot.get("formatted_phone_number"),
            rating=spot.get("rating"),
            review_count=spot.get("user_ratings_total"),
            categories=[t for t in spot.get("types") or [] if t not in IGNORED_TYPES],
            photos=self._photo_urls(spot),
        )

    def _photo_urls(self, spot: Dict[str, Any]) -> List[str]:
        urls = []
        for photo in (spot.get("photos") or [])[:5]:
            # Mock servers hand back direct URLs; the real API only gives references
            if photo.get("url"):
                urls.append(photo["url"])
            elif photo.get("photo_reference"):
                urls.append(
                    f"{self.base_url}/photo?maxwidth=400"
                    f"&photoreference={photo['photo_reference']}&key={self.api_key}"
                )
        return urls


def _build_query(location: str, categories: Optional[str]) -> str:
    return f"{categories or 'restaurants'} in {location}"
