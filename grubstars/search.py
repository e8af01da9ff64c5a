"""
Read side of the catalog: name and category search over indexed restaurants.
"""
from typing import List, Optional, Union

from loguru import logger

from grubstars.errors import LocationNotIndexedError
from grubstars.models import Restaurant
from grubstars.ranking import SortOrder
from grubstars.store.catalog import CatalogStore


class SearchService:
    """
    Search the catalog by restaurant name or category.

    Results come back with ratings and external ids loaded, in relevance
    order unless `sort` asks for overall rank.

    Example:
        search = SearchService(store)
        hits = search.search_by_name("tim hortons", location="barrie, ontario", sort="overall_rank")
    """

    def __init__(self, store: CatalogStore):
        self.store = store

    def search_by_name(
        self,
        query: str,
        location: Optional[str] = None,
        sort: Union[SortOrder, str, None] = SortOrder.RELEVANCE,
    ) -> List[Restaurant]:
        """
        Restaurants whose name contains `query` or fuzzy-matches it.

        Args:
            query (str): Name, or part of one. Misspellings are tolerated.
            location (Optional[str]): Restrict results to an indexed location.
            sort (SortOrder | str): "relevance" (default) or "overall_rank".

        Returns:
            List[Restaurant]: Matching restaurants.

        Raises:
            LocationNotIndexedError: `location` was never indexed.
        """
        if location:
            self._validate_location(location)
        results = self.store.search_by_name(query, location=location, sort=sort)
        logger.debug(f"🔎 name '{query}' -> {len(results)} results")
        return results

    def search_by_category(
        self,
        category: str,
        location: Optional[str] = None,
        sort: Union[SortOrder, str, None] = SortOrder.RELEVANCE,
    ) -> List[Restaurant]:
        """Restaurants in a category that contains or resembles `category`."""
        if location:
            self._validate_location(location)
        results = self.store.search_by_category(category, location=location, sort=sort)
        logger.debug(f"🔎 category '{category}' -> {len(results)} results")
        return results

    def find_by_name(self, name: str, location: Optional[str] = None) -> Optional[Restaurant]:
        """Best name match, or None."""
        results = self.search_by_name(name, location=location)
        return results[0] if results else None

    def all_indexed_locations(self) -> List[str]:
        return self.store.all_indexed_locations()

    def _validate_location(self, location: str) -> None:
        indexed_locations = self.all_indexed_locations()
        if location.strip().lower() not in indexed_locations:
            raise LocationNotIndexedError(
                f"Location '{location}' has not been indexed. "
                f"Available locations: {', '.join(indexed_locations)}"
            )
