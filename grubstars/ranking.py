"""
Result ordering for catalog searches.
"""
import math
from enum import Enum
from typing import List, Optional, Union

from grubstars.models import Restaurant

# Weight of the review-volume boost relative to one rating star
REVIEW_BOOST = 0.5


class SortOrder(str, Enum):
    RELEVANCE = "relevance"
    OVERALL_RANK = "overall_rank"

    @classmethod
    def parse(cls, value: Union["SortOrder", str, None]) -> "SortOrder":
        """Unknown or missing values fall back to relevance."""
        if isinstance(value, SortOrder):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.RELEVANCE


def overall_rank_score(restaurant: Restaurant) -> Optional[float]:
    """
    Composite quality score: mean rating across sources plus a logarithmic
    boost for total review volume. None when no source has rated it.
    """
    average = restaurant.average_rating
    if average is None:
        return None
    return average + REVIEW_BOOST * math.log10(1 + restaurant.total_reviews)


def apply_sort(results: List[Restaurant], sort: Union[SortOrder, str, None]) -> List[Restaurant]:
    """
    Reorder relevance-ordered results.

    Args:
        results (List[Restaurant]): Results already in relevance order, with ratings loaded.
        sort (SortOrder | str): Requested order.

    Returns:
        List[Restaurant]: Results in the requested order. Ties keep relevance order.
    """
    if SortOrder.parse(sort) is SortOrder.RELEVANCE:
        return list(results)

    rated = [(overall_rank_score(r), r) for r in results]
    ranked = sorted((pair for pair in rated if pair[0] is not None), key=lambda pair: -pair[0])
    unrated = [r for score, r in rated if score is None]
    return [r for _, r in ranked] + unrated
