"""
String and geo similarity primitives used by the matcher, the duplicate sweep
and the SQL search functions. Everything here is a pure function.
"""
import math
import re
from typing import Optional

from rapidfuzz.distance import Levenshtein

EARTH_RADIUS_METERS = 6_371_000

_PUNCTUATION = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_STREET_TYPES = re.compile(
    r"\b(street|st|avenue|ave|road|rd|drive|dr|boulevard|blvd|lane|ln)\b"
)
_NON_DIGITS = re.compile(r"\D")


def levenshtein(a: Optional[str], b: Optional[str]) -> int:
    """Edit distance between two strings, ignoring case."""
    return Levenshtein.distance((a or "").lower(), (b or "").lower())


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Normalized Levenshtein similarity in [0, 1].

    Args:
        a (str): First string.
        b (str): Second string.

    Returns:
        float: 1.0 for identical strings (including two empty strings),
               otherwise 1 - distance / length of the longer string.
    """
    s1 = (a or "").lower()
    s2 = (b or "").lower()
    max_len = max(len(s1), len(s2))
    if max_len == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(s1, s2) / max_len


def fuzzy_match(text: Optional[str], query: Optional[str]) -> float:
    """
    Word-level fuzzy score of `query` against `text`, in [0, 1].

    A single-word query scores as its best similarity against any word of the
    text ("monkys" vs "Flying Monkeys Brewery"). A multi-word query scores as
    the mean of each query word's best similarity against the text words.

    Args:
        text (str): Text being searched, typically a restaurant name.
        query (str): User query.

    Returns:
        float: Match score, 0.0 when either side has no words.
    """
    text_words = (text or "").lower().split()
    query_words = (query or "").lower().split()
    if not text_words or not query_words:
        return 0.0

    def best_for(word: str) -> float:
        return max(similarity(word, candidate) for candidate in text_words)

    if len(query_words) == 1:
        return best_for(query_words[0])
    return sum(best_for(word) for word in query_words) / len(query_words)


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates, in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def normalize_name(name: str) -> str:
    """Lowercase, turn punctuation into spaces and collapse whitespace."""
    cleaned = _PUNCTUATION.sub(" ", name.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def normalize_address(address: str) -> str:
    """Like normalize_name, but also drops street-type words (st, ave, rd...)."""
    cleaned = _PUNCTUATION.sub(" ", address.lower())
    cleaned = _STREET_TYPES.sub(" ", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def normalize_phone(phone: str) -> str:
    """Keep digits only."""
    return _NON_DIGITS.sub("", phone)
