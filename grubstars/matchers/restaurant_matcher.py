import math
from typing import Dict, List, Optional

from loguru import logger

from grubstars.models import MatchResult, NormalizedRecord, Restaurant
from grubstars.similarity import (
    haversine,
    normalize_address,
    normalize_name,
    normalize_phone,
    similarity,
)

# Scoring weights (total: 100 points possible)
NAME_WEIGHT = 35
ADDRESS_WEIGHT = 20
GPS_WEIGHT = 25
PHONE_WEIGHT = 20

# Minimum total score for two records to be considered the same restaurant
MATCH_THRESHOLD = 50

# Beyond this distance (meters) the GPS signal contributes nothing
MAX_GPS_DISTANCE = 200


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def name_score(name1: Optional[str], name2: Optional[str]) -> int:
    if not name1 or not name2:
        return 0
    return _round_half_up(similarity(normalize_name(name1), normalize_name(name2)) * NAME_WEIGHT)


def address_score(addr1: Optional[str], addr2: Optional[str]) -> int:
    if not addr1 or not addr2:
        return 0
    return _round_half_up(similarity(normalize_address(addr1), normalize_address(addr2)) * ADDRESS_WEIGHT)


def gps_score(record: NormalizedRecord, restaurant: Restaurant) -> int:
    if not record.has_coordinates:
        return 0
    if restaurant.latitude is None or restaurant.longitude is None:
        return 0

    distance = haversine(record.latitude, record.longitude, restaurant.latitude, restaurant.longitude)
    if distance > MAX_GPS_DISTANCE:
        return 0

    # Linear falloff: 0m = full points, MAX_GPS_DISTANCE = 0 points
    return _round_half_up((1.0 - distance / MAX_GPS_DISTANCE) * GPS_WEIGHT)


def phone_score(phone1: Optional[str], phone2: Optional[str]) -> int:
    if phone1 is None or phone2 is None:
        return 0
    digits1 = normalize_phone(phone1)
    digits2 = normalize_phone(phone2)
    if not digits1 or not digits2:
        return 0
    return PHONE_WEIGHT if digits1 == digits2 else 0


def calculate_component_scores(record: NormalizedRecord, restaurant: Restaurant) -> Dict[str, int]:
    """
    Score each matching signal independently.

    Args:
        record (NormalizedRecord): Incoming adapter record.
        restaurant (Restaurant): Existing catalog entry.

    Returns:
        Dict[str, int]: Points per signal, keyed by name/address/gps/phone.
    """
    return {
        "name": name_score(record.name, restaurant.name),
        "address": address_score(record.address, restaurant.address),
        "gps": gps_score(record, restaurant),
        "phone": phone_score(record.phone, restaurant.phone),
    }


def calculate_score(record: NormalizedRecord, restaurant: Restaurant) -> int:
    return sum(calculate_component_scores(record, restaurant).values())


def find_match(
    record: NormalizedRecord,
    candidates: List[Restaurant],
    threshold: int = MATCH_THRESHOLD,
) -> Optional[MatchResult]:
    """
    Pick the candidate that most likely describes the same restaurant as `record`.

    Candidates are scored in order and the first one with the highest score
    wins ties. The winner is returned only if it reaches `threshold`.

    Args:
        record (NormalizedRecord): Incoming adapter record.
        candidates (List[Restaurant]): Catalog entries to compare against.
        threshold (int): Minimum composite score required to match.

    Returns:
        Optional[MatchResult]: Best candidate and its score, or None.
    """
    logger.debug(f"Matcher: looking for match for '{record.name}' among {len(candidates)} candidate(s)")
    if not candidates:
        return None

    best: Optional[Restaurant] = None
    best_score = 0

    for candidate in candidates:
        scores = calculate_component_scores(record, candidate)
        score = sum(scores.values())
        logger.debug(
            f"Matcher: '{record.name}' vs '{candidate.name}' (id={candidate.id}) "
            f"name={scores['name']}/{NAME_WEIGHT} address={scores['address']}/{ADDRESS_WEIGHT} "
            f"gps={scores['gps']}/{GPS_WEIGHT} phone={scores['phone']}/{PHONE_WEIGHT} "
            f"total={score}/100"
        )
        if score > best_score:
            best_score = score
            best = candidate

    if best is None or best_score < threshold:
        logger.debug(f"Matcher: no match for '{record.name}' (best score {best_score} < {threshold})")
        return None

    logger.debug(f"✅ Matcher: '{record.name}' matches '{best.name}' (score: {best_score})")
    return MatchResult(restaurant=best, score=best_score)
