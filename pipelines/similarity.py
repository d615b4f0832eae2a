"""Pairwise similarity scoring between two property listings.

The score is the share of *available* evidence that agrees: every signal adds
its weight to the possible total only when both listings carry the data, so a
sparse listing is never penalised for what it does not say.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from rapidfuzz import fuzz

from listing_schema import PropertyRecord, SimilarityResult
from pipelines.address import is_generic_address, normalize_address

GeoDistance = Callable[[float, float, float, float], float]

GEO_WEIGHT = 40.0
ADDRESS_WEIGHT = 40.0
PRICE_WEIGHT = 20.0
SIZE_WEIGHT = 20.0
FLOOR_WEIGHT = 10.0
BEDROOM_WEIGHT = 10.0

GEO_TOLERANCE_M = 500.0
ADDRESS_SIMILARITY_THRESHOLD = 0.65
PRICE_TOL_STRICT = 0.05
PRICE_TOL_LOOSE = 0.10
SIZE_TOL_STRICT_M2 = 5.0
SIZE_TOL_LOOSE_M2 = 10.0

INELIGIBLE_REASON = "ineligible: generic/missing address"


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return haversine distance in meters."""
    radius = 6_371_000  # meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return radius * c


@dataclass
class ScoreAccumulator:
    """Running totals of earned and possible points for one pair."""

    earned: float = 0.0
    possible: float = 0.0
    reasons: List[str] = field(default_factory=list)

    def add(self, weight: float, points: float = 0.0, reason: Optional[str] = None) -> None:
        self.possible += weight
        self.earned += points
        if reason:
            self.reasons.append(reason)

    @property
    def score(self) -> float:
        if self.possible <= 0:
            return 0.0
        return self.earned / self.possible * 100.0

    def result(self) -> SimilarityResult:
        return SimilarityResult(score=self.score, reasons=list(self.reasons))


def address_similarity(a: str, b: str) -> float:
    """Token-set fuzzy ratio of two normalised addresses in [0, 1]."""
    if not a or not b:
        return 0.0
    return fuzz.token_set_ratio(a, b) / 100.0


def geo_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord, geo_distance: GeoDistance) -> bool:
    """Add the geographic signal. Return False when either side lacks coordinates."""
    if not (a.has_coordinates and b.has_coordinates):
        return False
    distance = geo_distance(float(a.latitude), float(a.longitude), float(b.latitude), float(b.longitude))
    if distance <= GEO_TOLERANCE_M:
        points = max(0.0, GEO_WEIGHT * (1 - distance / GEO_TOLERANCE_M))
        acc.add(GEO_WEIGHT, points, f"geographic distance: {round(distance)}m")
    else:
        acc.add(GEO_WEIGHT)
    return True


def address_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord) -> None:
    similarity = address_similarity(normalize_address(a.address), normalize_address(b.address))
    # Below the threshold this is "no signal", not a proven mismatch.
    if similarity > ADDRESS_SIMILARITY_THRESHOLD:
        acc.add(ADDRESS_WEIGHT, similarity * ADDRESS_WEIGHT, f"similar address ({similarity * 100:.0f}%)")


def price_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord) -> None:
    if not a.price or not b.price:
        return
    avg_price = (a.price + b.price) / 2
    diff = abs(a.price - b.price) / avg_price
    if diff < PRICE_TOL_STRICT:
        acc.add(PRICE_WEIGHT, PRICE_WEIGHT, f"very similar price (diff {diff * 100:.1f}%)")
    elif diff < PRICE_TOL_LOOSE:
        acc.add(PRICE_WEIGHT, 15.0, f"similar price (diff {diff * 100:.1f}%)")
    else:
        acc.add(PRICE_WEIGHT)


def size_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord) -> None:
    if not a.size or not b.size:
        return
    diff = abs(a.size - b.size)
    if diff <= SIZE_TOL_STRICT_M2:
        acc.add(SIZE_WEIGHT, SIZE_WEIGHT, f"same size ({_size_pair(a.size, b.size)} m2)")
    elif diff <= SIZE_TOL_LOOSE_M2:
        acc.add(SIZE_WEIGHT, 15.0, f"similar size ({_size_pair(a.size, b.size)} m2)")
    else:
        acc.add(SIZE_WEIGHT)


def floor_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord) -> None:
    floor_a = _floor_key(a.floor)
    floor_b = _floor_key(b.floor)
    if floor_a is None or floor_b is None:
        return
    if floor_a == floor_b:
        acc.add(FLOOR_WEIGHT, FLOOR_WEIGHT, f"same floor ({floor_a})")
    else:
        acc.add(FLOOR_WEIGHT)


def bedroom_signal(acc: ScoreAccumulator, a: PropertyRecord, b: PropertyRecord) -> None:
    if not a.bedrooms or not b.bedrooms:
        return
    if a.bedrooms == b.bedrooms:
        acc.add(BEDROOM_WEIGHT, BEDROOM_WEIGHT, f"same bedroom count ({a.bedrooms})")
    else:
        acc.add(BEDROOM_WEIGHT)


def is_comparable(a: PropertyRecord, b: PropertyRecord) -> bool:
    return not is_generic_address(a.address) and not is_generic_address(b.address)


def score_pair(a: PropertyRecord, b: PropertyRecord, geo_distance: GeoDistance = haversine_m) -> SimilarityResult:
    """Score how likely two listings describe the same physical property (0-100)."""
    if not is_comparable(a, b):
        return SimilarityResult(score=0.0, reasons=[INELIGIBLE_REASON])

    acc = ScoreAccumulator()
    # Geography and address are proxies for the same fact; never count both.
    if not geo_signal(acc, a, b, geo_distance):
        address_signal(acc, a, b)
    price_signal(acc, a, b)
    size_signal(acc, a, b)
    floor_signal(acc, a, b)
    bedroom_signal(acc, a, b)
    return acc.result()


def _floor_key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def _size_pair(first: float, second: float) -> str:
    low, high = sorted((first, second))
    return f"{low:g} vs {high:g}"
