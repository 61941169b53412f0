from __future__ import annotations

import math
from typing import Optional

from rapidfuzz.distance import Levenshtein

from .normalizer import normalize, normalize_street_name

EARTH_RADIUS_KM = 6371.0


def edit_ratio(a: str, b: str) -> float:
    if a == b:
        return 1.0
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    distance = Levenshtein.distance(a, b)
    return max(0.0, 1.0 - distance / max_len)


def string_similarity(first: Optional[str], second: Optional[str]) -> float:
    if not first or not second:
        return 0.0
    return edit_ratio(normalize(first), normalize(second))


def street_name_similarity(first: Optional[str], second: Optional[str]) -> float:
    if not first or not second:
        return 0.0
    stripped = edit_ratio(normalize_street_name(first), normalize_street_name(second))
    return max(string_similarity(first, second), stripped)


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c * 1000.0
