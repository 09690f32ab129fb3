"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import Tuple

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def offset_m(lat: float, lon: float, north_m: float, east_m: float) -> Tuple[float, float]:
    """Shift a coordinate by a small metric offset (flat-earth approximation)."""
    metres_per_degree = EARTH_RADIUS_M * math.pi / 180.0
    dlat = north_m / metres_per_degree
    dlon = east_m / (metres_per_degree * max(0.01, math.cos(math.radians(lat))))
    return lat + dlat, lon + dlon


def round_coordinate(value: float, places: int = 4) -> float:
    # 4 decimal places is roughly 11 m of latitude
    return round(float(value), places)
