"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import Sequence, Tuple

LatLng = Tuple[float, float]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def haversine_m(a: LatLng, b: LatLng) -> float:
    return haversine_km(a[0], a[1], b[0], b[1]) * 1000.0


def max_distance_m(center: LatLng, vertices: Sequence[LatLng]) -> float:
    if not vertices:
        raise ValueError("No vertices to measure")
    return max(haversine_m(center, v) for v in vertices)


def midpoint(a: LatLng, b: LatLng) -> LatLng:
    # Coordinate average, not the great-circle midpoint.
    return ((a[0] + b[0]) / 2.0, (a[1] + b[1]) / 2.0)
