"""H3 grid-indexing adapter.

The sweep treats every lookup here as a pure function. Callers decide what a
failure means; this module lets h3's exceptions propagate.
"""
from __future__ import annotations

import math
from typing import List, Protocol, Tuple

import h3

from .geo import LatLng


class GridIndex(Protocol):
    def is_valid_cell(self, cell_id: str) -> bool: ...

    def cell_to_center(self, cell_id: str) -> LatLng: ...

    def cell_to_boundary(self, cell_id: str) -> Tuple[LatLng, ...]: ...

    def cell_area_km2(self, cell_id: str) -> float: ...

    def cell_resolution(self, cell_id: str) -> int: ...

    def cell_to_children(self, cell_id: str, target_resolution: int) -> List[str]: ...

    def point_to_cell(self, lat: float, lng: float, resolution: int) -> str: ...

    def expected_inradius_m(self, resolution: int) -> float: ...


class H3Grid:
    def is_valid_cell(self, cell_id: str) -> bool:
        try:
            return bool(h3.is_valid_cell(cell_id))
        except (TypeError, ValueError):
            return False

    def cell_to_center(self, cell_id: str) -> LatLng:
        lat, lng = h3.cell_to_latlng(cell_id)
        return (float(lat), float(lng))

    def cell_to_boundary(self, cell_id: str) -> Tuple[LatLng, ...]:
        return tuple((float(lat), float(lng)) for lat, lng in h3.cell_to_boundary(cell_id))

    def cell_area_km2(self, cell_id: str) -> float:
        return float(h3.cell_area(cell_id, unit="km^2"))

    def cell_resolution(self, cell_id: str) -> int:
        return int(h3.get_resolution(cell_id))

    def cell_to_children(self, cell_id: str, target_resolution: int) -> List[str]:
        return list(h3.cell_to_children(cell_id, target_resolution))

    def point_to_cell(self, lat: float, lng: float, resolution: int) -> str:
        return h3.latlng_to_cell(lat, lng, resolution)

    def expected_inradius_m(self, resolution: int) -> float:
        # In-radius of a regular hexagon is edge * sqrt(3) / 2.
        edge_m = float(h3.average_hexagon_edge_length(resolution, unit="m"))
        return edge_m * math.sqrt(3) / 2.0
