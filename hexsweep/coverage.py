"""Search probe planning for a single hexagonal cell."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .cells import Cell
from .errors import CoverageGenerationError
from .geo import LatLng, max_distance_m, midpoint
from .grid import GridIndex

logger = logging.getLogger(__name__)

PRIMARY = "primary"
CORNER = "corner"
EDGE = "edge"


@dataclass(frozen=True)
class SearchProbe:
    lat: float
    lng: float
    radius_m: int
    role: str
    description: str


class CoveragePlanner:
    """Graduated probe plans: more, smaller circles for larger cells.

    The primary probe sits at the center and is capped by the in-radius of the
    cell's own resolution. Medium cells add two corner probes; large cells add
    three corners and two edge midpoints.
    """

    def __init__(self, grid: GridIndex, max_radius_m: Optional[int] = None) -> None:
        self.grid = grid
        self.max_radius_m = int(max_radius_m if max_radius_m is not None else config.SEARCH_MAX_RADIUS_M)

    def plan(self, cell: Cell) -> List[SearchProbe]:
        try:
            inradius = self.grid.expected_inradius_m(cell.resolution)
            primary_radius = self._clamp(
                min(
                    max_distance_m(cell.center, cell.boundary) * config.PRIMARY_VERTEX_FACTOR,
                    inradius * config.PRIMARY_INRADIUS_FACTOR,
                )
            )
            area = self.grid.cell_area_km2(cell.cell_id)
        except Exception as exc:
            logger.warning("Coverage geometry unavailable for %s (%s); using fallback radius", cell.cell_id, exc)
            return [self._primary(cell.center, config.FALLBACK_PRIMARY_RADIUS_M)]

        probes = [self._primary(cell.center, primary_radius)]
        if area > config.MEDIUM_CELL_MAX_KM2:
            probes.extend(self._corners(cell.boundary, primary_radius, inradius, config.LARGE_CELL_CORNERS))
            probes.extend(self._edges(cell.boundary, primary_radius, inradius, config.LARGE_CELL_EDGES))
        elif area > config.SMALL_CELL_MAX_KM2:
            probes.extend(self._corners(cell.boundary, primary_radius, inradius, config.MEDIUM_CELL_CORNERS))

        logger.debug(
            "Planned %s probes for %s (area=%.2f km2, primary=%sm)",
            len(probes),
            cell.cell_id,
            area,
            primary_radius,
        )
        return probes

    def validate(self, cell: Cell, probes: Sequence[SearchProbe]) -> None:
        try:
            area = self.grid.cell_area_km2(cell.cell_id)
        except Exception:
            area = 0.0
        validate_plan(probes, area, cell_id=cell.cell_id)

    def _clamp(self, radius: float) -> int:
        return max(1, min(int(round(radius)), self.max_radius_m))

    def _primary(self, center: LatLng, radius: float) -> SearchProbe:
        radius_m = self._clamp(radius)
        return SearchProbe(
            lat=center[0],
            lng=center[1],
            radius_m=radius_m,
            role=PRIMARY,
            description=f"Center point with {radius_m / 1000:.1f}km radius",
        )

    def _corners(
        self, boundary: Sequence[LatLng], primary_radius: int, inradius: float, count: int
    ) -> List[SearchProbe]:
        radius_m = self._clamp(
            min(primary_radius * config.CORNER_PRIMARY_FACTOR, inradius * config.SECONDARY_INRADIUS_FACTOR)
        )
        probes = []
        for i, (lat, lng) in enumerate(boundary[: min(count, len(boundary))]):
            probes.append(
                SearchProbe(lat=lat, lng=lng, radius_m=radius_m, role=CORNER, description=f"Corner {i + 1} coverage point")
            )
        return probes

    def _edges(
        self, boundary: Sequence[LatLng], primary_radius: int, inradius: float, count: int
    ) -> List[SearchProbe]:
        radius_m = self._clamp(
            min(primary_radius * config.EDGE_PRIMARY_FACTOR, inradius * config.SECONDARY_INRADIUS_FACTOR)
        )
        probes = []
        n = len(boundary)
        for i in range(min(count, n)):
            lat, lng = midpoint(boundary[i], boundary[(i + 1) % n])
            probes.append(
                SearchProbe(lat=lat, lng=lng, radius_m=radius_m, role=EDGE, description=f"Edge {i + 1} midpoint coverage")
            )
        return probes


def validate_plan(probes: Sequence[SearchProbe], area_km2: float, cell_id: str = "") -> None:
    if not probes:
        raise CoverageGenerationError(f"No search probes generated for cell {cell_id}")
    primaries = [p for p in probes if p.role == PRIMARY]
    if len(primaries) != 1:
        raise CoverageGenerationError(
            f"Cell {cell_id} plan must have exactly one primary probe, got {len(primaries)}"
        )
    corners = [p for p in probes if p.role == CORNER]
    if area_km2 > config.LARGE_CELL_VALIDATION_KM2 and len(corners) < config.LARGE_CELL_MIN_CORNERS:
        raise CoverageGenerationError(
            f"Insufficient corner coverage for cell {cell_id}: {len(corners)} corners for {area_km2:.1f} km2"
        )


def coverage_stats(probes: Sequence[SearchProbe]) -> Dict[str, Any]:
    primary = next((p for p in probes if p.role == PRIMARY), None)
    total = len(probes)
    if total >= 5:
        estimated = "excellent"
    elif total >= 3:
        estimated = "good"
    elif total >= 2:
        estimated = "fair"
    else:
        estimated = "poor"
    return {
        "total_points": total,
        "primary_radius_m": primary.radius_m if primary else 0,
        "corner_points": sum(1 for p in probes if p.role == CORNER),
        "edge_points": sum(1 for p in probes if p.role == EDGE),
        "estimated_coverage": estimated,
    }
