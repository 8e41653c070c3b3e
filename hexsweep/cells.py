"""Cell records tracked by the pipeline.

A cell's lineage (top-level or child of a split parent) and its outcome
(pending, fetched, failed, split) are modelled as small tagged dataclasses so
that a split without children, or a child coarser than its parent, cannot be
built.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple, Union

from .geo import LatLng
from .grid import GridIndex

QUEUED = "queued"
PROCESSING = "processing"
FETCHED = "fetched"
FAILED = "failed"
SPLIT = "split"

ALL_STATUSES = (QUEUED, PROCESSING, FETCHED, FAILED, SPLIT)
TERMINAL_STATUSES = (FETCHED, FAILED, SPLIT)


@dataclass(frozen=True)
class TopLevel:
    pass


@dataclass(frozen=True)
class ChildOf:
    parent_id: str
    parent_resolution: int


Lineage = Union[TopLevel, ChildOf]


@dataclass(frozen=True)
class Pending:
    status: str = QUEUED

    def __post_init__(self) -> None:
        if self.status not in (QUEUED, PROCESSING):
            raise ValueError(f"Pending status must be queued or processing, got {self.status}")


@dataclass(frozen=True)
class Fetched:
    result_count: int
    coverage_quality: str
    error: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    error: str
    result_count: int = 0


@dataclass(frozen=True)
class Split:
    child_ids: Tuple[str, ...]
    result_count: int

    def __post_init__(self) -> None:
        if not self.child_ids:
            raise ValueError("A split outcome needs at least one child id")


Outcome = Union[Pending, Fetched, Failed, Split]


@dataclass
class Cell:
    cell_id: str
    resolution: int
    center: LatLng
    boundary: Tuple[LatLng, ...] = ()
    lineage: Lineage = field(default_factory=TopLevel)
    outcome: Outcome = field(default_factory=Pending)

    def __post_init__(self) -> None:
        if isinstance(self.lineage, ChildOf) and self.resolution <= self.lineage.parent_resolution:
            raise ValueError(
                f"Child cell {self.cell_id} (res {self.resolution}) must be finer than "
                f"its parent {self.lineage.parent_id} (res {self.lineage.parent_resolution})"
            )

    @classmethod
    def from_grid(cls, cell_id: str, grid: GridIndex, parent: Optional["Cell"] = None) -> "Cell":
        """Build a queued cell from grid lookups.

        Resolution and center are required. A boundary lookup failure leaves
        the boundary empty, which the coverage planner treats as unknown
        geometry.
        """
        resolution = grid.cell_resolution(cell_id)
        center = grid.cell_to_center(cell_id)
        try:
            boundary = tuple(grid.cell_to_boundary(cell_id))
        except Exception:
            boundary = ()
        lineage: Lineage = TopLevel()
        if parent is not None:
            lineage = ChildOf(parent_id=parent.cell_id, parent_resolution=parent.resolution)
        return cls(cell_id=cell_id, resolution=resolution, center=center, boundary=boundary, lineage=lineage)

    @property
    def status(self) -> str:
        if isinstance(self.outcome, Pending):
            return self.outcome.status
        if isinstance(self.outcome, Fetched):
            return FETCHED
        if isinstance(self.outcome, Failed):
            return FAILED
        return SPLIT

    @property
    def parent_id(self) -> Optional[str]:
        if isinstance(self.lineage, ChildOf):
            return self.lineage.parent_id
        return None

    @property
    def is_top_level(self) -> bool:
        return isinstance(self.lineage, TopLevel)

    @property
    def child_ids(self) -> Tuple[str, ...]:
        if isinstance(self.outcome, Split):
            return self.outcome.child_ids
        return ()

    @property
    def result_count(self) -> Optional[int]:
        if isinstance(self.outcome, Pending):
            return None
        return self.outcome.result_count

    @property
    def coverage_quality(self) -> str:
        if isinstance(self.outcome, Fetched):
            return self.outcome.coverage_quality
        if isinstance(self.outcome, Split):
            return "dense-split"
        return "unknown"

    @property
    def error(self) -> Optional[str]:
        if isinstance(self.outcome, (Fetched, Failed)):
            return self.outcome.error
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_outcome(self, outcome: Outcome) -> "Cell":
        return replace(self, outcome=outcome)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "resolution": self.resolution,
            "lat": self.center[0],
            "lng": self.center[1],
            "parent_id": self.parent_id,
            "child_ids": list(self.child_ids),
            "status": self.status,
            "result_count": self.result_count,
            "coverage_quality": self.coverage_quality,
            "error": self.error,
        }
