"""Dense-cell detection, splitting and child result merging."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from . import config
from .cells import Cell
from .errors import SplitConfigurationError
from .grid import GridIndex
from .search_api import ExternalItem
from .search_client import CellResult, dedupe_items

logger = logging.getLogger(__name__)

COMPLETE = "complete"
PARTIAL_DENSE = "partial-dense"
PARTIAL_EMPTY = "partial-empty"


class ParentChildIndex:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._children: Dict[str, List[str]] = {}
        self._parents: Dict[str, str] = {}

    def register(self, parent_id: str, child_ids: List[str]) -> None:
        with self._lock:
            for child_id in child_ids:
                owner = self._parents.get(child_id)
                if owner is not None and owner != parent_id:
                    raise ValueError(f"Cell {child_id} already belongs to {owner}")
            existing = self._children.setdefault(parent_id, [])
            for child_id in child_ids:
                if child_id not in self._parents:
                    existing.append(child_id)
                    self._parents[child_id] = parent_id

    def children_of(self, parent_id: str) -> List[str]:
        with self._lock:
            return list(self._children.get(parent_id, []))

    def parent_of(self, child_id: str) -> Optional[str]:
        with self._lock:
            return self._parents.get(child_id)

    def has_children(self, parent_id: str) -> bool:
        with self._lock:
            return bool(self._children.get(parent_id))

    def parents(self) -> List[str]:
        with self._lock:
            return list(self._children)

    def clear(self) -> None:
        with self._lock:
            self._children.clear()
            self._parents.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._children)


@dataclass
class MergeResult:
    parent_id: str
    total_count: int
    unique_items: List[ExternalItem]
    coverage_status: str
    child_statuses: List[str] = field(default_factory=list)


def improvement_label(current_resolution: int, target_resolution: int) -> str:
    factor = 7 ** (target_resolution - current_resolution)
    if factor >= 49:
        label = "excellent"
    elif factor >= 7:
        label = "good"
    elif factor >= 2:
        label = "moderate"
    else:
        label = "minimal"
    return f"{label} ({factor}x more cells)"


class SubdivisionManager:
    def __init__(
        self,
        grid: GridIndex,
        index: Optional[ParentChildIndex] = None,
        threshold: Optional[int] = None,
        max_resolution: Optional[int] = None,
        max_jump: Optional[int] = None,
    ) -> None:
        self.grid = grid
        self.index = index if index is not None else ParentChildIndex()
        self.threshold = int(threshold if threshold is not None else config.DENSE_THRESHOLD)
        self.max_resolution = int(max_resolution if max_resolution is not None else config.MAX_SPLIT_RESOLUTION)
        self.max_jump = int(max_jump if max_jump is not None else config.MAX_RESOLUTION_JUMP)

    def is_dense(self, result_count: int) -> bool:
        return result_count > self.threshold

    def validate_split_configuration(self, current_resolution: int, target_resolution: int) -> None:
        if target_resolution <= current_resolution:
            raise SplitConfigurationError(
                f"Target resolution {target_resolution} must be higher than current {current_resolution}"
            )
        if target_resolution - current_resolution > self.max_jump:
            raise SplitConfigurationError(
                f"Resolution jump {current_resolution} -> {target_resolution} exceeds {self.max_jump} levels"
            )
        if target_resolution > self.max_resolution:
            raise SplitConfigurationError(
                f"Target resolution {target_resolution} is above the maximum {self.max_resolution}"
            )

    def split(self, cell: Cell, target_resolution: Optional[int] = None) -> List[Cell]:
        target = cell.resolution + 1 if target_resolution is None else int(target_resolution)
        self.validate_split_configuration(cell.resolution, target)

        child_ids = sorted(self.grid.cell_to_children(cell.cell_id, target))
        if not child_ids:
            raise SplitConfigurationError(f"Grid returned no children for {cell.cell_id} at resolution {target}")
        children = [Cell.from_grid(child_id, self.grid, parent=cell) for child_id in child_ids]
        self.index.register(cell.cell_id, child_ids)
        logger.info(
            "Split %s (res %s) into %s cells at res %s, %s",
            cell.cell_id,
            cell.resolution,
            len(children),
            target,
            improvement_label(cell.resolution, target),
        )
        return children

    def split_stats(self, parent: Cell) -> Dict[str, Any]:
        child_ids = self.index.children_of(parent.cell_id)
        stats: Dict[str, Any] = {"parent_id": parent.cell_id, "child_count": len(child_ids)}
        if child_ids:
            child_resolution = self.grid.cell_resolution(child_ids[0])
            stats["resolution_increase"] = child_resolution - parent.resolution
            stats["estimated_improvement"] = improvement_label(parent.resolution, child_resolution)
        return stats

    def merge_children(self, parent_id: str, results: Mapping[str, CellResult]) -> MergeResult:
        """Union the results of ``parent_id``'s children.

        A child that was split itself contributes the merge of its own
        children, and only counts as still dense when that merge is.
        Missing child results count as empty.
        """
        items: List[ExternalItem] = []
        any_dense = False
        any_empty = False
        statuses: List[str] = []
        for child_id in self.index.children_of(parent_id):
            result = results.get(child_id)
            if self.index.has_children(child_id):
                nested = self.merge_children(child_id, results)
                items.extend(nested.unique_items)
                any_dense = any_dense or nested.coverage_status == PARTIAL_DENSE
                any_empty = any_empty or nested.total_count == 0
                statuses.append(f"{child_id}: split ({nested.total_count} items, {nested.coverage_status})")
                continue
            if result is None:
                any_empty = True
                statuses.append(f"{child_id}: missing")
                continue
            items.extend(result.unique_items)
            dense = self.is_dense(result.total_count)
            any_dense = any_dense or dense
            any_empty = any_empty or result.total_count == 0
            statuses.append(f"{child_id}: {'dense' if dense else 'fetched'} ({result.total_count} items)")

        unique = dedupe_items(items)
        if any_dense:
            coverage_status = PARTIAL_DENSE
        elif any_empty:
            coverage_status = PARTIAL_EMPTY
        else:
            coverage_status = COMPLETE
        return MergeResult(
            parent_id=parent_id,
            total_count=len(unique),
            unique_items=unique,
            coverage_status=coverage_status,
            child_statuses=statuses,
        )
