"""Cell-level search: probes, pagination, dedup and boundary validation."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from . import config
from .cells import Cell
from .coverage import CoveragePlanner, SearchProbe
from .errors import BoundaryValidationError, PipelineCancelled, QuotaExceededError
from .grid import GridIndex
from .http import RequestMetrics
from .quota import RateGate
from .search_api import ExternalItem, SearchAPI

logger = logging.getLogger(__name__)

SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"


@dataclass
class ProbeResult:
    probe: SearchProbe
    items: List[ExternalItem] = field(default_factory=list)
    reported_total: int = 0
    pages_fetched: int = 0
    status: str = SUCCESS
    error: Optional[str] = None


@dataclass
class CellResult:
    cell_id: str
    total_count: int
    unique_items: List[ExternalItem]
    probe_results: List[ProbeResult]
    status: str
    error: Optional[str] = None
    dropped_count: int = 0
    saturated_probes: int = 0

    @property
    def item_keys(self) -> List[str]:
        return [item.key for item in self.unique_items]


def dedupe_items(items: Iterable[ExternalItem]) -> List[ExternalItem]:
    seen = set()
    out: List[ExternalItem] = []
    for item in items:
        if item.key in seen:
            continue
        seen.add(item.key)
        out.append(item)
    return out


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled("Search cancelled")


class SearchClient:
    def __init__(
        self,
        api: SearchAPI,
        gate: RateGate,
        grid: GridIndex,
        planner: Optional[CoveragePlanner] = None,
        result_window: Optional[int] = None,
        gate_timeout: Optional[float] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.api = api
        self.gate = gate
        self.grid = grid
        self.planner = planner or CoveragePlanner(grid)
        self.page_size = int(getattr(api, "page_size", config.SEARCH_PAGE_SIZE))
        self.result_window = int(result_window if result_window is not None else config.SEARCH_RESULT_WINDOW)
        self.gate_timeout = gate_timeout if gate_timeout is not None else config.RATE_GATE_TIMEOUT_SECONDS
        self.metrics = metrics

    def search_cell(self, cell: Cell, cancel_event: Optional[threading.Event] = None) -> CellResult:
        probes = self.planner.plan(cell)
        self.planner.validate(cell, probes)

        probe_results: List[ProbeResult] = []
        for i, probe in enumerate(probes):
            _check_cancel(cancel_event)
            logger.debug("Searching probe %s/%s for %s: %s", i + 1, len(probes), cell.cell_id, probe.description)
            probe_results.append(self._search_probe(probe, cancel_event))

        merged = dedupe_items(item for pr in probe_results for item in pr.items)
        validated, dropped = self.validate_boundaries(cell, merged)
        failed = [pr for pr in probe_results if pr.status == FAILED]
        if not failed:
            status, error = SUCCESS, None
        elif len(failed) == len(probe_results):
            status, error = FAILED, f"All {len(failed)} probes failed: {failed[0].error}"
        else:
            status, error = PARTIAL, f"{len(failed)}/{len(probe_results)} probes failed"
        saturated = sum(1 for pr in probe_results if pr.reported_total > self.result_window)

        if dropped:
            logger.info("Boundary validation for %s: %s items dropped, %s remain", cell.cell_id, dropped, len(validated))
        return CellResult(
            cell_id=cell.cell_id,
            total_count=len(validated),
            unique_items=validated,
            probe_results=probe_results,
            status=status,
            error=error,
            dropped_count=dropped,
            saturated_probes=saturated,
        )

    def _search_probe(self, probe: SearchProbe, cancel_event: Optional[threading.Event]) -> ProbeResult:
        result = ProbeResult(probe=probe)
        collected: List[ExternalItem] = []
        try:
            self.gate.wait_for_slot(timeout=self.gate_timeout)
            first = self.api.fetch_page(probe.lat, probe.lng, probe.radius_m, 0, self.page_size)
            result.pages_fetched = 1
            result.reported_total = first.total
            collected.extend(first.items)

            offset = self.page_size
            ceiling = min(first.total, self.result_window)
            while first.total > self.page_size and offset < ceiling:
                _check_cancel(cancel_event)
                limit = min(self.page_size, self.result_window - offset)
                self.gate.wait_for_slot(timeout=self.gate_timeout)
                page = self.api.fetch_page(probe.lat, probe.lng, probe.radius_m, offset, limit)
                result.pages_fetched += 1
                if not page.items:
                    break
                collected.extend(page.items)
                offset += self.page_size
        except (QuotaExceededError, PipelineCancelled):
            raise
        except Exception as exc:
            logger.warning("Probe %s failed: %s", probe.description, exc)
            result.status = FAILED
            result.error = str(exc) or exc.__class__.__name__
            if self.metrics is not None:
                self.metrics.inc("failed_probes")

        result.items = dedupe_items(collected)
        if self.metrics is not None:
            self.metrics.inc("items_seen", len(result.items))
        return result

    def validate_boundaries(self, cell: Cell, items: List[ExternalItem]) -> Tuple[List[ExternalItem], int]:
        kept: List[ExternalItem] = []
        dropped = 0
        for item in items:
            try:
                resolved = self._resolve_cell(item, cell.resolution)
            except BoundaryValidationError as exc:
                logger.debug("Keeping %s without boundary check: %s", item.key, exc)
                kept.append(item)
                continue
            if resolved == cell.cell_id:
                kept.append(item)
            else:
                dropped += 1
                logger.debug("Dropped %s from %s (resolves to %s)", item.key, cell.cell_id, resolved)
        if dropped and self.metrics is not None:
            self.metrics.inc("boundary_drops", dropped)
        return kept, dropped

    def _resolve_cell(self, item: ExternalItem, resolution: int) -> str:
        if item.lat is None or item.lng is None:
            raise BoundaryValidationError(f"Item {item.key} has no coordinates")
        try:
            return self.grid.point_to_cell(item.lat, item.lng, resolution)
        except Exception as exc:
            raise BoundaryValidationError(f"Grid lookup failed for {item.key}: {exc}") from exc
