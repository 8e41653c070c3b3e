"""Pipeline orchestration."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .cells import FAILED, FETCHED, PROCESSING, QUEUED, SPLIT, Cell, Failed, Fetched, Outcome, Pending, Split
from .coverage import CoveragePlanner
from .errors import HexSweepError, PipelineCancelled, QuotaExceededError
from .grid import GridIndex, H3Grid
from .http import HttpClient, RequestMetrics
from .quota import QuotaBudget, QuotaEstimate, RateGate
from .reporting import (
    ProgressReporter,
    ensure_dir,
    render_summary,
    write_cells_csv,
    write_items_jsonl,
    write_json_object,
    write_summary,
)
from .retry import RetryPolicy
from .search_api import SearchAPI, YelpSearchAPI
from .search_client import PARTIAL, SUCCESS, CellResult, SearchClient
from .subdivision import MergeResult, ParentChildIndex, SubdivisionManager

logger = logging.getLogger(__name__)


class StopSignal:
    """Cooperative stop flag: set internally, or by any linked caller event."""

    def __init__(self, *linked: threading.Event) -> None:
        self._own = threading.Event()
        self._linked = [e for e in linked if e is not None]

    def set(self) -> None:
        self._own.set()

    def is_set(self) -> bool:
        return self._own.is_set() or any(e.is_set() for e in self._linked)


@dataclass
class PipelineReport:
    phase1: List[Dict[str, Any]]
    phase2: List[Dict[str, Any]]
    counts_by_resolution: Dict[int, Dict[str, int]]
    total_cells: int
    total_processed: int
    total_split: int
    total_failed: int
    total_unique_items: int
    coverage_quality: str
    failed_cells: List[Dict[str, Any]]
    quota: Dict[str, Any]
    items: List[Dict[str, Any]] = field(default_factory=list)
    estimate: Optional[QuotaEstimate] = None
    invalid_cell_ids: List[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "total_cells": self.total_cells,
            "total_processed": self.total_processed,
            "total_split": self.total_split,
            "total_failed": self.total_failed,
            "total_unique_items": self.total_unique_items,
            "coverage_quality": self.coverage_quality,
            "counts_by_resolution": self.counts_by_resolution,
            "failed_cells": self.failed_cells,
            "invalid_cell_ids": self.invalid_cell_ids,
            "quota": self.quota,
            "estimate": self.estimate.as_dict() if self.estimate else None,
            "cancelled": self.cancelled,
            "elapsed_seconds": self.elapsed_seconds,
        }

    def as_dict(self) -> Dict[str, Any]:
        payload = self.summary()
        payload["phase1"] = self.phase1
        payload["phase2"] = self.phase2
        return payload


@dataclass
class RetryReport:
    retried: int = 0
    succeeded: int = 0
    still_failed: int = 0


def classify_run_quality(ok: int, total: int) -> str:
    if total <= 0:
        return "poor"
    if ok == total:
        return "excellent"
    if ok > total * 0.8:
        return "good"
    if ok > total * 0.6:
        return "fair"
    return "poor"


def assess_cell_quality(result: CellResult) -> str:
    if result.status == PARTIAL:
        return "partial"
    if result.saturated_probes:
        return "saturated"
    return "complete"


class PipelineState:
    """All mutable run state, owned by one orchestrator."""

    def __init__(self, index: Optional[ParentChildIndex] = None) -> None:
        self.lock = threading.RLock()
        self.cells: Dict[str, Cell] = {}
        self.results: Dict[str, CellResult] = {}
        self.phase2_queue: Deque[str] = deque()
        self.index = index if index is not None else ParentChildIndex()

    def add(self, cell: Cell) -> None:
        with self.lock:
            self.cells[cell.cell_id] = cell

    def get(self, cell_id: str) -> Optional[Cell]:
        with self.lock:
            return self.cells.get(cell_id)

    def set_outcome(self, cell_id: str, outcome: Outcome) -> Cell:
        with self.lock:
            cell = self.cells[cell_id].with_outcome(outcome)
            self.cells[cell_id] = cell
            return cell

    def enqueue_children(self, children: Sequence[Cell]) -> List[str]:
        # Ids already tracked (e.g. also passed as top-level) keep their record and are not searched twice.
        queued: List[str] = []
        with self.lock:
            for child in children:
                if child.cell_id in self.cells:
                    continue
                self.cells[child.cell_id] = child
                self.phase2_queue.append(child.cell_id)
                queued.append(child.cell_id)
        return queued

    def drain_queue(self) -> List[str]:
        with self.lock:
            batch = list(self.phase2_queue)
            self.phase2_queue.clear()
            return batch

    def queued_ids(self) -> List[str]:
        with self.lock:
            return list(self.phase2_queue)

    def requeue(self, cell_ids: Iterable[str]) -> None:
        with self.lock:
            self.phase2_queue.extendleft(reversed(list(cell_ids)))

    def clear(self) -> None:
        with self.lock:
            self.cells.clear()
            self.results.clear()
            self.phase2_queue.clear()
            self.index.clear()


class PipelineOrchestrator:
    def __init__(
        self,
        search_client: SearchClient,
        subdivision: SubdivisionManager,
        budget: QuotaBudget,
        workers: Optional[int] = None,
        state: Optional[PipelineState] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        self.search_client = search_client
        self.subdivision = subdivision
        self.budget = budget
        self.grid: GridIndex = search_client.grid
        self.planner: CoveragePlanner = search_client.planner
        self.workers = int(workers if workers is not None else config.PIPELINE_WORKERS)
        self.state = state if state is not None else PipelineState(index=subdivision.index)
        if self.state.index is not subdivision.index:
            raise ValueError("PipelineState and SubdivisionManager must share one ParentChildIndex")
        self.progress = progress or ProgressReporter(output_path=None, log_every=config.PROGRESS_LOG_EVERY)
        self._stop = StopSignal()
        self._reset_run_tracking()

    def _reset_run_tracking(self) -> None:
        self._phase1_ids: List[str] = []
        self._phase2_ids: List[str] = []
        self._invalid_ids: List[str] = []
        self._last_estimate: Optional[QuotaEstimate] = None
        self._started = time.monotonic()

    # --- public surface ---

    def run_pipeline(
        self, cell_ids: Sequence[str], cancel_event: Optional[threading.Event] = None
    ) -> PipelineReport:
        self._reset_run_tracking()
        self._stop = StopSignal(cancel_event) if cancel_event is not None else StopSignal()
        self._phase1_ids, self._invalid_ids = self._register_top_level(cell_ids)
        pending = [cid for cid in self._phase1_ids if self.state.cells[cid].status == QUEUED]

        estimate = self._estimate(pending)
        self._last_estimate = estimate
        if not estimate.can_process:
            raise QuotaExceededError(
                f"Quota estimate {estimate.estimated_calls} calls is {estimate.risk_level} "
                f"against {estimate.remaining_quota} remaining",
                estimate=estimate,
                remaining=estimate.remaining_quota,
            )

        logger.info("Phase 1: processing %s top-level cells", len(pending))
        try:
            self._run_phase("phase1", pending)
            if not self._stop.is_set():
                logger.info("Phase 2: draining %s queued child cells", len(self.state.phase2_queue))
                self._drain_phase2(self._phase2_ids, check_quota=True)
        except QuotaExceededError as exc:
            self._track_unsearched_children()
            exc.report = self.report()
            raise
        self._track_unsearched_children()

        report = self.report()
        logger.info(
            "Pipeline finished: %s cells, %s split, %s failed, %s unique items, quality=%s",
            report.total_cells,
            report.total_split,
            report.total_failed,
            report.total_unique_items,
            report.coverage_quality,
        )
        return report

    def report(self) -> PipelineReport:
        """Report over the cells touched by the most recent run and any retries since."""
        return self._build_report(
            self._phase1_ids, self._phase2_ids, self._invalid_ids, self._last_estimate, self._started
        )

    def cancel(self) -> None:
        self._stop.set()

    def retry_failed(
        self, max_attempts: Optional[int] = None, base_delay: Optional[float] = None
    ) -> RetryReport:
        policy = RetryPolicy(
            max_attempts=int(max_attempts if max_attempts is not None else config.RETRY_MAX_ATTEMPTS),
            base_delay=float(base_delay if base_delay is not None else config.RETRY_BASE_DELAY),
            max_delay=config.RETRY_MAX_DELAY,
            jitter=config.RETRY_JITTER,
            give_up_on=(QuotaExceededError, PipelineCancelled),
        )
        self._stop = StopSignal()
        failed = self.cells_by_status(FAILED)
        report = RetryReport(retried=len(failed))
        if not failed:
            logger.info("No failed cells to retry")
            return report

        logger.info("Retrying %s failed cells", len(failed))
        for cell in failed:
            self.state.set_outcome(cell.cell_id, Pending(PROCESSING))
            try:
                result = policy.call(lambda: self._search(cell))
            except (QuotaExceededError, PipelineCancelled):
                self.state.set_outcome(cell.cell_id, Failed(error=cell.error or "retry aborted"))
                raise
            except Exception as exc:
                self.state.set_outcome(cell.cell_id, Failed(error=str(exc) or exc.__class__.__name__))
                report.still_failed += 1
                continue
            self._apply_result(cell, result)
            report.succeeded += 1

        self._drain_phase2(self._phase2_ids, check_quota=False)
        logger.info(
            "Retry finished: %s succeeded, %s still failed", report.succeeded, report.still_failed
        )
        return report

    def get_quota_status(self) -> Dict[str, Any]:
        return self.budget.status()

    def get_processing_stats(self) -> Dict[str, Any]:
        with self.state.lock:
            cells = list(self.state.cells.values())
            queue_len = len(self.state.phase2_queue)
        counts = {status: 0 for status in (QUEUED, PROCESSING, FETCHED, SPLIT, FAILED)}
        by_resolution: Dict[int, int] = {}
        for cell in cells:
            counts[cell.status] += 1
            by_resolution[cell.resolution] = by_resolution.get(cell.resolution, 0) + 1
        return {
            **counts,
            "total": len(cells),
            "by_resolution": by_resolution,
            "phase2_queue": queue_len,
            "parent_child_relationships": len(self.state.index),
        }

    def get_cell(self, cell_id: str) -> Optional[Cell]:
        return self.state.get(cell_id)

    def get_result(self, cell_id: str) -> Optional[CellResult]:
        with self.state.lock:
            return self.state.results.get(cell_id)

    def cells_by_status(self, status: str) -> List[Cell]:
        with self.state.lock:
            return [c for c in self.state.cells.values() if c.status == status]

    def cells_by_resolution(self, resolution: int) -> List[Cell]:
        with self.state.lock:
            return [c for c in self.state.cells.values() if c.resolution == resolution]

    def merge_children(self, parent_id: str) -> MergeResult:
        with self.state.lock:
            results = dict(self.state.results)
        return self.subdivision.merge_children(parent_id, results)

    def all_children_processed(self, parent_id: str) -> bool:
        for child_id in self.state.index.children_of(parent_id):
            child = self.state.get(child_id)
            if child is None or not child.is_terminal:
                return False
        return True

    def merged_results(self) -> List[Dict[str, Any]]:
        rows = []
        for cell in self.cells_by_status(FETCHED) + self.cells_by_status(SPLIT):
            row = cell.snapshot()
            row["has_children"] = self.state.index.has_children(cell.cell_id)
            if row["has_children"]:
                merged = self.merge_children(cell.cell_id)
                children = [self.state.get(cid) for cid in self.state.index.children_of(cell.cell_id)]
                row["children_summary"] = {
                    "total_children": len(children),
                    "completed_children": sum(
                        1 for child in children if child is not None and child.status in (FETCHED, SPLIT)
                    ),
                    "total_child_items": merged.total_count,
                }
                if self.all_children_processed(cell.cell_id):
                    row["result_count"] = merged.total_count
                    row["coverage_quality"] = merged.coverage_status
            rows.append(row)
        return rows

    def error_summary(self) -> Dict[str, Any]:
        failed = self.cells_by_status(FAILED)
        error_types: Dict[str, int] = {}
        for cell in failed:
            key = cell.error or "unknown"
            error_types[key] = error_types.get(key, 0) + 1
        recommendations = []
        if failed:
            recommendations.append(f"{len(failed)} cells failed - consider retry_failed()")
        if any("429" in key or "rate" in key.lower() for key in error_types):
            recommendations.append("Rate limit hit - lower the per-second limit or worker count")
        if len(failed) > 10:
            recommendations.append("High failure rate - check API connectivity and error patterns")
        return {
            "total_errors": len(failed),
            "error_types": error_types,
            "failed_cells": [
                {"cell_id": c.cell_id, "resolution": c.resolution, "error": c.error or "unknown"} for c in failed
            ],
            "recommendations": recommendations,
        }

    def clear_history(self) -> None:
        self.state.clear()
        self.budget.reset()
        self._reset_run_tracking()
        logger.info("Processing history, queues and quota cleared")

    # --- internals ---

    def _track_unsearched_children(self) -> None:
        leftover = [cid for cid in self.state.queued_ids() if cid not in self._phase2_ids]
        if leftover:
            logger.warning("Run stopped with %s child cells still queued", len(leftover))
            self._phase2_ids.extend(leftover)

    def _register_top_level(self, cell_ids: Sequence[str]) -> Tuple[List[str], List[str]]:
        accepted: List[str] = []
        invalid: List[str] = []
        seen = set()
        for cell_id in cell_ids:
            if cell_id in seen:
                continue
            seen.add(cell_id)
            if self.state.get(cell_id) is not None:
                logger.info("Cell %s already tracked - skipping", cell_id)
                accepted.append(cell_id)
                continue
            if not self.grid.is_valid_cell(cell_id):
                logger.error("Invalid cell id %s - skipping", cell_id)
                invalid.append(cell_id)
                continue
            try:
                cell = Cell.from_grid(cell_id, self.grid)
            except Exception as exc:
                logger.error("Grid lookup failed for %s: %s", cell_id, exc)
                invalid.append(cell_id)
                continue
            self.state.add(cell)
            accepted.append(cell_id)
        return accepted, invalid

    def _estimate(self, cell_ids: Sequence[str]) -> QuotaEstimate:
        probes = 0
        for cell_id in cell_ids:
            cell = self.state.get(cell_id)
            if cell is not None:
                probes += len(self.planner.plan(cell))
        avg_probes = probes / len(cell_ids) if cell_ids else 0.0
        return self.budget.estimate(len(cell_ids), avg_probes_per_cell=avg_probes)

    def _drain_phase2(self, processed_ids: List[str], check_quota: bool) -> None:
        while not self._stop.is_set():
            batch = self.state.drain_queue()
            if not batch:
                return
            if check_quota:
                estimate = self._estimate(batch)
                if not estimate.can_process:
                    self.state.requeue(batch)
                    raise QuotaExceededError(
                        f"Quota estimate for {len(batch)} child cells is {estimate.risk_level}",
                        estimate=estimate,
                        remaining=estimate.remaining_quota,
                    )
            known = set(processed_ids)
            processed_ids.extend(cid for cid in batch if cid not in known)
            self._run_phase("phase2", batch)

    def _run_phase(self, stage: str, cell_ids: Sequence[str]) -> None:
        if not cell_ids:
            return
        self.progress.set_stage(stage, len(cell_ids))
        workers = max(1, min(self.workers, self.budget.per_second_limit, len(cell_ids)))
        quota_error: Optional[QuotaExceededError] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"hexsweep-{stage}") as pool:
            futures = [pool.submit(self._process_cell, cell_id) for cell_id in cell_ids]
            for future in as_completed(futures):
                try:
                    future.result()
                except QuotaExceededError as exc:
                    if quota_error is None:
                        quota_error = exc
                        self._stop.set()
                self.progress.advance()
        self.progress.flush()
        if quota_error is not None:
            raise quota_error

    def _process_cell(self, cell_id: str) -> None:
        if self._stop.is_set():
            return
        cell = self.state.set_outcome(cell_id, Pending(PROCESSING))
        try:
            result = self._search(cell)
        except PipelineCancelled:
            self.state.set_outcome(cell_id, Pending(QUEUED))
            return
        except QuotaExceededError:
            self.state.set_outcome(cell_id, Pending(QUEUED))
            raise
        except Exception as exc:
            logger.error("Cell %s failed: %s", cell_id, exc)
            self.state.set_outcome(cell_id, Failed(error=str(exc) or exc.__class__.__name__))
            return
        self._apply_result(cell, result)

    def _search(self, cell: Cell) -> CellResult:
        result = self.search_client.search_cell(cell, cancel_event=self._stop)
        if result.status not in (SUCCESS, PARTIAL):
            raise HexSweepError(result.error or f"Search failed for {cell.cell_id}")
        return result

    def _apply_result(self, cell: Cell, result: CellResult) -> Cell:
        with self.state.lock:
            self.state.results[cell.cell_id] = result
        count = result.total_count
        if not self.subdivision.is_dense(count):
            return self.state.set_outcome(
                cell.cell_id, Fetched(result_count=count, coverage_quality=assess_cell_quality(result), error=result.error)
            )

        logger.info("Cell %s is dense (%s items), splitting", cell.cell_id, count)
        try:
            children = self.subdivision.split(cell)
        except Exception as exc:
            logger.warning("Could not split dense cell %s: %s", cell.cell_id, exc)
            return self.state.set_outcome(
                cell.cell_id, Fetched(result_count=count, coverage_quality="dense-unsplittable", error=str(exc))
            )
        with self.state.lock:
            self.state.enqueue_children(children)
            return self.state.set_outcome(
                cell.cell_id, Split(child_ids=tuple(c.cell_id for c in children), result_count=count)
            )

    def _build_report(
        self,
        phase1_ids: Sequence[str],
        phase2_ids: Sequence[str],
        invalid: Sequence[str],
        estimate: Optional[QuotaEstimate],
        started: float,
    ) -> PipelineReport:
        with self.state.lock:
            phase1 = [self.state.cells[cid] for cid in phase1_ids if cid in self.state.cells]
            phase2 = [self.state.cells[cid] for cid in phase2_ids if cid in self.state.cells]
            results = dict(self.state.results)
            queue_left = bool(self.state.phase2_queue)
        cells = phase1 + phase2

        counts_by_resolution: Dict[int, Dict[str, int]] = {}
        for cell in cells:
            bucket = counts_by_resolution.setdefault(cell.resolution, {})
            bucket[cell.status] = bucket.get(cell.status, 0) + 1

        fetched = [c for c in cells if c.status == FETCHED]
        split = [c for c in cells if c.status == SPLIT]
        failed = [c for c in cells if c.status == FAILED]

        items: List[Dict[str, Any]] = []
        seen = set()
        # Leaf cells first so an item is attributed to the finest cell holding it.
        for cell in sorted(fetched + split, key=lambda c: (c.status == SPLIT, -c.resolution)):
            result = results.get(cell.cell_id)
            if result is None:
                continue
            for item in result.unique_items:
                if item.key in seen:
                    continue
                seen.add(item.key)
                row = item.as_dict()
                row["cell_id"] = cell.cell_id
                items.append(row)

        ok = len(fetched) + len(split)
        return PipelineReport(
            phase1=[c.snapshot() for c in phase1],
            phase2=[c.snapshot() for c in phase2],
            counts_by_resolution=counts_by_resolution,
            total_cells=len(cells),
            total_processed=ok,
            total_split=len(split),
            total_failed=len(failed),
            total_unique_items=len(items),
            # Cells left queued by a stop count against quality like failures.
            coverage_quality=classify_run_quality(ok, len(cells)),
            failed_cells=[
                {"cell_id": c.cell_id, "resolution": c.resolution, "error": c.error or "unknown"} for c in failed
            ],
            quota=self.budget.status(),
            items=items,
            estimate=estimate,
            invalid_cell_ids=list(invalid),
            cancelled=self._stop.is_set()
            and (queue_left or any(c.status in (QUEUED, PROCESSING) for c in cells)),
            elapsed_seconds=time.monotonic() - started,
        )


def build_orchestrator(
    api_key: Optional[str] = None,
    search_api: Optional[SearchAPI] = None,
    grid: Optional[GridIndex] = None,
    daily_limit: Optional[int] = None,
    per_second_limit: Optional[int] = None,
    workers: Optional[int] = None,
    metrics: Optional[RequestMetrics] = None,
    progress: Optional[ProgressReporter] = None,
) -> PipelineOrchestrator:
    if metrics is None:
        metrics = RequestMetrics()
    if grid is None:
        grid = H3Grid()
    budget = QuotaBudget(daily_limit=daily_limit, per_second_limit=per_second_limit)
    gate = RateGate(budget)
    if search_api is None:
        if not api_key:
            raise ValueError("API key is required when using the real search API")
        http_client = HttpClient(
            api_key,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
            metrics=metrics,
            before_resend=partial(gate.wait_for_slot, timeout=config.RATE_GATE_TIMEOUT_SECONDS),
        )
        search_api = YelpSearchAPI(http_client, metrics=metrics)

    planner = CoveragePlanner(grid)
    search_client = SearchClient(search_api, gate, grid, planner=planner, metrics=metrics)
    subdivision = SubdivisionManager(grid)
    return PipelineOrchestrator(search_client, subdivision, budget, workers=workers, progress=progress)


def write_outputs(output_dir: str, orchestrator: PipelineOrchestrator, report: PipelineReport) -> None:
    ensure_dir(output_dir)
    with orchestrator.state.lock:
        cells = [c.snapshot() for c in orchestrator.state.cells.values()]
    write_cells_csv(f"{output_dir}/cells.csv", cells)
    write_items_jsonl(f"{output_dir}/items.jsonl", report.items)
    write_json_object(f"{output_dir}/report.json", report.as_dict())
    lines = render_summary(report.summary())
    lines.extend(["", "## Quota report", *orchestrator.budget.detailed_report().splitlines()])
    write_summary(f"{output_dir}/summary.txt", lines)


def run(
    cell_ids: Sequence[str],
    api_key: Optional[str] = None,
    output_dir: Optional[str] = None,
    write_results: bool = True,
    search_api: Optional[SearchAPI] = None,
    grid: Optional[GridIndex] = None,
    daily_limit: Optional[int] = None,
    per_second_limit: Optional[int] = None,
    workers: Optional[int] = None,
    retry_attempts: int = 0,
    cancel_event: Optional[threading.Event] = None,
    metrics: Optional[RequestMetrics] = None,
) -> PipelineReport:
    if not cell_ids:
        raise ValueError("At least one top-level cell id is required")
    if output_dir is None:
        output_dir = config.OUTPUT_DIR
    if write_results:
        ensure_dir(output_dir)

    progress = ProgressReporter(
        output_path=f"{output_dir}/progress.json" if write_results else None,
        log_every=config.PROGRESS_LOG_EVERY,
        write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
        logger=logger,
    )
    orchestrator = build_orchestrator(
        api_key=api_key,
        search_api=search_api,
        grid=grid,
        daily_limit=daily_limit,
        per_second_limit=per_second_limit,
        workers=workers,
        metrics=metrics,
        progress=progress,
    )
    progress.quota_status = orchestrator.get_quota_status

    try:
        report = orchestrator.run_pipeline(cell_ids, cancel_event=cancel_event)
    except QuotaExceededError as exc:
        if write_results and exc.report is not None:
            write_outputs(output_dir, orchestrator, exc.report)
        raise

    if retry_attempts > 0 and report.total_failed:
        orchestrator.retry_failed(max_attempts=retry_attempts)
        report = orchestrator.report()

    if write_results:
        write_outputs(output_dir, orchestrator, report)
    return report
