"""Atomic output files for a sweep: cells.csv, items.jsonl, report.json, summary.txt, progress.json."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TextIO

CELL_FIELDS = [
    "cell_id",
    "resolution",
    "lat",
    "lng",
    "parent_id",
    "child_ids",
    "status",
    "result_count",
    "coverage_quality",
    "error",
]


def ensure_dir(path: str) -> None:
    if path:
        os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _sync_directory(dir_path: str) -> None:
    # Best effort; some platforms cannot open a directory for fsync.
    flags = getattr(os, "O_DIRECTORY", None)
    if flags is None:
        return
    try:
        fd = os.open(dir_path, flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logging.getLogger(__name__).debug("fsync not supported for %s", dir_path)
    finally:
        os.close(fd)


@contextmanager
def atomic_writer(path: str, encoding: str = "utf-8", newline: Optional[str] = None) -> Iterator[TextIO]:
    """Yield a temp file beside ``path`` and swap it into place on success.

    Readers never observe a half-written file; on error the temp file is removed
    and the previous contents of ``path`` are left untouched.
    """
    target_dir = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=target_dir)
    committed = False
    try:
        with open(fd, "w", encoding=encoding, newline=newline) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        committed = True
        _sync_directory(target_dir)
    finally:
        if not committed and os.path.exists(tmp_path):
            os.unlink(tmp_path)


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path) as handle:
        handle.write(text)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2))


def write_cells_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    # child_ids is a list; store it as a JSON array so the column round-trips.
    with atomic_writer(path, newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=CELL_FIELDS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows({**row, "child_ids": json.dumps(row.get("child_ids") or [])} for row in rows)


def write_items_jsonl(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, newline="") as handle:
        handle.writelines(json.dumps(row, ensure_ascii=False) + "\n" for row in rows)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines) + "\n")


def render_summary(summary: Dict[str, Any]) -> List[str]:
    lines = [
        "# Sweep summary",
        "",
        f"Cells: {summary.get('total_cells', 0)} "
        f"(processed {summary.get('total_processed', 0)}, split {summary.get('total_split', 0)}, "
        f"failed {summary.get('total_failed', 0)})",
        f"Unique items: {summary.get('total_unique_items', 0)}",
        f"Coverage quality: {summary.get('coverage_quality', 'unknown')}",
        f"Cancelled: {summary.get('cancelled', False)}",
        f"Elapsed: {summary.get('elapsed_seconds', 0.0):.1f}s",
        "",
        "## By resolution",
    ]
    for resolution, counts in sorted((summary.get("counts_by_resolution") or {}).items()):
        parts = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        lines.append(f"- res {resolution}: {parts}")

    quota = summary.get("quota") or {}
    if quota:
        lines.extend(
            [
                "",
                "## Quota",
                f"- daily used: {quota.get('daily_used')}",
                f"- daily remaining: {quota.get('daily_remaining')}",
            ]
        )

    failed = summary.get("failed_cells") or []
    if failed:
        lines.extend(["", "## Failed cells"])
        for row in failed:
            lines.append(f"- {row['cell_id']} (res {row['resolution']}): {row['error']}")

    invalid = summary.get("invalid_cell_ids") or []
    if invalid:
        lines.extend(["", "## Invalid cell ids"])
        lines.extend(f"- {cell_id}" for cell_id in invalid)
    return lines


class ProgressReporter:
    """Periodic log lines and a progress.json snapshot for the current phase."""

    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 25,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
        quota_status: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(0, int(log_every or 0))
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.quota_status = quota_status
        self.stage = "init"
        self.processed_count = 0
        self.total_estimate: Optional[int] = None
        self._lock = threading.Lock()
        self._last_snapshot_at: Optional[float] = None

    def set_stage(self, stage: str, total_estimate: Optional[int] = None) -> None:
        with self._lock:
            self.stage = stage
            self.processed_count = 0
            self.total_estimate = total_estimate
        self._maybe_snapshot(force=True)

    def advance(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            before = self.processed_count
            self.processed_count += count
            crossed = bool(self.log_every) and before // self.log_every != self.processed_count // self.log_every
        if crossed:
            total = "?" if self.total_estimate is None else self.total_estimate
            self.logger.info(
                "%s: %s/%s cells done, %s calls used today",
                self.stage,
                self.processed_count,
                total,
                self._daily_used(),
            )
        self._maybe_snapshot()

    def flush(self) -> None:
        self._maybe_snapshot(force=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "processed_count": self.processed_count,
            "total_estimate": self.total_estimate,
            "daily_calls": self._daily_used(),
            "timestamp": utc_now_iso(),
        }

    def _daily_used(self) -> Optional[int]:
        return None if self.quota_status is None else self.quota_status().get("daily_used")

    def _maybe_snapshot(self, force: bool = False) -> None:
        if not self.output_path:
            return
        now = time.monotonic()
        last = self._last_snapshot_at
        if not force and last is not None and now - last < self.write_interval_seconds:
            return
        write_json_object(self.output_path, self.snapshot())
        self._last_snapshot_at = now
