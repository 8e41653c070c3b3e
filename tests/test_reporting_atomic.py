import json

from hexsweep.reporting import (
    ProgressReporter,
    atomic_write_text,
    render_summary,
    write_cells_csv,
    write_json_object,
)


def test_atomic_write_text(tmp_path):
    path = tmp_path / "atomic.txt"

    atomic_write_text(str(path), "first")
    assert path.read_text(encoding="utf-8") == "first"

    atomic_write_text(str(path), "second")
    assert path.read_text(encoding="utf-8") == "second"

    leftovers = [p for p in tmp_path.iterdir() if p.name != "atomic.txt"]
    assert not leftovers


def test_write_json_object_nested_atomic(tmp_path):
    path = tmp_path / "report.json"
    payload = {
        "counts_by_resolution": {"7": {"fetched": 3}},
        "nested": {"list": [1, 2, 3], "word": "Zółć"},
    }

    write_json_object(str(path), payload)

    text = path.read_text(encoding="utf-8")
    assert json.loads(text) == payload
    assert "ó" in text


def test_write_cells_csv_serializes_child_ids(tmp_path):
    path = tmp_path / "cells.csv"
    rows = [
        {"cell_id": "p", "resolution": 7, "lat": 1.0, "lng": 2.0, "parent_id": None, "child_ids": ["a", "b"], "status": "split"},
        {"cell_id": "a", "resolution": 8, "lat": 1.0, "lng": 2.0, "parent_id": "p", "child_ids": [], "status": "fetched"},
    ]

    write_cells_csv(str(path), rows)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("cell_id,resolution,lat,lng,parent_id,child_ids,status")
    assert '"[""a"", ""b""]"' in lines[1]
    assert len(lines) == 3


def test_render_summary_lists_failures():
    lines = render_summary(
        {
            "total_cells": 3,
            "total_processed": 2,
            "total_split": 1,
            "total_failed": 1,
            "total_unique_items": 42,
            "coverage_quality": "fair",
            "counts_by_resolution": {7: {"split": 1}, 8: {"fetched": 1, "failed": 1}},
            "failed_cells": [{"cell_id": "x", "resolution": 8, "error": "HTTP 503"}],
            "quota": {"daily_used": 10, "daily_remaining": 90},
        }
    )

    text = "\n".join(lines)
    assert "Unique items: 42" in text
    assert "- res 8: failed=1, fetched=1" in text
    assert "- x (res 8): HTTP 503" in text
    assert "daily remaining: 90" in text


def test_progress_reporter_writes_snapshot(tmp_path):
    path = tmp_path / "progress.json"
    reporter = ProgressReporter(
        output_path=str(path),
        log_every=1,
        write_interval_seconds=0.0,
        quota_status=lambda: {"daily_used": 7},
    )

    reporter.set_stage("phase1", total_estimate=2)
    reporter.advance()
    reporter.flush()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["stage"] == "phase1"
    assert data["processed_count"] == 1
    assert data["total_estimate"] == 2
    assert data["daily_calls"] == 7
