"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv as _load_dotenv

from hexsweep import config
from hexsweep.cells import Cell
from hexsweep.coverage import CoveragePlanner
from hexsweep.errors import QuotaExceededError
from hexsweep.grid import H3Grid
from hexsweep.http import HttpClient, RequestMetrics
from hexsweep.pipeline import run
from hexsweep.quota import QuotaBudget
from hexsweep.search_api import YelpSearchAPI

API_KEY_ENV = "YELP_API_KEY"


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def read_cell_ids(cells: Optional[str], cells_file: Optional[str]) -> List[str]:
    ids: List[str] = []
    if cells:
        ids.extend(c.strip() for c in cells.split(",") if c.strip())
    if cells_file:
        with open(cells_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                ids.append(line)
    return ids


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sweep hexagonal cells for businesses via the Yelp search API")
    parser.add_argument("--cells", type=str, default=None, help="Comma-separated top-level H3 cell ids")
    parser.add_argument("--cells-file", type=str, default=None, help="File with one H3 cell id per line")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Run offline checks only")
    group.add_argument(
        "--preflight-online",
        action="store_true",
        help="Run offline checks + one single-item search call",
    )
    group.add_argument("--estimate", action="store_true", help="Print the quota estimate and exit")
    parser.add_argument(
        "--retry-failed",
        type=int,
        default=0,
        metavar="N",
        help="Retry failed cells up to N attempts each after the sweep (default: 0)",
    )
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--daily-limit", type=int, default=None)
    parser.add_argument("--per-second-limit", type=int, default=None)
    parser.add_argument("--categories", type=str, default=None)
    parser.add_argument("--term", type=str, default=None)
    parser.add_argument("--config", type=str, default=None, help="Path to sweep_config.json")
    parser.add_argument("--out", type=str, default=None)
    parser.add_argument("--no-write", action="store_true", help="Do not write output files")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def apply_overrides(args: argparse.Namespace) -> None:
    if args.categories is not None:
        config.SEARCH_CATEGORIES = args.categories or None
    if args.term is not None:
        config.SEARCH_TERM = args.term or None


def run_preflight(api_key: Optional[str], cell_ids: List[str], online: bool) -> int:
    ok = True
    grid = H3Grid()

    if api_key:
        print("API key: OK")
    else:
        print("API key: MISSING")
        ok = False

    invalid = [c for c in cell_ids if not grid.is_valid_cell(c)]
    if not cell_ids:
        print("Cells: FAIL (no cell ids given)")
        ok = False
    elif invalid:
        print(f"Cells: FAIL ({len(invalid)} invalid: {', '.join(invalid[:5])})")
        ok = False
    else:
        resolutions = sorted({grid.cell_resolution(c) for c in cell_ids})
        print(f"Cells: OK ({len(cell_ids)} cells, resolutions {resolutions})")

    print(
        "Quota: daily_limit={daily}, per_second_limit={per_second}, dense_threshold={dense}".format(
            daily=config.DAILY_CALL_LIMIT,
            per_second=config.PER_SECOND_CALL_LIMIT,
            dense=config.DENSE_THRESHOLD,
        )
    )

    if online:
        if not api_key:
            print("Online search call: FAIL (missing API key)")
            ok = False
        elif not cell_ids or invalid:
            print("Online search call: SKIPPED (invalid cells)")
        else:
            try:
                http_client = HttpClient(
                    api_key,
                    timeout=config.HTTP_TIMEOUT_SECONDS,
                    retry_max=1,
                    backoff_base=config.HTTP_BACKOFF_BASE,
                    backoff_max=config.HTTP_BACKOFF_MAX,
                )
                lat, lng = grid.cell_to_center(cell_ids[0])
                page = YelpSearchAPI(http_client).fetch_page(lat, lng, 1000, 0, 1)
                print(f"Online search call: OK (total={page.total})")
            except Exception as exc:
                print(f"Online search call: FAIL ({exc})")
                ok = False

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def run_estimate(cell_ids: List[str], daily_limit: Optional[int]) -> int:
    grid = H3Grid()
    planner = CoveragePlanner(grid)
    valid = [c for c in cell_ids if grid.is_valid_cell(c)]
    probes = sum(len(planner.plan(Cell.from_grid(c, grid))) for c in valid)
    budget = QuotaBudget(daily_limit=daily_limit)
    avg = probes / len(valid) if valid else 0.0
    estimate = budget.estimate(len(valid), avg_probes_per_cell=avg)
    print(f"Cells: {len(valid)} valid, {len(cell_ids) - len(valid)} invalid")
    print(f"Planned probes: {probes}")
    print(f"Estimated calls: {estimate.estimated_calls}")
    print(f"Remaining quota: {estimate.remaining_quota}")
    print(f"Risk: {estimate.risk_level} (can_process={estimate.can_process})")
    for line in estimate.recommendations:
        print(f"- {line}")
    print()
    print(budget.detailed_report())
    return 0 if estimate.can_process else 1


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    config.load_sweep_config(args.config)
    apply_overrides(args)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        cell_ids = read_cell_ids(args.cells, args.cells_file)
    except OSError as exc:
        print(f"Could not read cells file: {exc}", file=sys.stderr)
        return 1

    api_key = (os.environ.get(API_KEY_ENV) or "").strip() or None
    if args.preflight or args.preflight_online:
        return run_preflight(api_key, cell_ids, online=args.preflight_online)

    if not cell_ids:
        print("No cell ids given. Use --cells or --cells-file.", file=sys.stderr)
        return 1

    if args.estimate:
        return run_estimate(cell_ids, args.daily_limit)

    if not api_key:
        print(f"Missing {API_KEY_ENV} in environment", file=sys.stderr)
        return 1

    output_dir = args.out or config.OUTPUT_DIR
    metrics = RequestMetrics()
    try:
        report = run(
            cell_ids,
            api_key=api_key,
            output_dir=output_dir,
            write_results=not args.no_write,
            daily_limit=args.daily_limit,
            per_second_limit=args.per_second_limit,
            workers=args.workers,
            retry_attempts=args.retry_failed,
            metrics=metrics,
        )
    except QuotaExceededError as exc:
        print(f"Quota exceeded: {exc}", file=sys.stderr)
        if exc.estimate is not None:
            for line in exc.estimate.recommendations:
                print(f"- {line}", file=sys.stderr)
        return 2
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logging.getLogger(__name__).info("Request metrics: %s", metrics.as_dict())
    print(
        f"Done. {report.total_cells} cells, {report.total_unique_items} unique items, "
        f"coverage {report.coverage_quality}."
    )
    if not args.no_write:
        print(f"Results written to {output_dir}/cells.csv and {output_dir}/items.jsonl")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
