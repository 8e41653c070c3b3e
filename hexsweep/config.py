"""Project configuration.

Loads sweep parameters from sweep_config.json when available, falling back
to sensible defaults. Keep API request shapes and quota ceilings centralized
here.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

YELP_SEARCH_URL = "https://api.yelp.com/v3/businesses/search"

# --- Search API request shape ---

SEARCH_PAGE_SIZE = 50
# Yelp refuses offset + limit > 240, so one query never sees more than this.
SEARCH_RESULT_WINDOW = 240
SEARCH_MAX_RADIUS_M = 40000
SEARCH_CATEGORIES: Optional[str] = "restaurants"
SEARCH_TERM: Optional[str] = None
SEARCH_PARAMS_EXTRA: Dict[str, Any] = {}

# --- Quota ---

DAILY_CALL_LIMIT = 5000
PER_SECOND_CALL_LIMIT = 50
DAILY_RESET_SECONDS = 24 * 60 * 60
RATE_GATE_JITTER_SECONDS = 0.05
RATE_GATE_TIMEOUT_SECONDS: Optional[float] = 120.0

# Used by the pre-flight estimate when the real page count is unknown.
EST_PROBES_PER_CELL = 7
EST_PAGES_PER_PROBE = 1.5

RISK_MEDIUM_SHARE = 0.4
RISK_HIGH_SHARE = 0.6
RISK_CRITICAL_SHARE = 0.8

# --- Coverage planning ---

PRIMARY_VERTEX_FACTOR = 0.9
PRIMARY_INRADIUS_FACTOR = 1.1
CORNER_PRIMARY_FACTOR = 0.6
EDGE_PRIMARY_FACTOR = 0.8
SECONDARY_INRADIUS_FACTOR = 0.9
SMALL_CELL_MAX_KM2 = 3.0
MEDIUM_CELL_MAX_KM2 = 8.0
MEDIUM_CELL_CORNERS = 2
LARGE_CELL_CORNERS = 3
LARGE_CELL_EDGES = 2
LARGE_CELL_VALIDATION_KM2 = 10.0
LARGE_CELL_MIN_CORNERS = 2
# H3 resolution 7 in-radius, used only when the cell geometry is unavailable.
FALLBACK_PRIMARY_RADIUS_M = 1060

# --- Subdivision ---

DENSE_THRESHOLD = SEARCH_RESULT_WINDOW
MAX_SPLIT_RESOLUTION = 12
MAX_RESOLUTION_JUMP = 2

# --- Pipeline ---

PIPELINE_WORKERS = 4
RETRY_MAX_ATTEMPTS = 2
RETRY_BASE_DELAY = 2.0
RETRY_MAX_DELAY = 30.0
RETRY_JITTER = 1.0

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 5
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

# --- Outputs ---

OUTPUT_DIR = "out"
PROGRESS_LOG_EVERY = 25
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0

_OVERRIDABLE = {
    "search_categories": ("SEARCH_CATEGORIES", str),
    "search_term": ("SEARCH_TERM", str),
    "daily_call_limit": ("DAILY_CALL_LIMIT", int),
    "per_second_call_limit": ("PER_SECOND_CALL_LIMIT", int),
    "rate_gate_timeout_seconds": ("RATE_GATE_TIMEOUT_SECONDS", float),
    "dense_threshold": ("DENSE_THRESHOLD", int),
    "max_split_resolution": ("MAX_SPLIT_RESOLUTION", int),
    "pipeline_workers": ("PIPELINE_WORKERS", int),
    "retry_max_attempts": ("RETRY_MAX_ATTEMPTS", int),
    "retry_base_delay": ("RETRY_BASE_DELAY", float),
    "est_pages_per_probe": ("EST_PAGES_PER_PROBE", float),
    "output_dir": ("OUTPUT_DIR", str),
}


def load_sweep_config(path: Optional[str] = None) -> bool:
    """Load sweep configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "sweep_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()
    for key, (name, cast) in _OVERRIDABLE.items():
        if key not in data:
            continue
        value = data[key]
        globals_ref[name] = cast(value) if value is not None else None

    extra = data.get("search_params_extra")
    if extra:
        globals_ref["SEARCH_PARAMS_EXTRA"] = dict(extra)

    return True
