"""Bearer-authenticated JSON GET with bounded retries and shared request counters."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from .errors import TransientAPIError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

_COUNTERS = ("network_pages", "rate_limited", "failed_probes", "items_seen", "boundary_drops")


@dataclass
class RequestMetrics:
    """Thread-safe counters shared by the search layers of one run."""

    network_pages: int = 0
    rate_limited: int = 0
    failed_probes: int = 0
    items_seen: int = 0
    boundary_drops: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, amount: int = 1) -> None:
        if name not in _COUNTERS:
            raise ValueError(f"Unknown metric: {name}")
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {name: getattr(self, name) for name in _COUNTERS}


class HttpClient:
    def __init__(
        self,
        api_key: str,
        timeout: int = 20,
        retry_max: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        metrics: Optional[RequestMetrics] = None,
        before_resend: Optional[Callable[[], None]] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.metrics = metrics
        # Called before every resend so retries are counted like first sends.
        self.before_resend = before_resend
        self.session = requests.Session()

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        headers.update(extra or {})
        return headers

    def get_json(
        self,
        url: str,
        params: Dict[str, Any],
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """GET ``url`` and decode the JSON body.

        Connection errors and statuses in RETRYABLE_STATUSES are retried up to
        ``retry_max`` attempts in total, then surface as TransientAPIError.
        Any other non-200 status raises requests.HTTPError at once.
        """
        headers = self._headers(extra_headers)
        attempt = 0
        while True:
            attempt += 1
            last_try = attempt >= self.retry_max
            if attempt > 1 and self.before_resend is not None:
                self.before_resend()
            try:
                resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.warning("Request to %s failed on attempt %s: %s", url, attempt, exc)
                if last_try:
                    raise TransientAPIError(f"Request to {url} failed: {exc}") from exc
                time.sleep(self._backoff_delay(attempt))
                continue

            if resp.status_code == 200:
                return self._decode(resp, url)

            if resp.status_code not in RETRYABLE_STATUSES:
                logger.error("Giving up on %s: HTTP %s is not retryable", url, resp.status_code)
                resp.raise_for_status()
                raise requests.HTTPError(f"HTTP {resp.status_code} from {url}", response=resp)

            self._note_retryable(resp, url, attempt)
            if last_try:
                raise TransientAPIError(
                    f"HTTP {resp.status_code} from {url} after {attempt} attempts",
                    status_code=resp.status_code,
                )
            delay = self._retry_after(resp)
            time.sleep(self._backoff_delay(attempt) if delay is None else delay)

    def _note_retryable(self, resp: requests.Response, url: str, attempt: int) -> None:
        logger.warning("HTTP %s from %s (attempt %s/%s)", resp.status_code, url, attempt, self.retry_max)
        if resp.status_code == 429 and self.metrics is not None:
            self.metrics.inc("rate_limited")

    @staticmethod
    def _decode(resp: requests.Response, url: str) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError:
            logger.error("Response from %s is not JSON", url)
            raise

    def _backoff_delay(self, attempt: int) -> float:
        exp = self.backoff_base * (2 ** (attempt - 1))
        return min(exp, self.backoff_max) + random.uniform(0, self.backoff_base)

    def _retry_after(self, resp: requests.Response) -> Optional[float]:
        raw = resp.headers.get("Retry-After")
        if not raw:
            return None
        try:
            seconds = float(raw)
        except ValueError:
            return None
        return min(max(seconds, 0.0), self.backoff_max)
