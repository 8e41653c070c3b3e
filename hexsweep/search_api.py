"""Paginated business search transport and response parsing."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from . import config
from .http import HttpClient, RequestMetrics


@dataclass(frozen=True)
class ExternalItem:
    key: str
    lat: Optional[float]
    lng: Optional[float]
    name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    def as_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "name": self.name, "lat": self.lat, "lng": self.lng, **_flat(self.data)}


@dataclass
class SearchPage:
    total: int
    items: List[ExternalItem]


class SearchAPI(Protocol):
    page_size: int

    def fetch_page(self, lat: float, lng: float, radius_m: int, offset: int, limit: int) -> SearchPage: ...


class YelpSearchAPI:
    def __init__(
        self,
        http_client: HttpClient,
        categories: Optional[str] = None,
        term: Optional[str] = None,
        page_size: Optional[int] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.categories = categories if categories is not None else config.SEARCH_CATEGORIES
        self.term = term if term is not None else config.SEARCH_TERM
        self.page_size = int(page_size if page_size is not None else config.SEARCH_PAGE_SIZE)
        self.metrics = metrics

    def fetch_page(self, lat: float, lng: float, radius_m: int, offset: int, limit: int) -> SearchPage:
        params = build_search_params(lat, lng, radius_m, offset, limit, self.categories, self.term)
        response = self.http.get_json(config.YELP_SEARCH_URL, params)
        if self.metrics is not None:
            self.metrics.inc("network_pages")
        return parse_search_response(response)


def build_search_params(
    lat: float,
    lng: float,
    radius_m: int,
    offset: int,
    limit: int,
    categories: Optional[str] = None,
    term: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "latitude": lat,
        "longitude": lng,
        "radius": min(int(radius_m), config.SEARCH_MAX_RADIUS_M),
        "limit": int(limit),
        "offset": int(offset),
    }
    if categories:
        params["categories"] = categories
    if term:
        params["term"] = term
    if config.SEARCH_PARAMS_EXTRA:
        params.update(config.SEARCH_PARAMS_EXTRA)
    return params


# Adapter/mapper for Yelp response fields

def parse_search_response(response: Dict[str, Any]) -> SearchPage:
    businesses = response.get("businesses") or []
    items: List[ExternalItem] = []
    for b in businesses:
        key = b.get("id")
        if not key:
            continue
        coords = b.get("coordinates") or {}
        items.append(
            ExternalItem(
                key=str(key),
                lat=_as_float(coords.get("latitude")),
                lng=_as_float(coords.get("longitude")),
                name=b.get("name"),
                data=dict(b),
            )
        )
    try:
        total = int(response.get("total") or 0)
    except (TypeError, ValueError):
        total = len(items)
    return SearchPage(total=total, items=items)


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _flat(data: Dict[str, Any]) -> Dict[str, Any]:
    location = data.get("location") or {}
    categories = data.get("categories") or []
    return {
        "rating": data.get("rating"),
        "review_count": data.get("review_count"),
        "price": data.get("price"),
        "phone": data.get("phone"),
        "url": data.get("url"),
        "address": ", ".join(location.get("display_address") or []) or location.get("address1"),
        "categories": [c.get("alias") for c in categories if isinstance(c, dict)],
    }
