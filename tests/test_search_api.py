from hexsweep import config
from hexsweep.http import HttpClient, RequestMetrics
from hexsweep.search_api import YelpSearchAPI, build_search_params, parse_search_response


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload
        self.status_code = 200
        self.headers = {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        return None


class FakeSession:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params))
        return FakeResponse(self.payload)


SAMPLE = {
    "total": 3,
    "businesses": [
        {
            "id": "b1",
            "name": "Cafe One",
            "coordinates": {"latitude": 52.23, "longitude": 21.01},
            "rating": 4.5,
            "review_count": 120,
            "location": {"display_address": ["Main St 1", "Warsaw"]},
            "categories": [{"alias": "cafes", "title": "Cafes"}],
        },
        {"id": "b2", "name": "No Coords", "coordinates": {}},
        {"name": "Missing id"},
    ],
}


def test_build_search_params_clamps_radius_and_adds_filters(monkeypatch):
    monkeypatch.setattr(config, "SEARCH_PARAMS_EXTRA", {"open_now": "false"})

    params = build_search_params(52.2, 21.0, 50000, 100, 40, categories="restaurants", term="pizza")

    assert params == {
        "latitude": 52.2,
        "longitude": 21.0,
        "radius": 40000,
        "limit": 40,
        "offset": 100,
        "categories": "restaurants",
        "term": "pizza",
        "open_now": "false",
    }


def test_parse_search_response_skips_items_without_id():
    page = parse_search_response(SAMPLE)

    assert page.total == 3
    assert [i.key for i in page.items] == ["b1", "b2"]
    assert page.items[0].lat == 52.23
    assert page.items[1].lat is None

    row = page.items[0].as_dict()
    assert row["name"] == "Cafe One"
    assert row["address"] == "Main St 1, Warsaw"
    assert row["categories"] == ["cafes"]


def test_parse_search_response_tolerates_missing_fields():
    page = parse_search_response({})

    assert page.total == 0
    assert page.items == []


def test_fetch_page_goes_through_http_client():
    metrics = RequestMetrics()
    http_client = HttpClient(api_key="key", timeout=1, retry_max=1)
    http_client.session = FakeSession(SAMPLE)
    api = YelpSearchAPI(http_client, categories="cafes", term=None, metrics=metrics)

    page = api.fetch_page(52.2, 21.0, 800, 0, 50)

    url, params = http_client.session.calls[0]
    assert url == config.YELP_SEARCH_URL
    assert params["categories"] == "cafes"
    assert "term" not in params
    assert page.total == 3
    assert metrics.network_pages == 1
    assert api.page_size == config.SEARCH_PAGE_SIZE
