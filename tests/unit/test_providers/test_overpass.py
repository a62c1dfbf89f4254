import pytest
import requests
from unittest.mock import MagicMock, patch

from expansion.cache import ResultCache
from expansion.geo import BoundingBox
from providers.overpass import OverpassLoader, parse_population

BOUNDS = BoundingBox(50.0, 10.0, 50.5, 10.5)

SETTLEMENTS = {
    "elements": [
        {"type": "node", "id": 1, "lat": 50.1, "lon": 10.1,
         "tags": {"place": "town", "name": "Alpha", "population": "12 345"}},
        {"type": "node", "id": 2, "lat": 50.2, "lon": 10.2,
         "tags": {"place": "village", "name": "Beta"}},
        {"type": "node", "id": 3, "lat": 50.3, "lon": 10.3,
         "tags": {"place": "hamlet", "name": "Gamma"}},
    ]
}

ANCHORS = {
    "elements": [
        {"type": "node", "id": 10, "lat": 50.1, "lon": 10.1, "tags": {"shop": "supermarket"}},
        {"type": "way", "id": 11, "center": {"lat": 50.2, "lon": 10.2}, "tags": {"amenity": "college"}},
        {"type": "node", "id": 12, "lat": 50.3, "lon": 10.3, "tags": {"shop": "bakery"}},
    ]
}


@pytest.fixture
def loader(tmp_path):
    with patch('requests.Session') as mock_session:
        loader = OverpassLoader(cache=ResultCache(str(tmp_path / "cache.db")), min_request_interval=0)
        loader.session = mock_session.return_value
        yield loader


def _respond(loader, payload):
    response = MagicMock()
    response.json.return_value = payload
    loader.session.post.return_value = response


@pytest.mark.parametrize("raw,expected", [
    ("12345", 12345), ("12 345", 12345), ("12,345", 12345), ("~5000", 5000),
    ("800;900", 800), ("", None), (None, None), ("unknown", None),
])
def test_parse_population(raw, expected):
    assert parse_population(raw) == expected


def test_fetch_settlements(loader):
    """Places without a population tag get a typical size and are flagged."""
    _respond(loader, SETTLEMENTS)
    settlements = loader.fetch_settlements(BOUNDS)

    assert [s.name for s in settlements] == ["Alpha", "Beta"]
    alpha, beta = settlements
    assert alpha.id == "osm-node-1"
    assert alpha.population == 12345 and alpha.population_measured
    assert beta.population == 1000 and not beta.population_measured


def test_fetch_anchors(loader):
    _respond(loader, ANCHORS)
    anchors = loader.fetch_anchors(BOUNDS)

    assert [(a.id, a.category) for a in anchors] == [
        ("osm-node-10", "supermarket"),
        ("osm-way-11", "university"),
    ]
    assert anchors[1].lat == 50.2


def test_results_are_cached(loader):
    _respond(loader, SETTLEMENTS)
    loader.fetch_settlements(BOUNDS)
    loader.fetch_settlements(BOUNDS)
    assert loader.session.post.call_count == 1


def test_failure_returns_none(loader):
    loader.session.post.side_effect = requests.ConnectionError("down")
    with patch("time.sleep"):
        assert loader.fetch_anchors(BOUNDS) is None
    assert loader.session.post.call_count == 3


def test_query_mentions_every_anchor_tag(loader):
    query = loader._anchor_query(BOUNDS)
    for tag in ('"shop"="mall"', '"amenity"="hospital"', '"railway"="station"'):
        assert tag in query
    assert "50.00000,10.00000,50.50000,10.50000" in query


def test_categorize():
    assert OverpassLoader.categorize({"public_transport": "station"}) == "transit"
    assert OverpassLoader.categorize({"amenity": "cafe"}) is None
