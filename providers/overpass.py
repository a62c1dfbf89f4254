"""
OpenStreetMap settlements and anchor POIs via the Overpass API.

Enhanced with:
- Rate limiting (per Overpass API guidelines)
- Caching in the shared ResultCache
- Retry with exponential backoff
"""

import threading
import time
from typing import Dict, List, Optional
import logging

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from expansion.cache import ResultCache
from expansion.geo import BoundingBox
from expansion.models import AnchorPOI, Settlement

log = logging.getLogger(__name__)

OVERPASS_NAMESPACE = "overpass"

# Anchor category -> OSM tag filters that produce it
ANCHOR_TAGS: Dict[str, List[tuple]] = {
    "mall": [("shop", "mall")],
    "supermarket": [("shop", "supermarket")],
    "university": [("amenity", "university"), ("amenity", "college")],
    "hospital": [("amenity", "hospital")],
    "transit": [("railway", "station"), ("public_transport", "station")],
}

# Fallback population when a place carries no population tag
PLACE_POPULATION = {
    "city": 100000,
    "town": 10000,
    "village": 1000,
}


def parse_population(raw: Optional[str]) -> Optional[int]:
    """OSM population tags are free text: '12 345', '12,345', '~5000'."""
    if not raw:
        return None
    digits = "".join(ch for ch in str(raw).split(";")[0] if ch.isdigit())
    return int(digits) if digits else None


def _position(element: Dict):
    lat = element.get("lat") or element.get("center", {}).get("lat")
    lng = element.get("lon") or element.get("center", {}).get("lon")
    return lat, lng


class OverpassLoader:
    """
    Settlement and anchor POI loader.

    Usage:
        loader = OverpassLoader(cache=ResultCache("expansion_cache.db"))
        settlements = loader.fetch_settlements(region.bounds)
        anchors = loader.fetch_anchors(region.bounds)
    """

    OVERPASS_URL = "https://overpass-api.de/api/interpreter"

    def __init__(self, cache: Optional[ResultCache] = None, timeout: int = 60,
                 min_request_interval: float = 2.0, url: Optional[str] = None):
        self.cache = cache
        self.timeout = timeout
        self.min_request_interval = min_request_interval
        self.url = url or self.OVERPASS_URL
        self.session = requests.Session()
        self._last_request_time = 0.0
        self._lock = threading.Lock()

    def _rate_limit(self):
        """Ensure we don't exceed rate limits."""
        with self._lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
            self._last_request_time = time.time()

    @staticmethod
    def _bbox(bounds: BoundingBox) -> str:
        return f"{bounds.min_lat:.5f},{bounds.min_lng:.5f},{bounds.max_lat:.5f},{bounds.max_lng:.5f}"

    def _settlement_query(self, bounds: BoundingBox) -> str:
        bbox = self._bbox(bounds)
        return f"""
        [out:json][timeout:{self.timeout}];
        (
          node["place"~"^(city|town|village)$"]({bbox});
        );
        out;
        """

    def _anchor_query(self, bounds: BoundingBox) -> str:
        bbox = self._bbox(bounds)
        clauses = []
        for filters in ANCHOR_TAGS.values():
            for key, value in filters:
                clauses.append(f'node["{key}"="{value}"]({bbox});')
                clauses.append(f'way["{key}"="{value}"]({bbox});')
        body = "\n          ".join(clauses)
        return f"""
        [out:json][timeout:{self.timeout}];
        (
          {body}
        );
        out center;
        """

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=2, min=2, max=15))
    def _make_request(self, query: str) -> Dict:
        """Make a rate-limited request with retry."""
        self._rate_limit()
        response = self.session.post(
            self.url,
            data={"data": query},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def fetch_raw(self, kind: str, query: str, bounds: BoundingBox) -> Optional[Dict]:
        """
        Run a query, consulting the cache first.

        Returns:
            Raw Overpass response, or None if the request failed
        """
        key = ResultCache.make_key(OVERPASS_NAMESPACE, {"kind": kind, "bbox": self._bbox(bounds)})
        if self.cache is not None:
            cached = self.cache.get_json(key)
            if cached is not None:
                log.debug(f"Cache hit for Overpass {kind} in {self._bbox(bounds)}")
                return cached

        try:
            data = self._make_request(query)
        except Exception as e:
            log.error(f"Overpass {kind} request failed: {e}")
            return None

        if self.cache is not None:
            self.cache.put_json(key, data)
        log.info(f"Overpass fetched {len(data.get('elements', []))} {kind} elements")
        return data

    def fetch_settlements(self, bounds: BoundingBox) -> Optional[List[Settlement]]:
        """
        Cities, towns and villages in the box.

        Places without a population tag get a typical size for their kind and
        are flagged as not measured.
        """
        data = self.fetch_raw("settlements", self._settlement_query(bounds), bounds)
        if data is None:
            return None

        settlements = []
        for el in data.get("elements", []):
            tags = el.get("tags", {})
            lat, lng = _position(el)
            place = tags.get("place")
            if lat is None or lng is None or place not in PLACE_POPULATION:
                continue
            population = parse_population(tags.get("population"))
            measured = population is not None
            settlements.append(Settlement(
                id=f"osm-{el.get('type', 'node')}-{el['id']}",
                name=tags.get("name", f"{place} {el['id']}"),
                lat=float(lat),
                lng=float(lng),
                population=population if measured else PLACE_POPULATION[place],
                population_measured=measured,
            ))
        return settlements

    def fetch_anchors(self, bounds: BoundingBox) -> Optional[List[AnchorPOI]]:
        """Anchor POIs in the box, categorised by ANCHOR_TAGS."""
        data = self.fetch_raw("anchors", self._anchor_query(bounds), bounds)
        if data is None:
            return None

        anchors = []
        for el in data.get("elements", []):
            tags = el.get("tags", {})
            lat, lng = _position(el)
            if lat is None or lng is None:
                continue
            category = self.categorize(tags)
            if category is None:
                continue
            anchors.append(AnchorPOI(
                id=f"osm-{el.get('type', 'node')}-{el['id']}",
                category=category,
                lat=float(lat),
                lng=float(lng),
            ))
        return anchors

    @staticmethod
    def categorize(tags: Dict[str, str]) -> Optional[str]:
        for category, filters in ANCHOR_TAGS.items():
            if any(tags.get(key) == value for key, value in filters):
                return category
        return None
