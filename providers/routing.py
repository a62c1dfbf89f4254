"""
OSRM routing client.

Talks to an OSRM server's /table service and returns road distances in
meters. Coordinates are (lat, lng) everywhere in the pipeline; OSRM wants
lng,lat, which this module handles.
"""

from typing import Dict, List, Optional, Sequence
import logging

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from expansion.errors import RoutingUnavailable
from expansion.geo import LatLng

log = logging.getLogger(__name__)

# OSRM's default --max-table-size
MAX_TABLE_SIZE = 100


class OSRMClient:
    """
    Drive-distance lookups via OSRM.

    Usage:
        client = OSRMClient("http://router.project-osrm.org")
        meters = client.table([(51.50, -0.12)], [(51.52, -0.10), (51.48, -0.15)])
    """

    def __init__(self, base_url: str, profile: str = "driving", timeout: int = 10):
        if not base_url:
            raise ValueError("OSRM base URL is required")
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self.session = requests.Session()

    @staticmethod
    def format_coordinates(coords: Sequence[LatLng]) -> str:
        """(lat, lng) pairs to OSRM 'lng,lat;lng,lat'."""
        return ";".join(f"{lng:.6f},{lat:.6f}" for lat, lng in coords)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=2, max=15),
        retry=retry_if_exception_type(requests.RequestException),
        reraise=True,
    )
    def _make_request(self, url: str, params: Dict[str, str]) -> Dict:
        """GET with retry on transport and HTTP errors."""
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def table(self, sources: Sequence[LatLng],
              destinations: Sequence[LatLng]) -> List[List[Optional[float]]]:
        """
        Road distance matrix.

        Args:
            sources: Origins as (lat, lng)
            destinations: Targets as (lat, lng)

        Returns:
            Meters, sources x destinations. None where OSRM found no route.

        Raises:
            RoutingUnavailable: the server could not be reached or refused
        """
        if not sources or not destinations:
            return [[] for _ in sources]

        matrix: List[List[Optional[float]]] = [[] for _ in sources]
        chunk = max(1, MAX_TABLE_SIZE - len(sources))
        for start in range(0, len(destinations), chunk):
            part = list(destinations[start:start + chunk])
            rows = self._table_chunk(list(sources), part)
            for i, row in enumerate(rows):
                matrix[i].extend(row)
        return matrix

    def _table_chunk(self, sources: List[LatLng],
                     destinations: List[LatLng]) -> List[List[Optional[float]]]:
        coords = self.format_coordinates(sources + destinations)
        url = f"{self.base_url}/table/v1/{self.profile}/{coords}"
        params = {
            "sources": ";".join(str(i) for i in range(len(sources))),
            "destinations": ";".join(str(len(sources) + i) for i in range(len(destinations))),
            "annotations": "distance",
        }

        try:
            data = self._make_request(url, params)
        except requests.RequestException as e:
            raise RoutingUnavailable(f"OSRM request failed: {e}") from e
        except ValueError as e:
            raise RoutingUnavailable(f"OSRM returned invalid JSON: {e}") from e

        if data.get("code") != "Ok":
            raise RoutingUnavailable(f"OSRM error: {data.get('message', data.get('code', 'unknown'))}")

        distances = data.get("distances")
        if distances is None or len(distances) != len(sources):
            raise RoutingUnavailable("OSRM response has no distance matrix")

        log.debug(f"OSRM table {len(sources)}x{len(destinations)}")
        return [[None if d is None else float(d) for d in row] for row in distances]
