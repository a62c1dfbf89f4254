"""
Distance estimation for deduplication.

Road distance comes from a routing client when one is configured. Road
distance is never shorter than the straight line, so pairs already
farther apart than the radius skip the lookup entirely. When routing is
unavailable the estimator falls back to geodesic distance for the rest
of the run and reports it.
"""

from typing import Dict, List, Optional, Protocol, Sequence, Tuple
import logging

from expansion.errors import RoutingUnavailable
from expansion.geo import LatLng, haversine_km

log = logging.getLogger(__name__)


class RoutingClient(Protocol):
    def table(self, sources: Sequence[LatLng],
              destinations: Sequence[LatLng]) -> List[List[Optional[float]]]:
        """Road distances in meters, sources x destinations. None when unroutable."""
        ...


class DistanceEstimator:
    """
    Usage:
        estimator = DistanceEstimator(routing_client, fallback_factor=1.0)
        distances = estimator.distances_km(point, others, radius_km=5.0)
    """

    def __init__(self, routing_client: Optional[RoutingClient] = None,
                 fallback_factor: float = 1.0):
        self.routing_client = routing_client
        self.fallback_factor = fallback_factor
        self._routing_down = False
        self._used_fallback = False
        self._cache: Dict[Tuple[LatLng, LatLng], float] = {}
        self.routed_pairs = 0

    @property
    def routing_fallback(self) -> bool:
        """True when routing failed for any comparison and geodesic distance stood in."""
        return self._used_fallback

    def geodesic_km(self, a: LatLng, b: LatLng) -> float:
        return haversine_km(a[0], a[1], b[0], b[1])

    def distances_km(self, origin: LatLng, others: Sequence[LatLng],
                     radius_km: float) -> List[float]:
        """
        Distance from origin to each of others.

        Values above radius_km are only guaranteed to be above it, not exact.
        """
        geodesic = [self.geodesic_km(origin, o) for o in others]
        if self.routing_client is None:
            return geodesic
        near = [i for i, d in enumerate(geodesic) if d <= radius_km]
        if not near:
            return geodesic

        result = list(geodesic)
        pending = []
        for i in near:
            key = (origin, tuple(others[i]))
            if key in self._cache:
                result[i] = self._cache[key]
            else:
                pending.append(i)

        if pending:
            routed = self._route(origin, [others[i] for i in pending])
            for i, road_km in zip(pending, routed):
                if road_km is None:
                    self._used_fallback = True
                    road_km = geodesic[i] * self.fallback_factor
                else:
                    road_km = max(road_km, geodesic[i])
                self._cache[(origin, tuple(others[i]))] = road_km
                result[i] = road_km
        return result

    def _route(self, origin: LatLng, targets: List[LatLng]) -> List[Optional[float]]:
        if self._routing_down:
            return [None] * len(targets)
        try:
            matrix = self.routing_client.table([origin], targets)
        except RoutingUnavailable as e:
            log.warning(f"Routing unavailable, using geodesic distance for the rest of the run: {e}")
            self._routing_down = True
            return [None] * len(targets)

        self.routed_pairs += len(targets)
        row = matrix[0] if matrix else []
        return [None if meters is None else meters / 1000.0 for meters in row] + \
            [None] * (len(targets) - len(row))
