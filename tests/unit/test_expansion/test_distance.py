from unittest.mock import MagicMock

import pytest

from expansion.distance import DistanceEstimator
from expansion.errors import RoutingUnavailable

ORIGIN = (50.0, 10.0)
NEAR = (50.02, 10.0)   # ~2.2 km
FAR = (50.5, 10.0)     # ~55 km


def test_geodesic_only_without_routing():
    estimator = DistanceEstimator()
    distances = estimator.distances_km(ORIGIN, [NEAR, FAR], radius_km=5.0)
    assert distances[0] == pytest.approx(2.22, abs=0.01)
    assert distances[1] == pytest.approx(55.6, abs=0.1)
    assert not estimator.routing_fallback


def test_only_near_pairs_are_routed():
    routing = MagicMock()
    routing.table.return_value = [[3100.0]]
    estimator = DistanceEstimator(routing)

    distances = estimator.distances_km(ORIGIN, [NEAR, FAR], radius_km=5.0)

    routing.table.assert_called_once_with([ORIGIN], [NEAR])
    assert distances[0] == pytest.approx(3.1)
    assert estimator.routed_pairs == 1


def test_road_distance_never_below_geodesic():
    routing = MagicMock()
    routing.table.return_value = [[1000.0]]
    distances = DistanceEstimator(routing).distances_km(ORIGIN, [NEAR], radius_km=5.0)
    assert distances[0] == pytest.approx(2.22, abs=0.01)


def test_results_are_cached_per_pair():
    routing = MagicMock()
    routing.table.return_value = [[3100.0]]
    estimator = DistanceEstimator(routing)
    estimator.distances_km(ORIGIN, [NEAR], radius_km=5.0)
    estimator.distances_km(ORIGIN, [NEAR], radius_km=5.0)
    assert routing.table.call_count == 1


def test_unroutable_pair_uses_fallback_factor():
    routing = MagicMock()
    routing.table.return_value = [[None]]
    estimator = DistanceEstimator(routing, fallback_factor=1.3)

    distances = estimator.distances_km(ORIGIN, [NEAR], radius_km=5.0)

    assert distances[0] == pytest.approx(2.22 * 1.3, abs=0.02)
    assert estimator.routing_fallback


def test_outage_switches_to_geodesic_for_the_run():
    routing = MagicMock()
    routing.table.side_effect = RoutingUnavailable("timeout")
    estimator = DistanceEstimator(routing)

    estimator.distances_km(ORIGIN, [NEAR], radius_km=5.0)
    distances = estimator.distances_km((50.1, 10.0), [(50.11, 10.0)], radius_km=5.0)

    assert routing.table.call_count == 1
    assert distances[0] == pytest.approx(1.11, abs=0.01)
    assert estimator.routing_fallback
