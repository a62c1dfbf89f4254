import threading

import pytest

from expansion.config import ExpansionSettings
from expansion.geo import BoundingBox
from expansion.models import (
    AnchorPOI, ExclusionSite, RegionData, Settlement, SiteKind, SubRegion,
)
from providers.rationale import RationaleProvider, RationaleResponse

# Roughly 200 km x 200 km around (50N, 10E)
MIN_LAT, MAX_LAT = 49.1, 50.9
MIN_LNG, MAX_LNG = 8.6, 11.4
MID_LAT, MID_LNG = 50.0, 10.0


def _rect(min_lat, min_lng, max_lat, max_lng):
    return [(min_lat, min_lng), (min_lat, max_lng), (max_lat, max_lng), (max_lat, min_lng)]


def _quadrant(key, min_lat, min_lng, max_lat, max_lng):
    return SubRegion(
        key=key,
        name=key.upper(),
        bounds=BoundingBox(min_lat, min_lng, max_lat, max_lng),
        polygon=_rect(min_lat, min_lng, max_lat, max_lng),
    )


def make_small_country() -> RegionData:
    """Four polygon sub-regions, a 7x7 lattice of towns and a few anchors."""
    sub_regions = [
        _quadrant("sw", MIN_LAT, MIN_LNG, MID_LAT, MID_LNG),
        _quadrant("se", MIN_LAT, MID_LNG, MID_LAT, MAX_LNG),
        _quadrant("nw", MID_LAT, MIN_LNG, MAX_LAT, MID_LNG),
        _quadrant("ne", MID_LAT, MID_LNG, MAX_LAT, MAX_LNG),
    ]

    settlements = []
    for i in range(7):
        for j in range(7):
            n = i * 7 + j
            settlements.append(Settlement(
                id=f"t{n:02d}",
                name=f"Town {n:02d}",
                lat=round(49.23 + i * 0.25, 4),
                lng=round(8.77 + j * 0.42, 4),
                population=5000 + (n * 7919) % 200000,
            ))

    anchors = []
    for n, st in enumerate(settlements[::3]):
        anchors.append(AnchorPOI(f"a{n:02d}", "supermarket", st.lat + 0.002, st.lng + 0.002))
        anchors.append(AnchorPOI(f"b{n:02d}", "transit", st.lat - 0.003, st.lng))
        # Duplicate listing of the same supermarket
        anchors.append(AnchorPOI(f"c{n:02d}", "supermarket", st.lat + 0.0022, st.lng + 0.0021))

    return RegionData(
        key="small-country",
        name="Small Country",
        boundary=[_rect(MIN_LAT, MIN_LNG, MAX_LAT, MAX_LNG)],
        sub_regions=sub_regions,
        settlements=settlements,
        anchors=anchors,
    )


def make_exclusions():
    return [
        ExclusionSite("s1", SiteKind.EXISTING, 49.62, 9.40, annual_turnover=1_200_000),
        ExclusionSite("s2", SiteKind.EXISTING, 49.70, 9.65, annual_turnover=900_000),
        ExclusionSite("s3", SiteKind.EXISTING, 49.45, 9.55, annual_turnover=1_500_000),
        ExclusionSite("p1", SiteKind.PLANNED, 50.55, 10.70),
    ]


class FakeRationaleProvider(RationaleProvider):
    """Deterministic provider that records every call."""

    model = "fake-model"

    def __init__(self, cost=0.001, max_cost=0.002, tokens=150, fail_ids=(), errors=None):
        self.cost = cost
        self.max_cost = max_cost
        self.tokens = tokens
        self.fail_ids = set(fail_ids)
        self.errors = errors or {}
        self.calls = []
        self._lock = threading.Lock()

    def max_call_cost(self, request):
        return self.max_cost

    def generate(self, request):
        with self._lock:
            self.calls.append(request.candidate_id)
        if request.candidate_id in self.errors:
            raise self.errors[request.candidate_id]
        if request.candidate_id in self.fail_ids:
            from expansion.errors import AICallFailed
            raise AICallFailed("provider down", request.candidate_id)
        return RationaleResponse(
            text=f"AI rationale for {request.candidate_id}",
            tokens_used=self.tokens,
            cost=self.cost,
            model=request.model,
        )


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return ExpansionSettings(
        ai_retry_min_seconds=0.01,
        ai_retry_max_seconds=0.02,
        ai_timeout_seconds=1.0,
        poll_interval_seconds=0.01,
    ).validate()


@pytest.fixture
def small_country():
    return make_small_country()


@pytest.fixture
def exclusions():
    return make_exclusions()


@pytest.fixture
def fake_provider():
    return FakeRationaleProvider()


@pytest.fixture
def provider_factory():
    return FakeRationaleProvider


@pytest.fixture
def clock():
    return FakeClock()


def _make_scored(candidate_id, lat, lng, score, region="r1", quality=None, name=None):
    from expansion.models import Candidate, DataQuality, ScoredCandidate, SourceType

    quality = quality or {}
    candidate = Candidate(
        id=candidate_id,
        lat=lat,
        lng=lng,
        source_type=SourceType.SETTLEMENT if name else SourceType.GRID,
        estimated_population=20000,
        urban_density_index=0.7,
        region_key=region,
        settlement_name=name,
    )
    components = {"population": score, "proximity_gap": score, "anchor_density": score, "performance": score}
    return ScoredCandidate(
        candidate=candidate,
        total_score=score,
        components=components,
        component_quality={k: quality.get(k, DataQuality.MEASURED) for k in components},
        effective_weights={"population": 0.25, "proximity_gap": 0.35, "anchor_density": 0.2, "performance": 0.2},
        completeness_score=1.0,
        nearest_site_km=12.5,
    )


@pytest.fixture
def make_scored():
    return _make_scored


@pytest.fixture
def survivors():
    """50 well-separated survivors with distinct scores, best first."""
    return [
        _make_scored(f"c{i:02d}", 49.2 + (i // 10) * 0.2, 8.8 + (i % 10) * 0.2, round(0.95 - i * 0.01, 2))
        for i in range(50)
    ]
