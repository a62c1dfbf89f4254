import pytest

from expansion.config import COMPONENTS, DEFAULT_WEIGHTS
from expansion.models import (
    AnchorPOI, Candidate, DataQuality, ExclusionSite, SiteKind, SourceType,
)
from expansion.scoring import AnchorCounter, ScoringEngine, effective_weights, merge_anchor_pois

MEASURED = DataQuality.MEASURED
ESTIMATED = DataQuality.ESTIMATED


def _candidate(lat=50.0, lng=10.0, population=50000, anchors=None, quality=None, udi=0.6):
    return Candidate(
        id="x1",
        lat=lat,
        lng=lng,
        source_type=SourceType.SETTLEMENT,
        estimated_population=population,
        urban_density_index=udi,
        region_key="r1",
        anchor_counts=anchors or {},
        settlement_name="Testville",
        data_quality=quality or {},
    )


def test_merge_anchor_pois_collapses_duplicate_listings():
    pois = [
        AnchorPOI("a", "mall", 50.0, 10.0),
        AnchorPOI("b", "mall", 50.0003, 10.0003),   # ~40 m away: same place
        AnchorPOI("c", "transit", 50.0003, 10.0003),  # other category: kept
        AnchorPOI("d", "mall", 50.01, 10.0),         # ~1 km away: kept
    ]
    merged = merge_anchor_pois(pois, coincidence_m=75.0)
    assert sorted(p.id for p in merged) == ["a", "c", "d"]


def test_anchor_counter_reports_raw_and_deduplicated():
    pois = [
        AnchorPOI("a", "mall", 50.0, 10.0),
        AnchorPOI("b", "mall", 50.0003, 10.0003),
        AnchorPOI("c", "transit", 50.001, 10.0),
    ]
    counts, raw = AnchorCounter(pois, 75.0, 2.0).count(50.0, 10.0)
    assert counts == {"mall": 1, "transit": 1}
    assert raw == 3


def test_effective_weights_untouched_when_all_measured():
    quality = {k: MEASURED for k in COMPONENTS}
    assert effective_weights(DEFAULT_WEIGHTS, quality, 0.25) == DEFAULT_WEIGHTS


def test_estimated_weight_is_capped_and_excess_goes_to_measured():
    quality = {k: MEASURED for k in COMPONENTS}
    quality["proximity_gap"] = ESTIMATED
    weights = effective_weights(DEFAULT_WEIGHTS, quality, 0.25)

    assert weights["proximity_gap"] == pytest.approx(0.25)
    assert sum(weights.values()) == pytest.approx(1.0)
    # 0.10 excess split 25:20:20 over the measured components
    assert weights["population"] == pytest.approx(0.25 + 0.10 * 25 / 65)
    assert weights["anchor_density"] == pytest.approx(0.20 + 0.10 * 20 / 65)


def test_all_estimated_drops_excess():
    quality = {k: ESTIMATED for k in COMPONENTS}
    weights = effective_weights(DEFAULT_WEIGHTS, quality, 0.25)
    assert max(weights.values()) <= 0.25
    assert sum(weights.values()) < 1.0


def test_no_sites_means_full_proximity_gap(settings):
    scored = ScoringEngine(settings).score_one(_candidate())
    assert scored.components["proximity_gap"] == 1.0
    assert scored.nearest_site_km is None


def test_proximity_gap_scales_with_distance(settings):
    # 10 km north of the candidate
    site = ExclusionSite("s1", SiteKind.EXISTING, 50.0 + 10 / 111.195, 10.0)
    scored = ScoringEngine(settings).score_one(_candidate(), [site])
    assert scored.nearest_site_km == pytest.approx(10.0, abs=0.01)
    assert scored.components["proximity_gap"] == pytest.approx(10.0 / settings.gap_saturation_km, abs=0.001)


def test_planned_sites_count_for_proximity(settings):
    planned = ExclusionSite("p1", SiteKind.PLANNED, 50.01, 10.0)
    scored = ScoringEngine(settings).score_one(_candidate(), [planned])
    assert scored.nearest_site_km == pytest.approx(1.11, abs=0.01)


def test_performance_measured_with_enough_nearby_turnover(settings):
    sites = [
        ExclusionSite("s1", SiteKind.EXISTING, 50.05, 10.0, annual_turnover=1_000_000),
        ExclusionSite("s2", SiteKind.EXISTING, 50.0, 10.1, annual_turnover=1_000_000),
        ExclusionSite("s3", SiteKind.EXISTING, 49.95, 10.0, annual_turnover=1_000_000),
    ]
    scored = ScoringEngine(settings).score_one(_candidate(), sites)
    assert scored.component_quality["performance"] is MEASURED
    assert scored.components["performance"] == pytest.approx(0.5)
    assert scored.performance_samples == 3


def test_performance_falls_back_to_density_proxy(settings):
    scored = ScoringEngine(settings).score_one(_candidate(udi=0.42))
    assert scored.component_quality["performance"] is ESTIMATED
    assert scored.components["performance"] == pytest.approx(0.42)
    assert scored.completeness_score == pytest.approx(0.75)


def test_scores_are_bounded_and_deterministic(settings, small_country, exclusions):
    from expansion.generator import CandidateGenerator

    candidates = CandidateGenerator(settings).generate(small_country, exclusions, 20, seed=1).candidates
    engine = ScoringEngine(settings)
    first = engine.score(candidates, exclusions)
    second = engine.score(candidates, exclusions)

    assert [s.total_score for s in first] == [s.total_score for s in second]
    assert [s.id for s in first] == [c.id for c in candidates]
    for s in first:
        assert 0.0 <= s.total_score <= 1.0
        assert set(s.components) == set(COMPONENTS)


def test_more_population_scores_higher(settings):
    engine = ScoringEngine(settings)
    small = engine.score_one(_candidate(population=2_000))
    large = engine.score_one(_candidate(population=200_000))
    assert large.total_score > small.total_score


def test_explain_score_lists_components(settings):
    engine = ScoringEngine(settings)
    text = engine.explain_score(engine.score_one(_candidate(anchors={"mall": 2})))
    for name in COMPONENTS:
        assert name in text
    assert "(estimated)" in text
