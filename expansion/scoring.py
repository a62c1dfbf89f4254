"""
Scoring Engine

Fuses independently sourced signals into one confidence score per
candidate:

    total_score = Σ(effective_weight_i × component_i)

Components (all 0-1):
- population: trade-area population on a log scale
- proximity_gap: distance to the nearest existing or planned site
- anchor_density: deduplicated anchor POIs within range, log scale
- performance: turnover of nearby existing sites versus the network

Estimated components have their effective weight capped so a single
noisy proxy never dominates. The freed weight goes to measured
components in proportion to their nominal weights.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from expansion.config import ExpansionSettings, COMPONENTS
from expansion.geo import SpatialIndex, haversine_km
from expansion.models import (
    AnchorPOI, Candidate, DataQuality, ExclusionSite, ScoredCandidate, SiteKind,
)

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ANCHOR DEDUPLICATION
# ═══════════════════════════════════════════════════════════════════════════
def merge_anchor_pois(pois: Sequence[AnchorPOI], coincidence_m: float) -> List[AnchorPOI]:
    """
    Collapse duplicate listings of the same physical place.

    Two POIs merge when they share a category and sit within the
    coincidence radius. Processing order is (category, id) so the kept
    representative is stable across runs.
    """
    radius_km = coincidence_m / 1000.0
    if not pois or radius_km <= 0:
        return list(pois)

    reference_lat = sum(p.lat for p in pois) / len(pois)
    kept_by_category: Dict[str, SpatialIndex] = {}
    merged = []

    for poi in sorted(pois, key=lambda p: (p.category, p.id)):
        index = kept_by_category.get(poi.category)
        if index is None:
            index = SpatialIndex(max(radius_km, 0.05), reference_lat, lambda p: (p.lat, p.lng))
            kept_by_category[poi.category] = index
        if index.within(poi.lat, poi.lng, radius_km):
            continue
        index.insert(poi)
        merged.append(poi)

    if len(merged) < len(pois):
        log.debug(f"Merged {len(pois) - len(merged)} duplicate anchor listings")
    return merged


class AnchorCounter:
    """Counts raw and deduplicated anchors around a point."""

    def __init__(self, pois: Sequence[AnchorPOI], coincidence_m: float, radius_km: float):
        self.radius_km = radius_km
        self.merged = merge_anchor_pois(pois, coincidence_m)
        reference_lat = (sum(p.lat for p in pois) / len(pois)) if pois else 0.0
        cell_km = max(radius_km, 0.5)
        self._raw = SpatialIndex(cell_km, reference_lat, lambda p: (p.lat, p.lng))
        self._raw.extend(pois)
        self._merged = SpatialIndex(cell_km, reference_lat, lambda p: (p.lat, p.lng))
        self._merged.extend(self.merged)

    def count(self, lat: float, lng: float) -> Tuple[Dict[str, int], int]:
        """
        Returns:
            (deduplicated counts by category, raw listing count)
        """
        counts: Dict[str, int] = {}
        for poi, _ in self._merged.within(lat, lng, self.radius_km):
            counts[poi.category] = counts.get(poi.category, 0) + 1
        raw = len(self._raw.within(lat, lng, self.radius_km))
        return dict(sorted(counts.items())), raw


# ═══════════════════════════════════════════════════════════════════════════
# WEIGHT CAPPING
# ═══════════════════════════════════════════════════════════════════════════
def effective_weights(
    nominal: Dict[str, float],
    quality: Dict[str, DataQuality],
    cap: float,
) -> Dict[str, float]:
    """
    Cap estimated components and redistribute the excess.

    Excess flows only to measured components, proportionally to nominal
    weight. With no measured component the excess is dropped, so a fully
    estimated candidate scores lower rather than being inflated.
    """
    weights = dict(nominal)
    estimated = [k for k in weights if quality.get(k) is DataQuality.ESTIMATED]
    measured = [k for k in weights if quality.get(k) is not DataQuality.ESTIMATED]

    excess = 0.0
    for k in estimated:
        if weights[k] > cap:
            excess += weights[k] - cap
            weights[k] = cap

    if excess > 0:
        pool = sum(nominal[k] for k in measured)
        if pool > 0:
            for k in measured:
                weights[k] += excess * nominal[k] / pool
    return weights


# ═══════════════════════════════════════════════════════════════════════════
# SCORING ENGINE
# ═══════════════════════════════════════════════════════════════════════════
class ScoringEngine:
    """
    Deterministic, quality-aware candidate scorer.

    Usage:
        engine = ScoringEngine(settings)
        scored = engine.score(candidates, exclusions)
        print(engine.explain_score(scored[0]))
    """

    def __init__(self, settings: ExpansionSettings):
        self.settings = settings

    def _prepare_sites(self, exclusions: Sequence[ExclusionSite]):
        reference_lat = (sum(s.lat for s in exclusions) / len(exclusions)) if exclusions else 0.0
        all_sites = list(exclusions)

        trading = [s for s in exclusions
                   if s.kind is SiteKind.EXISTING and s.annual_turnover is not None]
        trading_index = SpatialIndex(max(self.settings.performance_radius_km, 1.0), reference_lat,
                                     lambda s: (s.lat, s.lng))
        trading_index.extend(trading)
        network_mean = (sum(s.annual_turnover for s in trading) / len(trading)) if trading else None
        return all_sites, trading_index, network_mean

    def score(self, candidates: Sequence[Candidate],
              exclusions: Sequence[ExclusionSite] = ()) -> List[ScoredCandidate]:
        """
        Score every candidate.

        Args:
            candidates: Raw candidates from generation
            exclusions: Existing and planned sites

        Returns:
            ScoredCandidates in input order
        """
        all_sites, trading_index, network_mean = self._prepare_sites(exclusions)
        scored = [
            self._score_one(c, all_sites, trading_index, network_mean, bool(exclusions))
            for c in candidates
        ]
        if scored:
            mean_score = sum(s.total_score for s in scored) / len(scored)
            mean_complete = sum(s.completeness_score for s in scored) / len(scored)
            log.info(f"Scored {len(scored)} candidates: mean={mean_score:.3f}, "
                     f"completeness={mean_complete:.2f}")
        return scored

    def score_one(self, candidate: Candidate,
                  exclusions: Sequence[ExclusionSite] = ()) -> ScoredCandidate:
        all_sites, trading_index, network_mean = self._prepare_sites(exclusions)
        return self._score_one(candidate, all_sites, trading_index, network_mean, bool(exclusions))

    def _score_one(self, candidate: Candidate, all_sites: List[ExclusionSite],
                   trading_index: SpatialIndex, network_mean: Optional[float],
                   has_sites: bool) -> ScoredCandidate:
        s = self.settings
        components: Dict[str, float] = {}
        quality: Dict[str, DataQuality] = {}

        # Population
        components["population"] = _log_scale(candidate.estimated_population, s.population_saturation)
        quality["population"] = candidate.quality("population")

        # Proximity gap: no sites at all means the whole region is open
        nearest_km = None
        if has_sites:
            nearest_km = _nearest_km(all_sites, candidate.lat, candidate.lng)
            components["proximity_gap"] = min(1.0, nearest_km / s.gap_saturation_km)
        else:
            components["proximity_gap"] = 1.0
        quality["proximity_gap"] = candidate.quality("location")

        # Anchor density
        components["anchor_density"] = _log_scale(candidate.anchor_total, s.anchor_saturation)
        quality["anchor_density"] = candidate.quality("anchors")

        # Performance proxy
        samples = trading_index.within(candidate.lat, candidate.lng, s.performance_radius_km)
        if len(samples) >= s.min_performance_samples and network_mean:
            local_mean = sum(site.annual_turnover for site, _ in samples) / len(samples)
            components["performance"] = _clamp(0.5 * local_mean / network_mean)
            quality["performance"] = DataQuality.MEASURED
        else:
            components["performance"] = _clamp(candidate.urban_density_index)
            quality["performance"] = DataQuality.ESTIMATED

        weights = effective_weights(s.weights, quality, s.estimated_weight_cap)
        total = _clamp(sum(weights[k] * components[k] for k in COMPONENTS))
        measured = sum(1 for k in COMPONENTS if quality[k] is DataQuality.MEASURED)

        return ScoredCandidate(
            candidate=candidate,
            total_score=total,
            components=components,
            component_quality=quality,
            effective_weights=weights,
            completeness_score=measured / len(COMPONENTS),
            nearest_site_km=nearest_km,
            performance_samples=len(samples),
        )

    def explain_score(self, scored: ScoredCandidate) -> str:
        """Generate human-readable explanation of score."""
        lines = [f"Score: {scored.total_score:.3f}"]
        lines.append(f"Completeness: {scored.completeness_score:.0%}")
        lines.append("")
        lines.append("Component contributions:")
        for name in COMPONENTS:
            value = scored.components[name]
            weight = scored.effective_weights[name]
            flag = " (estimated)" if scored.component_quality[name] is DataQuality.ESTIMATED else ""
            lines.append(f"  {name}: {value:.2f} x {weight:.3f} = {value * weight:.3f}{flag}")
        return "\n".join(lines)


def _nearest_km(sites: Sequence[ExclusionSite], lat: float, lng: float) -> float:
    return min(haversine_km(lat, lng, site.lat, site.lng) for site in sites)


def _log_scale(value: float, saturation: float) -> float:
    if value <= 0:
        return 0.0
    return _clamp(math.log1p(value) / math.log1p(saturation))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
