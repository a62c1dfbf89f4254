"""
Spatial Deduplicator - greedy non-max suppression with a regional
fairness quota.

Pass one walks candidates best-first. A candidate inside the suppression
radius of an accepted survivor is suppressed by it. A candidate whose
region already holds its quota is soft-rejected as fairness-capped.
Everything else survives.

Pass two runs when pass one left slots empty: fairness-capped candidates
are re-admitted in score order, still subject to the radius check, and
are marked fairness-exempt.
"""

import dataclasses
from typing import Dict, List, Optional, Sequence
import logging

from expansion.config import ExpansionSettings
from expansion.distance import DistanceEstimator
from expansion.errors import InsufficientCandidates
from expansion.models import (
    DedupResult, ScoredCandidate, SuppressionRecord, FAIRNESS_CAPPED, TARGET_CAPPED,
)

log = logging.getLogger(__name__)


def rank_order(scored: Sequence[ScoredCandidate]) -> List[ScoredCandidate]:
    """Score descending, ties broken by candidate id."""
    return sorted(scored, key=lambda s: (-s.total_score, s.id))


class SpatialDeduplicator:
    """
    Usage:
        dedup = SpatialDeduplicator(settings, DistanceEstimator(routing_client))
        result = dedup.deduplicate(scored, target_count=50)
    """

    def __init__(self, settings: ExpansionSettings,
                 estimator: Optional[DistanceEstimator] = None):
        self.settings = settings
        self.estimator = estimator or DistanceEstimator(
            fallback_factor=settings.geodesic_fallback_factor
        )

    def deduplicate(self, scored: Sequence[ScoredCandidate], target_count: int) -> DedupResult:
        """
        Select up to target_count well-separated survivors.

        Args:
            scored: Scored candidates in any order
            target_count: Sites wanted

        Returns:
            DedupResult with survivors in rank order and one suppression
            record for every other candidate
        """
        radius = self.settings.suppression_radius_km
        max_per_region = self.settings.max_per_region(target_count)

        survivors: List[ScoredCandidate] = []
        region_counts: Dict[str, int] = {}
        records: Dict[str, SuppressionRecord] = {}
        capped: List[ScoredCandidate] = []

        for cand in rank_order(scored):
            dominator, distance = self._dominator(cand, survivors, radius)
            if dominator is not None:
                records[cand.id] = SuppressionRecord(cand.id, dominator.id, distance,
                                                     cand.region_key, cand.total_score)
            elif len(survivors) >= target_count:
                records[cand.id] = SuppressionRecord(cand.id, TARGET_CAPPED, None,
                                                     cand.region_key, cand.total_score)
            elif region_counts.get(cand.region_key, 0) >= max_per_region:
                records[cand.id] = SuppressionRecord(cand.id, FAIRNESS_CAPPED, None,
                                                     cand.region_key, cand.total_score)
                capped.append(cand)
            else:
                survivors.append(cand)
                region_counts[cand.region_key] = region_counts.get(cand.region_key, 0) + 1

        readmitted = 0
        if len(survivors) < target_count and capped:
            for cand in capped:
                if len(survivors) >= target_count:
                    break
                dominator, distance = self._dominator(cand, survivors, radius)
                if dominator is not None:
                    records[cand.id] = SuppressionRecord(cand.id, dominator.id, distance,
                                                         cand.region_key, cand.total_score)
                    continue
                exempt = dataclasses.replace(cand, fairness_exempt=True)
                survivors.append(exempt)
                region_counts[cand.region_key] = region_counts.get(cand.region_key, 0) + 1
                del records[cand.id]
                readmitted += 1
            log.info(f"Re-admitted {readmitted} fairness-capped candidates")

        survivors = rank_order(survivors)
        suppressed = sorted(records.values(), key=lambda r: (-(r.score or 0.0), r.candidate_id))

        result = DedupResult(
            survivors=survivors,
            suppressed=suppressed,
            max_per_region=max_per_region,
            fairness_ledger=dict(sorted(region_counts.items())),
            readmitted=readmitted,
            routing_fallback=self.estimator.routing_fallback,
        )

        geometric = sum(1 for r in suppressed if r.geometric)
        log.info(f"Dedup kept {len(survivors)}/{len(scored)} (target {target_count}): "
                 f"{geometric} suppressed within {radius} km, "
                 f"{len(suppressed) - geometric} capped, max_per_region={max_per_region}")
        if len(survivors) < target_count:
            log.warning(str(InsufficientCandidates(len(survivors), target_count, "dedup")))
        return result

    def _dominator(self, cand: ScoredCandidate, survivors: List[ScoredCandidate],
                   radius: float):
        """First (highest ranked) survivor within radius, with its distance."""
        if not survivors:
            return None, None
        distances = self.estimator.distances_km(
            (cand.lat, cand.lng),
            [(s.lat, s.lng) for s in survivors],
            radius,
        )
        for survivor, d in zip(survivors, distances):
            if d < radius:
                return survivor, d
        return None, None
