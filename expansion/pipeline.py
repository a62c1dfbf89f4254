"""
Pure pipeline core.

generate -> score -> dedup with no I/O beyond an optional routing
estimator. The orchestrator calls the stage functions one at a time so it
can checkpoint between them; tests and notebooks call plan_sites() and get
exactly the same answer.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from expansion.config import ExpansionSettings
from expansion.dedup import SpatialDeduplicator
from expansion.distance import DistanceEstimator
from expansion.generator import CandidateGenerator, GenerationResult
from expansion.models import DedupResult, ExclusionSite, RegionData, ScoredCandidate
from expansion.scoring import ScoringEngine


@dataclass
class PlanResult:
    generation: GenerationResult
    scored: List[ScoredCandidate]
    dedup: DedupResult

    @property
    def survivors(self) -> List[ScoredCandidate]:
        return self.dedup.survivors


def generate_stage(settings: ExpansionSettings, region: RegionData,
                   exclusions: Sequence[ExclusionSite], target_count: int,
                   seed: int = 0) -> GenerationResult:
    return CandidateGenerator(settings).generate(region, exclusions, target_count, seed)


def score_stage(settings: ExpansionSettings, generation: GenerationResult,
                exclusions: Sequence[ExclusionSite]) -> List[ScoredCandidate]:
    return ScoringEngine(settings).score(generation.candidates, exclusions)


def dedup_stage(settings: ExpansionSettings, scored: Sequence[ScoredCandidate],
                target_count: int,
                estimator: Optional[DistanceEstimator] = None) -> DedupResult:
    return SpatialDeduplicator(settings, estimator).deduplicate(scored, target_count)


def plan_sites(settings: ExpansionSettings, region: RegionData,
               exclusions: Sequence[ExclusionSite], target_count: int,
               seed: int = 0,
               estimator: Optional[DistanceEstimator] = None) -> PlanResult:
    """
    Run generation, scoring and deduplication end to end.

    Deterministic for identical inputs and seed when no routing estimator
    is supplied.
    """
    generation = generate_stage(settings, region, exclusions, target_count, seed)
    scored = score_stage(settings, generation, exclusions)
    dedup = dedup_stage(settings, scored, target_count, estimator)
    return PlanResult(generation=generation, scored=scored, dedup=dedup)
