"""
Expansion pipeline for retail site selection.
Generates, scores, de-duplicates and explains candidate sites inside a region.

The orchestrator, worker and enhancer import the providers package and are
imported from their own modules.
"""

from expansion.config import ExpansionSettings
from expansion.errors import (
    ExpansionError,
    ConfigError,
    JobNotFound,
    BoundaryDataUnavailable,
    InsufficientCandidates,
    AICallFailed,
    CostCapExceeded,
    RateLimitExceeded,
    RoutingUnavailable,
    CacheWriteFailed,
)
from expansion.models import (
    Candidate,
    ScoredCandidate,
    DedupResult,
    EnhancedSuggestion,
    ExclusionSite,
    SiteKind,
    RegionData,
    JobParams,
    JobResult,
)
from expansion.cache import ResultCache
from expansion.pipeline import plan_sites, PlanResult

__all__ = [
    "ExpansionSettings",
    # Errors
    "ExpansionError",
    "ConfigError",
    "JobNotFound",
    "BoundaryDataUnavailable",
    "InsufficientCandidates",
    "AICallFailed",
    "CostCapExceeded",
    "RateLimitExceeded",
    "RoutingUnavailable",
    "CacheWriteFailed",
    # Models
    "Candidate",
    "ScoredCandidate",
    "DedupResult",
    "EnhancedSuggestion",
    "ExclusionSite",
    "SiteKind",
    "RegionData",
    "JobParams",
    "JobResult",
    # Core
    "ResultCache",
    "plan_sites",
    "PlanResult",
]
