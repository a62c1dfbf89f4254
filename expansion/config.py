"""
Expansion Settings

One explicit, validated settings object for the whole pipeline. Every
component receives it at construction; nothing reads the environment
on its own.
"""

import os
import math
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Optional
import logging

from expansion.errors import ConfigError

log = logging.getLogger(__name__)

ENV_PREFIX = "EXPANSION_"

COMPONENTS = ("population", "proximity_gap", "anchor_density", "performance")

DEFAULT_WEIGHTS = {
    "population": 0.25,
    "proximity_gap": 0.35,
    "anchor_density": 0.20,
    "performance": 0.20,
}


# ═══════════════════════════════════════════════════════════════════════════
# SETTINGS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ExpansionSettings:
    """
    All tunable values for the expansion pipeline.

    IMPORTANT: Every value has an explicit meaning. No magic numbers.
    """

    # Generation
    settlement_mix: float = 0.8
    """Share of candidates anchored on settlements. The rest come from grid exploration."""

    candidate_pool_factor: float = 3.0
    """Raw candidates generated per requested site, so dedup has room to work."""

    min_settlement_population: int = 1000
    """Settlements below this population never anchor a candidate."""

    exclusion_clearance_km: float = 3.0
    """Minimum distance between a candidate and any existing or planned site."""

    sub_region_cap_share: float = 0.25
    """Max share of the raw candidate pool one sub-region may take."""

    grid_cell_km: float = 10.0
    """Edge length of a grid-exploration cell."""

    population_decay_km: float = 15.0
    """Distance at which a settlement's contribution to a grid estimate halves."""

    # Scoring
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    """Nominal component weights. Must sum to 1."""

    estimated_weight_cap: float = 0.25
    """Max share of total weight any estimated component may carry."""

    anchor_radius_km: float = 2.0
    """Anchor POIs within this distance count toward a candidate's density."""

    anchor_coincidence_m: float = 75.0
    """POIs of the same category closer than this are one physical place."""

    anchor_saturation: int = 20
    """Deduplicated anchor count that earns a full density score."""

    population_saturation: int = 250000
    """Trade-area population that earns a full population score."""

    gap_saturation_km: float = 25.0
    """Distance to nearest site that earns a full proximity-gap score."""

    performance_radius_km: float = 30.0
    """Existing sites within this distance feed the performance proxy."""

    min_performance_samples: int = 3
    """Fewer nearby sites with turnover than this makes performance estimated."""

    # Deduplication
    suppression_radius_km: float = 5.0
    """Survivors must be at least this far apart."""

    fairness_share: float = 0.3
    """Max share of target slots a single region may take in the first pass."""

    drive_speed_kmh: float = 50.0
    """Average speed used to express the suppression radius as drive time."""

    geodesic_fallback_factor: float = 1.0
    """Multiplier on straight-line distance when routing is unavailable."""

    # Enhancement
    ai_fraction: float = 0.2
    """Share of survivors that receive AI rationale."""

    ai_hard_cap: int = 60
    """Absolute ceiling on AI-tier size per job."""

    ai_concurrency: int = 10
    """Worker pool size for in-flight AI calls."""

    ai_max_retries: int = 3
    """Attempts per AI call before the candidate is demoted."""

    ai_retry_min_seconds: float = 1.0
    """First backoff delay after a throttled or failed AI call."""

    ai_retry_max_seconds: float = 30.0
    """Longest backoff delay between AI call attempts."""

    ai_timeout_seconds: float = 25.0
    """Per-request timeout for the rationale provider."""

    job_cost_cap: float = 1.0
    """Per-job AI spend ceiling in USD."""

    global_max_concurrent_calls: int = 20
    """AI calls allowed in flight across all jobs."""

    global_max_calls_per_hour: int = 1000
    """AI calls allowed per rolling hour across all jobs."""

    model: str = "gpt-4o-mini"
    """Model identifier sent to the rationale provider. Part of every cache key."""

    max_tokens_per_call: int = 400
    """Completion token ceiling per rationale call."""

    input_price_per_million: float = 0.10
    """USD per million prompt tokens."""

    output_price_per_million: float = 0.40
    """USD per million completion tokens."""

    # Cache
    cache_ttl_days: int = 90
    """Days a cached rationale or lookup stays valid."""

    cache_db_path: str = "expansion_cache.db"
    """SQLite file backing the result cache."""

    coordinate_precision: int = 5
    """Decimal places coordinates are rounded to before hashing."""

    # Jobs
    jobs_db_path: str = "expansion_jobs.db"
    """SQLite file backing the job store."""

    stale_job_minutes: int = 30
    """A running job with no heartbeat for this long is considered abandoned."""

    heartbeat_interval_seconds: float = 60.0
    """How often a worker refreshes the heartbeat of the job it is running."""

    job_retention_hours: int = 24 * 7
    """Finished jobs older than this are deleted by the recover command."""

    poll_interval_seconds: float = 2.0
    """Worker sleep between queue polls."""

    # Collaborators
    routing_url: Optional[str] = None
    """OSRM base URL. Routing is skipped when unset."""

    def max_per_region(self, target_count: int) -> int:
        """Fairness quota for a single region."""
        return max(1, math.ceil(round(target_count * self.fairness_share, 9)))

    def sub_region_cap(self, pool_size: int) -> int:
        """Generation cap for a single sub-region."""
        return max(1, math.ceil(round(pool_size * self.sub_region_cap_share, 9)))

    def call_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """USD cost of one call at the configured prices."""
        return (
            prompt_tokens * self.input_price_per_million
            + completion_tokens * self.output_price_per_million
        ) / 1_000_000

    def validate(self) -> "ExpansionSettings":
        """Raise ConfigError on any inconsistent value. Returns self."""
        problems = []

        if set(self.weights) != set(COMPONENTS):
            problems.append(f"weights must cover exactly {list(COMPONENTS)}")
        elif any(w < 0 for w in self.weights.values()):
            problems.append("weights must be non-negative")
        elif abs(sum(self.weights.values()) - 1.0) > 1e-6:
            problems.append(f"weights must sum to 1, got {sum(self.weights.values()):.4f}")

        for name in ("settlement_mix", "ai_fraction", "fairness_share",
                     "sub_region_cap_share", "estimated_weight_cap"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                problems.append(f"{name} must be within [0, 1], got {value}")

        for name in ("suppression_radius_km", "grid_cell_km", "anchor_radius_km",
                     "drive_speed_kmh", "population_decay_km", "gap_saturation_km",
                     "performance_radius_km"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")

        for name in ("ai_hard_cap", "job_cost_cap", "exclusion_clearance_km",
                     "anchor_coincidence_m"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")

        for name in ("ai_concurrency", "global_max_concurrent_calls",
                     "global_max_calls_per_hour", "ai_max_retries", "cache_ttl_days",
                     "max_tokens_per_call", "anchor_saturation", "population_saturation",
                     "stale_job_minutes", "job_retention_hours"):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be at least 1")

        if self.heartbeat_interval_seconds <= 0:
            problems.append("heartbeat_interval_seconds must be positive")
        elif self.heartbeat_interval_seconds >= self.stale_job_minutes * 60:
            problems.append("heartbeat_interval_seconds must be shorter than stale_job_minutes")

        if self.candidate_pool_factor < 1:
            problems.append("candidate_pool_factor must be at least 1")

        if self.geodesic_fallback_factor < 1:
            problems.append("geodesic_fallback_factor must be at least 1")

        if not self.model:
            problems.append("model must be set")

        if problems:
            raise ConfigError("; ".join(problems))
        return self

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ExpansionSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ExpansionSettings":
        """
        Build settings from EXPANSION_* environment variables.

        Weights are read as EXPANSION_WEIGHT_<COMPONENT>. Unset variables
        keep their defaults. The result is validated before it is returned.

        Args:
            environ: Mapping to read instead of os.environ (tests)
        """
        env = os.environ if environ is None else environ
        settings = cls()

        for f in fields(cls):
            if f.name == "weights":
                continue
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = getattr(settings, f.name)
            try:
                setattr(settings, f.name, _coerce(raw, default))
            except ValueError as e:
                raise ConfigError(f"{ENV_PREFIX}{f.name.upper()}={raw!r}: {e}") from e

        weights = dict(settings.weights)
        for component in COMPONENTS:
            raw = env.get(f"{ENV_PREFIX}WEIGHT_{component.upper()}")
            if raw is not None:
                try:
                    weights[component] = float(raw)
                except ValueError as e:
                    raise ConfigError(f"weight for {component}={raw!r}: {e}") from e
        settings.weights = weights

        log.debug(f"Loaded expansion settings from environment (model={settings.model})")
        return settings.validate()


def _coerce(raw: str, default):
    """Convert an environment string to the type of the field's default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
