"""
Error taxonomy for the expansion pipeline.

Each error knows whether it invalidates the whole job (``fatal``) or only
degrades part of it. The orchestrator uses ``error_type`` as the stable
identifier stored alongside failed jobs.
"""

from typing import Optional


class ExpansionError(Exception):
    """Base class for all pipeline errors."""
    fatal = False
    error_type = "expansion_error"


class ConfigError(ExpansionError):
    """Settings failed validation."""
    fatal = True
    error_type = "config_error"


class JobNotFound(ExpansionError):
    """No job exists with the requested id."""
    error_type = "job_not_found"


class BoundaryDataUnavailable(ExpansionError):
    """The region has no usable land boundary at all."""
    fatal = True
    error_type = "boundary_data_unavailable"

    def __init__(self, region_key: str, detail: str = ""):
        self.region_key = region_key
        message = f"No boundary data available for region '{region_key}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InsufficientCandidates(ExpansionError):
    """Generation or dedup produced fewer sites than requested."""
    error_type = "insufficient_candidates"

    def __init__(self, produced: int, requested: int, stage: str = "generate"):
        self.produced = produced
        self.requested = requested
        self.stage = stage
        super().__init__(
            f"{stage} produced {produced} of {requested} requested candidates"
        )


class AICallFailed(ExpansionError):
    """A single rationale call failed after retries."""
    error_type = "ai_call_failed"

    def __init__(self, message: str, candidate_id: Optional[str] = None):
        self.candidate_id = candidate_id
        super().__init__(message)


class CostCapExceeded(ExpansionError):
    """The job budget cannot cover another AI call."""
    error_type = "cost_cap_exceeded"

    def __init__(self, requested: float, remaining: float):
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Call needs ${requested:.6f} but only ${remaining:.6f} remains"
        )


class RateLimitExceeded(ExpansionError):
    """Local or upstream rate limit refused a call."""
    error_type = "rate_limit_exceeded"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class RoutingUnavailable(ExpansionError):
    """The routing engine could not answer. Callers fall back to geodesic distance."""
    error_type = "routing_unavailable"


class CacheWriteFailed(ExpansionError):
    """A cache write could not be persisted. Logged, never surfaced."""
    error_type = "cache_write_failed"


class JobOwnershipLost(ExpansionError):
    """Another worker took over the job; this run must stop writing to it."""
    error_type = "ownership_lost"
