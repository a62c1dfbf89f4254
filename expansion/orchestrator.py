"""
Job Orchestrator - runs expansion jobs end to end.

Stages:
    generate (0-25%) -> score (25-40%) -> dedup (40-55%) -> enhance (55-100%)

The output of each of the first three stages is checkpointed in the job
store, so a job resumed after a crash or a retry skips what it already
finished. Spend is persisted after every settled AI call and seeds the
ledger of the next attempt, so the cost cap holds across attempts.
"""

import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from expansion import pipeline
from expansion.budget import CostLedger, RateLimiter
from expansion.cache import ResultCache
from expansion.config import ExpansionSettings
from expansion.dedup import rank_order
from expansion.distance import DistanceEstimator, RoutingClient
from expansion.enhancer import CostTieredEnhancer, EnhancementResult
from expansion.errors import ExpansionError, JobNotFound, JobOwnershipLost
from expansion.generator import GenerationResult
from expansion.job_store import Job, JobStatus, JobStore
from expansion.models import (
    DedupResult, EnhancedSuggestion, EnhancementTier, JobParams, JobResult, ScoredCandidate,
)
from expansion.templates import deterministic_rationale
from providers.rationale import RationaleProvider
from providers.regions import RegionProvider
from providers.stores import StoreRegistry

log = logging.getLogger(__name__)

# Stage progress bands (start, end)
STAGES = {
    "generate": (0, 25),
    "score": (25, 40),
    "dedup": (40, 55),
    "enhance": (55, 100),
}

AGGRESSION_TARGETS = ((20, 50), (40, 100), (60, 150), (80, 200))
MAX_AGGRESSION_TARGET = 300


def target_count_for_aggression(aggression: int) -> int:
    """
    Map a 0-100 aggression slider to a requested site count.

    Usage:
        target_count_for_aggression(35)  # 100
    """
    if not 0 <= aggression <= 100:
        raise ValueError(f"aggression must be within [0, 100], got {aggression}")
    for ceiling, target in AGGRESSION_TARGETS:
        if aggression <= ceiling:
            return target
    return MAX_AGGRESSION_TARGET


@dataclass
class SubmitResult:
    job_id: int
    reused: bool


class JobHeartbeat:
    """
    Refreshes a running job's heartbeat from a background thread.

    If the store reports that the worker no longer holds the job (another
    worker recovered it), on_lost is called once and the thread exits.

    Usage:
        heartbeat = JobHeartbeat(store, job, 60, on_lost=cancel_event.set).start()
        try:
            run()
        finally:
            heartbeat.stop()
    """

    def __init__(self, store: JobStore, job: Job, interval: float, on_lost=None):
        self.store = store
        self.job = job
        self.interval = interval
        self.on_lost = on_lost
        self.lost = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"heartbeat-{job.id}", daemon=True)

    def start(self) -> "JobHeartbeat":
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        self._thread.join()

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                held = self.store.heartbeat(self.job.id, worker_id=self.job.worker_id)
            except sqlite3.Error as e:
                log.warning(f"Heartbeat for job {self.job.id} failed: {e}")
                continue
            if not held:
                log.warning(f"Job {self.job.id} is no longer held by {self.job.worker_id}; "
                            f"no further AI calls will be dispatched")
                self.lost = True
                if self.on_lost:
                    self.on_lost()
                return


# ═══════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════════════════
class JobOrchestrator:
    """
    Owns the job lifecycle: submit, run, cancel, recover, retry.

    Usage:
        orchestrator = JobOrchestrator(JobStore(), regions, stores, settings, provider, cache)
        submitted = orchestrator.submit(JobParams("small-country", 50), "req-123")
        orchestrator.process_next("worker-1")
        result = orchestrator.get_result(submitted.job_id)
    """

    def __init__(
        self,
        store: JobStore,
        region_provider: RegionProvider,
        store_registry: StoreRegistry,
        settings: ExpansionSettings,
        rationale_provider: Optional[RationaleProvider] = None,
        cache: Optional[ResultCache] = None,
        routing_client: Optional[RoutingClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.store = store
        self.region_provider = region_provider
        self.store_registry = store_registry
        self.settings = settings.validate()
        self.rationale_provider = rationale_provider
        self.cache = cache
        self.routing_client = routing_client
        # One limiter per orchestrator; every job run here shares it
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(settings)
        self._cancel_events: Dict[int, threading.Event] = {}
        self._events_lock = threading.Lock()

    # ─── caller API ───────────────────────────────────────────────────────

    def submit(self, params: JobParams, idempotency_key: Optional[str] = None) -> SubmitResult:
        """
        Queue a job.

        Raises:
            ValueError: params are out of range
        """
        self._check_params(params)
        job_id, reused = self.store.enqueue(params, idempotency_key)
        return SubmitResult(job_id=job_id, reused=reused)

    def get_status(self, job_id: int) -> Dict[str, Any]:
        job = self.store.require_job(job_id)
        status = job.to_dict()
        status["partial_results_available"] = (
            job.status in (JobStatus.COMPLETED, JobStatus.PARTIAL)
            or job.checkpoint_stage == "dedup"
        )
        return status

    def get_result(self, job_id: int) -> Optional[JobResult]:
        """
        Ranked suggestions and metadata, or None while the job has none.

        A job that has not finished but is past dedup returns its survivors
        with template rationale, marked ``preliminary`` in the metadata.

        Raises:
            JobNotFound: unknown job id
        """
        job = self.store.require_job(job_id)
        if job.status not in (JobStatus.COMPLETED, JobStatus.PARTIAL) or not job.result_json:
            return self._preliminary_result(job)
        data = json.loads(job.result_json)
        return JobResult(
            job_id=job.id,
            status=job.status,
            suggestions=[EnhancedSuggestion.from_dict(s) for s in data["suggestions"]],
            metadata=job.metadata,
        )

    def _preliminary_result(self, job: Job) -> Optional[JobResult]:
        checkpoint = job.checkpoint or {}
        if "dedup" not in checkpoint:
            return None
        dedup = DedupResult.from_dict(checkpoint["dedup"])
        suggestions = [
            EnhancedSuggestion(scored, deterministic_rationale(scored), EnhancementTier.DETERMINISTIC)
            for scored in rank_order(dedup.survivors)
        ]
        return JobResult(
            job_id=job.id,
            status=job.status,
            suggestions=suggestions,
            metadata={
                "preliminary": True,
                "survivors": len(suggestions),
                "ai_count": 0,
                "ai_tier_size": 0,
                "demoted_count": 0,
                "total_cost": job.cost_spent,
                "warnings": ["Job has not finished; rationale is template-only for now"],
            },
        )

    def cancel(self, job_id: int) -> str:
        """
        Stop a job. Running jobs finish in-flight AI calls, demote the rest
        and end partial.

        Returns:
            The job status after the request
        """
        status = self.store.request_cancel(job_id)
        if status is None:
            raise JobNotFound(f"Job {job_id} not found")
        with self._events_lock:
            event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        return status

    def retry(self, job_id: int) -> bool:
        """Requeue a retryable failed job. Returns False if it is not retryable."""
        job = self.store.require_job(job_id)
        if job.status != JobStatus.FAILED or not job.retryable:
            log.info(f"Job {job_id} is {job.status} (retryable={bool(job.retryable)}); not retrying")
            return False
        self.store.requeue(job_id, "Retry requested")
        return True

    def recover_stale_jobs(self, now: Optional[datetime] = None) -> List[int]:
        """
        Deal with running jobs whose worker went silent.

        Jobs with a checkpoint are requeued and resume from it. Jobs without
        one are failed as retryable.

        Returns:
            IDs of jobs that were requeued
        """
        requeued = []
        for job in self.store.find_stale_jobs(self.settings.stale_job_minutes, now=now):
            if job.checkpoint_stage:
                self.store.requeue(job.id, f"Recovered after {job.checkpoint_stage}")
                requeued.append(job.id)
            else:
                self.store.fail(job.id, "stale_job",
                                f"No heartbeat for {self.settings.stale_job_minutes} minutes",
                                retryable=True)
        if requeued:
            log.info(f"Recovered {len(requeued)} stale jobs: {requeued}")
        return requeued

    # ─── execution ────────────────────────────────────────────────────────

    def process_next(self, worker_id: str) -> Optional[int]:
        """Claim and run one queued job. Returns its ID, or None if idle."""
        job = self.store.claim_next(worker_id)
        if job is None:
            return None
        self.run_job(job)
        return job.id

    def run_job(self, job: Job) -> str:
        """
        Run a claimed job to a terminal state.

        Returns:
            The final job status
        """
        started = time.monotonic()
        event = threading.Event()
        with self._events_lock:
            self._cancel_events[job.id] = event
        if job.cancel_requested:
            event.set()

        heartbeat = JobHeartbeat(self.store, job, self.settings.heartbeat_interval_seconds,
                                 on_lost=event.set).start()
        try:
            return self._run(job, event, started)
        except JobOwnershipLost as e:
            log.warning(f"Job {job.id}: {e}; leaving it to its new worker")
            return self.store.require_job(job.id).status
        except ExpansionError as e:
            log.warning(f"Job {job.id} stopped by {e.error_type}: {e}")
            self.store.fail(job.id, e.error_type, str(e), retryable=not e.fatal,
                            worker_id=job.worker_id)
            return JobStatus.FAILED
        except Exception as e:
            log.exception(f"Job {job.id} failed")
            self.store.fail(job.id, "internal_error", str(e), retryable=True,
                            worker_id=job.worker_id)
            return JobStatus.FAILED
        finally:
            heartbeat.stop()
            with self._events_lock:
                self._cancel_events.pop(job.id, None)

    def _run(self, job: Job, cancel_event: threading.Event, started: float) -> str:
        s = self.settings
        params = job.params
        checkpoint = job.checkpoint or {}
        warnings: List[str] = []

        region = self.region_provider.get_region(params.region)
        exclusions = self.store_registry.exclusion_sites(params.region)
        log.info(f"Job {job.id}: region {region.key}, {len(exclusions)} exclusion sites, "
                 f"target {params.target_count}"
                 + (f", resuming after {job.checkpoint_stage}" if job.checkpoint_stage else ""))

        # Generate
        if "generation" in checkpoint:
            generation = GenerationResult.from_dict(checkpoint["generation"])
        else:
            self._progress(job, "generate", 0, "Generating candidates")
            generation = pipeline.generate_stage(s, region, exclusions, params.target_count, params.seed)
            checkpoint["generation"] = generation.to_dict()
            self._checkpoint(job, "generate", checkpoint)
        self._progress(job, "generate", 1.0, f"Generated {len(generation.candidates)} candidates")
        if generation.insufficient:
            warnings.append(f"Generated {len(generation.candidates)} of {generation.requested} requested candidates")

        # Score
        if "scored" in checkpoint:
            scored = [ScoredCandidate.from_dict(d) for d in checkpoint["scored"]]
        else:
            self._progress(job, "score", 0, "Scoring candidates")
            scored = pipeline.score_stage(s, generation, exclusions)
            checkpoint["scored"] = [c.to_dict() for c in scored]
            self._checkpoint(job, "score", checkpoint)
        self._progress(job, "score", 1.0, f"Scored {len(scored)} candidates")

        # Dedup
        if "dedup" in checkpoint:
            dedup = DedupResult.from_dict(checkpoint["dedup"])
        else:
            self._progress(job, "dedup", 0, "Removing overlapping candidates")
            estimator = DistanceEstimator(self.routing_client, s.geodesic_fallback_factor)
            dedup = pipeline.dedup_stage(s, scored, params.target_count, estimator)
            checkpoint["dedup"] = dedup.to_dict()
            self._checkpoint(job, "dedup", checkpoint)
        self._progress(job, "dedup", 1.0, f"{len(dedup.survivors)} sites after dedup")
        if len(dedup.survivors) < params.target_count:
            warnings.append(f"Only {len(dedup.survivors)} of {params.target_count} sites survived dedup")
        if dedup.routing_fallback:
            warnings.append("Routing unavailable; straight-line distances used for dedup")

        # Enhance
        cost_cap = s.job_cost_cap if params.cost_cap is None else params.cost_cap
        ledger = CostLedger(
            cap=cost_cap,
            spent=job.cost_spent,
            tokens_used=job.tokens_used,
            on_change=lambda spent, tokens: self._persist_cost(job, spent, tokens),
        )

        def on_progress(done: int, total: int):
            self._progress(job, "enhance", done / total if total else 1.0,
                           f"AI rationale {done}/{total}")

        if self._cancel_requested(job.id):
            cancel_event.set()
        if params.ai_enabled and self.rationale_provider is None:
            warnings.append("AI rationale requested but no rationale provider is configured; "
                            "every site uses a template")
        self._progress(job, "enhance", 0, "Writing rationale")
        enhancer = CostTieredEnhancer(s, self.rationale_provider, self.cache, self.rate_limiter)
        enhanced = enhancer.enhance(
            dedup.survivors,
            ledger,
            ai_enabled=params.ai_enabled,
            ai_fraction=params.ai_fraction,
            ai_hard_cap=params.ai_hard_cap,
            model=params.model,
            seed=params.seed,
            cancel_event=cancel_event,
            should_cancel=lambda: self._cancel_requested(job.id),
            on_progress=on_progress,
        )
        if enhanced.demotions:
            warnings.append(f"{enhanced.demoted_count} AI-tier sites fell back to template rationale: "
                            f"{enhanced.demotions}")

        metadata = self._metadata(job, params, generation, dedup, enhanced, ledger,
                                  cost_cap, warnings, started)
        status = JobStatus.PARTIAL if enhanced.partial else JobStatus.COMPLETED
        finished = self.store.finish(
            job.id,
            status,
            {"suggestions": [sug.to_dict() for sug in enhanced.suggestions]},
            metadata,
            demoted_count=enhanced.demoted_count,
            worker_id=job.worker_id,
        )
        if not finished:
            raise JobOwnershipLost(f"Job {job.id} was taken over before it finished")
        return status

    def _progress(self, job: Job, stage: str, fraction: float, message: str):
        start, end = STAGES[stage]
        percent = start + (end - start) * max(0.0, min(1.0, fraction))
        self.store.update_progress(job.id, int(percent), stage, message, worker_id=job.worker_id)

    def _checkpoint(self, job: Job, stage: str, checkpoint: Dict[str, Any]):
        if not self.store.save_checkpoint(job.id, stage, checkpoint, worker_id=job.worker_id):
            raise JobOwnershipLost(f"Job {job.id} was taken over before its {stage} checkpoint")

    def _persist_cost(self, job: Job, spent: float, tokens: int):
        try:
            self.store.record_cost(job.id, spent, tokens, worker_id=job.worker_id)
        except sqlite3.Error as e:
            log.warning(f"Could not persist spend for job {job.id} (${spent:.6f}): {e}")

    def _cancel_requested(self, job_id: int) -> bool:
        try:
            return self.store.is_cancel_requested(job_id)
        except sqlite3.Error as e:
            log.warning(f"Could not read cancel flag for job {job_id}: {e}")
            return False

    def _metadata(self, job: Job, params: JobParams, generation: GenerationResult,
                  dedup: DedupResult, enhanced: EnhancementResult, ledger: CostLedger,
                  cost_cap: float, warnings: List[str], started: float) -> Dict[str, Any]:
        s = self.settings
        return {
            "region": params.region,
            "target_count": params.target_count,
            "seed": params.seed,
            "model": params.model or s.model,
            "total_candidates": len(generation.candidates),
            "generation_rejected": dict(generation.rejected),
            "generation_by_source": dict(generation.by_source),
            "insufficient_candidates": generation.insufficient,
            "survivors": len(dedup.survivors),
            "suppressed": len(dedup.suppressed),
            "max_per_region": dedup.max_per_region,
            "fairness_ledger": dict(dedup.fairness_ledger),
            "fairness_readmitted": dedup.readmitted,
            "insufficient_survivors": len(dedup.survivors) < params.target_count,
            "suppression_radius_km": s.suppression_radius_km,
            "suppression_radius_minutes": round(s.suppression_radius_km / s.drive_speed_kmh * 60, 1),
            "routing_fallback": dedup.routing_fallback,
            "ai_tier_size": enhanced.ai_tier_size,
            "ai_count": enhanced.ai_count,
            "cache_hits": enhanced.cache_hits,
            "demoted_count": enhanced.demoted_count,
            "demotions": dict(enhanced.demotions),
            "cancelled": enhanced.cancelled,
            "tokens_used": ledger.tokens_used,
            "total_cost": round(ledger.spent, 8),
            "cost_cap": cost_cap,
            "attempts": job.attempts,
            "elapsed_seconds": round(time.monotonic() - started, 3),
            "warnings": warnings,
        }

    def _check_params(self, params: JobParams):
        problems = []
        if not params.region:
            problems.append("region is required")
        if params.target_count < 1:
            problems.append("target_count must be at least 1")
        if params.ai_fraction is not None and not 0.0 <= params.ai_fraction <= 1.0:
            problems.append("ai_fraction must be within [0, 1]")
        if params.ai_hard_cap is not None and params.ai_hard_cap < 0:
            problems.append("ai_hard_cap must not be negative")
        if params.cost_cap is not None and params.cost_cap < 0:
            problems.append("cost_cap must not be negative")
        if problems:
            raise ValueError("; ".join(problems))
