"""
Cost-Tiered Enhancer

Splits survivors into two rationale tiers:
- AI tier: the top min(ceil(n × ai_fraction), ai_hard_cap) survivors by
  score get an external rationale call
- Deterministic tier: everyone else gets a template built from their
  own score components

AI-tier candidates fall back to the template (are "demoted") when the
job budget cannot cover the call, the global rate limiter refuses, the
call keeps failing, or the job is cancelled. Demotion never fails the
job; it makes the result partial.
"""

import math
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import logging

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from expansion.budget import CostLedger, RateLimiter, Reservation
from expansion.cache import ResultCache
from expansion.config import ExpansionSettings
from expansion.dedup import rank_order
from expansion.errors import AICallFailed, CostCapExceeded, RateLimitExceeded
from expansion.models import EnhancedSuggestion, EnhancementTier, ScoredCandidate
from expansion.templates import deterministic_rationale
from providers.rationale import RationaleProvider, RationaleRequest, RationaleResponse

log = logging.getLogger(__name__)

RATIONALE_NAMESPACE = "rationale"

# Demotion reasons
COST_CAP = "cost_cap"
RATE_LIMITED = "rate_limited"
AI_FAILED = "ai_failed"
CANCELLED = "cancelled"


def ai_tier_size(survivor_count: int, ai_fraction: float, ai_hard_cap: int,
                 enabled: bool = True) -> int:
    """min(ceil(n × fraction), hard cap), or 0 when AI is off."""
    if not enabled or survivor_count <= 0:
        return 0
    # Round first so 30 × 0.1 does not ceil to 4
    wanted = math.ceil(round(survivor_count * ai_fraction, 9))
    return max(0, min(wanted, ai_hard_cap, survivor_count))


# ═══════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class EnhancementResult:
    suggestions: List[EnhancedSuggestion]
    ai_tier_size: int
    demotions: Dict[str, int] = field(default_factory=dict)
    cache_hits: int = 0
    tokens_used: int = 0
    total_cost: float = 0.0
    cancelled: bool = False

    @property
    def ai_count(self) -> int:
        return sum(1 for s in self.suggestions if s.tier is EnhancementTier.AI)

    @property
    def demoted_count(self) -> int:
        return sum(self.demotions.values())

    @property
    def partial(self) -> bool:
        return self.demoted_count > 0 or self.cancelled


# ═══════════════════════════════════════════════════════════════════════════
# ENHANCER
# ═══════════════════════════════════════════════════════════════════════════
class CostTieredEnhancer:
    """
    Usage:
        enhancer = CostTieredEnhancer(settings, provider, cache, limiter)
        result = enhancer.enhance(survivors, ledger, ai_fraction=0.2, ai_hard_cap=60)
    """

    def __init__(self, settings: ExpansionSettings,
                 provider: Optional[RationaleProvider] = None,
                 cache: Optional[ResultCache] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        self.settings = settings
        self.provider = provider
        self.cache = cache
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(settings)

    def cache_key(self, request: RationaleRequest) -> str:
        return ResultCache.make_key(RATIONALE_NAMESPACE,
                                    request.cache_inputs(self.settings.coordinate_precision))

    def enhance(
        self,
        survivors: Sequence[ScoredCandidate],
        ledger: CostLedger,
        ai_enabled: bool = True,
        ai_fraction: Optional[float] = None,
        ai_hard_cap: Optional[int] = None,
        model: Optional[str] = None,
        seed: int = 0,
        cancel_event: Optional[threading.Event] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> EnhancementResult:
        """
        Attach a rationale to every survivor.

        Args:
            survivors: Dedup survivors (any order; re-ranked here)
            ledger: The job's cost ledger
            ai_enabled: False puts every survivor in the deterministic tier
            ai_fraction: Overrides settings.ai_fraction
            ai_hard_cap: Overrides settings.ai_hard_cap
            model: Overrides settings.model
            seed: Passed to the provider for reproducible sampling
            cancel_event: When set, no new AI call is dispatched
            should_cancel: Polled before every dispatch; True sets cancel_event
            on_progress: Called with (finished, ai_tier_size)

        Returns:
            EnhancementResult with suggestions in rank order
        """
        s = self.settings
        fraction = s.ai_fraction if ai_fraction is None else ai_fraction
        hard_cap = s.ai_hard_cap if ai_hard_cap is None else ai_hard_cap
        model = model or s.model
        cancel_event = cancel_event or threading.Event()

        def is_cancelled() -> bool:
            if not cancel_event.is_set() and should_cancel is not None and should_cancel():
                cancel_event.set()
            return cancel_event.is_set()

        ranked = rank_order(survivors)
        tier = ai_tier_size(len(ranked), fraction, hard_cap,
                            enabled=ai_enabled and self.provider is not None)
        if ai_enabled and self.provider is None and ranked:
            log.warning("AI enabled but no rationale provider configured; using templates only")

        result = EnhancementResult(suggestions=[], ai_tier_size=tier)
        slots: List[Optional[EnhancedSuggestion]] = [None] * len(ranked)

        for i in range(tier, len(ranked)):
            slots[i] = EnhancedSuggestion(ranked[i], deterministic_rationale(ranked[i]),
                                          EnhancementTier.DETERMINISTIC)

        requests = {i: RationaleRequest.from_scored(ranked[i], model, seed) for i in range(tier)}
        pending = []
        for i in range(tier):
            hit = self._cached(requests[i])
            if hit is not None:
                slots[i] = EnhancedSuggestion(ranked[i], hit["text"], EnhancementTier.AI,
                                              tokens_used=0, cost=0.0,
                                              ai_processing_rank=i + 1, cache_hit=True)
                result.cache_hits += 1
            else:
                pending.append(i)

        if result.cache_hits:
            log.info(f"Reused {result.cache_hits} cached rationales (no AI budget consumed)")

        if on_progress and tier:
            on_progress(result.cache_hits, tier)

        if pending:
            self._dispatch(ranked, requests, pending, slots, ledger,
                           is_cancelled, result, tier, on_progress)

        result.suggestions = [slot for slot in slots if slot is not None]
        result.cancelled = cancel_event.is_set()

        log.info(f"Enhanced {len(ranked)} survivors: tier={tier}, ai={result.ai_count}, "
                 f"cache_hits={result.cache_hits}, demoted={result.demoted_count} {result.demotions}, "
                 f"cost=${result.total_cost:.4f}")
        return result

    def _cached(self, request: RationaleRequest) -> Optional[Dict]:
        if self.cache is None:
            return None
        hit = self.cache.get_json(self.cache_key(request))
        if hit and hit.get("text"):
            log.debug(f"Rationale cache reuse for {request.candidate_id}")
            return hit
        return None

    def _dispatch(self, ranked, requests, pending, slots, ledger: CostLedger,
                  is_cancelled: Callable[[], bool], result: EnhancementResult,
                  tier: int, on_progress):
        """
        Run AI calls through a bounded pool, demoting whatever cannot run.

        Finished calls are collected between dispatches, so progress and
        cancellation are seen while the tier is still being sent out.
        """
        s = self.settings
        stop_reason: Optional[str] = None
        progress = {"done": result.cache_hits}
        in_flight = {}

        def advance():
            progress["done"] += 1
            if on_progress:
                on_progress(progress["done"], tier)

        def demote(i: int, reason: str):
            slots[i] = EnhancedSuggestion(ranked[i], deterministic_rationale(ranked[i]),
                                          EnhancementTier.DETERMINISTIC, demotion_reason=reason)
            result.demotions[reason] = result.demotions.get(reason, 0) + 1
            advance()

        def collect(future):
            i = in_flight.pop(future)
            try:
                response, charged = future.result()
            except AICallFailed as e:
                log.warning(f"AI rationale failed for {requests[i].candidate_id}: {e}")
                demote(i, AI_FAILED)
            except Exception:
                log.exception(f"AI rationale for {requests[i].candidate_id} could not be recorded")
                demote(i, AI_FAILED)
            else:
                slots[i] = EnhancedSuggestion(ranked[i], response.text, EnhancementTier.AI,
                                              tokens_used=response.tokens_used, cost=charged,
                                              ai_processing_rank=i + 1)
                result.tokens_used += response.tokens_used
                result.total_cost += charged
                advance()

        def collect_finished(block: bool):
            if block:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            else:
                done = [f for f in in_flight if f.done()]
            for future in done:
                collect(future)

        def run(i: int, reservation: Reservation):
            try:
                return self._call(requests[i], reservation, ledger)
            finally:
                self.rate_limiter.release()

        with ThreadPoolExecutor(max_workers=s.ai_concurrency, thread_name_prefix="rationale") as pool:
            for i in pending:
                while len(in_flight) >= s.ai_concurrency:
                    collect_finished(block=True)
                collect_finished(block=False)

                if stop_reason is None and is_cancelled():
                    stop_reason = CANCELLED
                    log.info("Cancellation requested; no further AI calls will be dispatched")
                if stop_reason is not None:
                    demote(i, stop_reason)
                    continue

                try:
                    reservation = ledger.reserve(self.provider.max_call_cost(requests[i]))
                except CostCapExceeded as e:
                    log.warning(f"Cost cap reached at AI rank {i + 1}: {e}")
                    stop_reason = COST_CAP
                    demote(i, stop_reason)
                    continue

                if not self.rate_limiter.acquire(timeout=s.ai_timeout_seconds):
                    ledger.release(reservation)
                    log.warning(f"Global AI rate limit reached; {requests[i].candidate_id} uses template")
                    demote(i, RATE_LIMITED)
                    continue

                in_flight[pool.submit(run, i, reservation)] = i

            while in_flight:
                collect_finished(block=True)

    def _call(self, request: RationaleRequest, reservation: Reservation, ledger: CostLedger):
        """One rationale call with backoff. Settles or releases the reservation."""
        s = self.settings
        retrying = Retrying(
            stop=stop_after_attempt(s.ai_max_retries),
            wait=wait_exponential(multiplier=s.ai_retry_min_seconds,
                                  min=s.ai_retry_min_seconds, max=s.ai_retry_max_seconds),
            retry=retry_if_exception_type((RateLimitExceeded, AICallFailed)),
            reraise=True,
        )
        try:
            response: RationaleResponse = retrying(self.provider.generate, request)
        except (RateLimitExceeded, AICallFailed) as e:
            ledger.release(reservation)
            raise AICallFailed(str(e), request.candidate_id) from e
        except Exception as e:
            ledger.release(reservation)
            log.exception(f"Unexpected rationale provider error for {request.candidate_id}")
            raise AICallFailed(str(e), request.candidate_id) from e

        charged = ledger.settle(reservation, response.cost, response.tokens_used)
        if self.cache is not None:
            self.cache.put_json(self.cache_key(request), {
                "text": response.text,
                "tokens_used": response.tokens_used,
                "model": response.model or request.model,
            })
        return response, charged
