"""
AI rationale provider.

The pipeline only needs a simple contract: scored inputs in, text and
cost out. OpenAIRationaleProvider implements it with the OpenAI chat
completions API; tests substitute their own provider.
"""

import math
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
import logging

import openai

from expansion.config import ExpansionSettings
from expansion.errors import AICallFailed, ConfigError, RateLimitExceeded
from expansion.models import DataQuality, ScoredCandidate

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a business analyst specialising in retail site selection. "
    "Give a concise, factor-based rationale for the proposed location. "
    "When an input is marked estimated, acknowledge the limitation but "
    "still use the data that is available."
)

# Rough characters-per-token for English prompts, kept low so cost
# estimates err on the high side.
CHARS_PER_TOKEN = 3
MESSAGE_OVERHEAD_TOKENS = 20


# ═══════════════════════════════════════════════════════════════════════════
# CONTRACT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class RationaleRequest:
    """Everything a rationale call is allowed to see about a candidate."""
    candidate_id: str
    lat: float
    lng: float
    total_score: float
    components: Dict[str, float]
    estimated_components: list
    estimated_population: int
    nearest_site_km: Optional[float]
    anchor_counts: Dict[str, int] = field(default_factory=dict)
    settlement_name: Optional[str] = None
    model: str = ""
    seed: int = 0

    @classmethod
    def from_scored(cls, scored: ScoredCandidate, model: str, seed: int = 0) -> "RationaleRequest":
        c = scored.candidate
        return cls(
            candidate_id=c.id,
            lat=c.lat,
            lng=c.lng,
            total_score=scored.total_score,
            components=dict(scored.components),
            estimated_components=sorted(
                k for k, q in scored.component_quality.items() if q is DataQuality.ESTIMATED
            ),
            estimated_population=c.estimated_population,
            nearest_site_km=scored.nearest_site_km,
            anchor_counts=dict(c.anchor_counts),
            settlement_name=c.settlement_name,
            model=model,
            seed=seed,
        )

    def cache_inputs(self, precision: int = 5) -> Dict[str, Any]:
        """Every input that shapes the answer, rounded for stable hashing."""
        return {
            "lat": round(self.lat, precision),
            "lng": round(self.lng, precision),
            "total_score": round(self.total_score, 4),
            "components": {k: round(v, 4) for k, v in sorted(self.components.items())},
            "estimated": list(self.estimated_components),
            "population": self.estimated_population,
            "nearest_site_km": None if self.nearest_site_km is None else round(self.nearest_site_km, 2),
            "anchors": dict(sorted(self.anchor_counts.items())),
            "settlement": self.settlement_name,
            "model": self.model,
        }

    def to_prompt(self) -> str:
        lines = [
            "Write a 2-3 sentence rationale for opening a store at this location.",
            "",
            f"Location: {self.lat:.4f}, {self.lng:.4f}"
            + (f" (near {self.settlement_name})" if self.settlement_name else ""),
            f"Overall score: {self.total_score:.0%}",
            "",
            "SCORES:",
        ]
        for name, value in sorted(self.components.items()):
            flag = " (estimated)" if name in self.estimated_components else ""
            lines.append(f"{name.replace('_', ' ').title()}: {value:.0%}{flag}")
        lines.append("")
        lines.append(f"Trade area population: {self.estimated_population:,}")
        if self.nearest_site_km is None:
            lines.append("Nearest existing site: none in region")
        else:
            lines.append(f"Nearest existing site: {self.nearest_site_km:.1f} km")
        if self.anchor_counts:
            anchors = ", ".join(f"{n} {cat}" for cat, n in sorted(self.anchor_counts.items()))
            lines.append(f"Nearby anchors: {anchors}")
        return "\n".join(lines)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class RationaleResponse:
    text: str
    tokens_used: int
    cost: float
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


class RationaleProvider:
    """Base contract for rationale providers."""

    model: str = ""

    def max_call_cost(self, request: RationaleRequest) -> float:
        """Worst-case USD price of one call for this request."""
        raise NotImplementedError

    def generate(self, request: RationaleRequest) -> RationaleResponse:
        """
        Produce a rationale.

        Raises:
            RateLimitExceeded: upstream throttled the call
            AICallFailed: any other failure
        """
        raise NotImplementedError


# ═══════════════════════════════════════════════════════════════════════════
# OPENAI
# ═══════════════════════════════════════════════════════════════════════════
class OpenAIRationaleProvider(RationaleProvider):
    """
    Rationale provider backed by the OpenAI chat completions API.

    Usage:
        provider = OpenAIRationaleProvider(settings)
        response = provider.generate(RationaleRequest.from_scored(scored, settings.model))
    """

    def __init__(self, settings: ExpansionSettings, api_key: Optional[str] = None,
                 base_url: Optional[str] = None, client: Any = None):
        """
        Args:
            settings: Supplies model, token ceiling, prices and timeout
            api_key: Defaults to OPENAI_API_KEY
            base_url: Optional API base URL override
            client: Pre-built OpenAI client (tests)
        """
        self.settings = settings
        self.model = settings.model

        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ConfigError("OPENAI_API_KEY is not set")
            client = openai.OpenAI(api_key=api_key, base_url=base_url,
                                   timeout=settings.ai_timeout_seconds, max_retries=0)
        self.client = client

    def _messages(self, request: RationaleRequest):
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": request.to_prompt()},
        ]

    def estimate_prompt_tokens(self, request: RationaleRequest) -> int:
        chars = sum(len(m["content"]) for m in self._messages(request))
        return math.ceil(chars / CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS

    def max_call_cost(self, request: RationaleRequest) -> float:
        return self.settings.call_cost(self.estimate_prompt_tokens(request),
                                       self.settings.max_tokens_per_call)

    def generate(self, request: RationaleRequest) -> RationaleResponse:
        model = request.model or self.model
        try:
            completion = self.client.chat.completions.create(
                model=model,
                messages=self._messages(request),
                max_tokens=self.settings.max_tokens_per_call,
                seed=request.seed,
            )
        except openai.RateLimitError as e:
            raise RateLimitExceeded(f"OpenAI throttled {request.candidate_id}: {e}") from e
        except openai.OpenAIError as e:
            raise AICallFailed(f"OpenAI call for {request.candidate_id} failed: {e}",
                               request.candidate_id) from e

        text = ""
        if completion.choices:
            text = (completion.choices[0].message.content or "").strip()
        if not text:
            raise AICallFailed(f"Empty rationale for {request.candidate_id}", request.candidate_id)

        usage = completion.usage
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        cost = self.settings.call_cost(prompt_tokens, completion_tokens)

        log.debug(f"Rationale for {request.candidate_id}: {prompt_tokens}+{completion_tokens} tokens, ${cost:.6f}")
        return RationaleResponse(
            text=text,
            tokens_used=prompt_tokens + completion_tokens,
            cost=cost,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=model,
        )
