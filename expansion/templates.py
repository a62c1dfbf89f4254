"""
Deterministic rationale built only from a candidate's own score
components. Same input, same text, no external call.
"""

from typing import List

from expansion.models import DataQuality, ScoredCandidate, SourceType


def _band(score: float, high: str, mid: str, low: str) -> str:
    if score > 0.7:
        return high
    if score > 0.5:
        return mid
    return low


def describe_factors(scored: ScoredCandidate) -> List[str]:
    """One phrase per component, strongest first."""
    c = scored.components
    phrases = [
        (c["population"], _band(c["population"],
                                "high population density",
                                "moderate population density",
                                "a smaller local catchment")),
        (c["proximity_gap"], _band(c["proximity_gap"],
                                   "a significant gap in existing coverage",
                                   "room for market expansion",
                                   "proximity to existing sites")),
        (c["anchor_density"], _band(c["anchor_density"],
                                    "strong nearby traffic generators",
                                    "some nearby traffic generators",
                                    "few nearby traffic generators")),
        (c["performance"], _band(c["performance"],
                                 "strong sales potential",
                                 "good sales potential",
                                 "moderate sales potential")),
    ]
    phrases.sort(key=lambda item: -item[0])
    return [text for _, text in phrases]


def deterministic_rationale(scored: ScoredCandidate) -> str:
    """
    Build the template rationale for one scored candidate.

    Never empty. Mentions estimated inputs so readers know which parts
    are inferred.
    """
    candidate = scored.candidate
    factors = describe_factors(scored)

    if candidate.source_type is SourceType.SETTLEMENT and candidate.settlement_name:
        place = f"Site near {candidate.settlement_name}"
    else:
        place = f"Site at {candidate.lat:.4f}, {candidate.lng:.4f}"

    parts = [
        f"{place} scores {scored.total_score:.2f} overall, "
        f"driven by {factors[0]} and {factors[1]}."
    ]

    if scored.nearest_site_km is not None:
        parts.append(f"Nearest existing or planned site is {scored.nearest_site_km:.1f} km away.")
    else:
        parts.append("No existing or planned sites serve this area yet.")

    if candidate.estimated_population > 0:
        parts.append(f"Trade-area population is about {candidate.estimated_population:,}.")

    estimated = sorted(
        name.replace("_", " ") for name, q in scored.component_quality.items()
        if q is DataQuality.ESTIMATED
    )
    if estimated:
        parts.append(f"Estimated inputs: {', '.join(estimated)} "
                     f"(data completeness {scored.completeness_score:.0%}).")

    return " ".join(parts)
