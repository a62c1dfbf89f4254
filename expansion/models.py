"""
Data models for the expansion pipeline.

Everything here is a plain dataclass with to_dict / from_dict so stage
outputs can be checkpointed as JSON and restored without loss.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any

from expansion.geo import BoundingBox, Polygon


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════
class SourceType(Enum):
    """Where a raw candidate came from."""
    SETTLEMENT = "settlement"
    GRID = "grid"


class DataQuality(Enum):
    """Whether a value was observed or inferred."""
    MEASURED = "measured"
    ESTIMATED = "estimated"


class EnhancementTier(Enum):
    """Which rationale path a survivor took."""
    AI = "ai"
    DETERMINISTIC = "deterministic"


class SiteKind(Enum):
    """Existing sites trade today; planned sites are committed future openings."""
    EXISTING = "existing"
    PLANNED = "planned"


# ═══════════════════════════════════════════════════════════════════════════
# REGION INPUTS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ExclusionSite:
    """
    An existing or planned site. Generation keeps clear of both kinds;
    only existing sites carry turnover for the performance proxy.
    """
    id: str
    kind: SiteKind
    lat: float
    lng: float
    annual_turnover: Optional[float] = None
    name: str = ""

    @property
    def is_planned(self) -> bool:
        return self.kind is SiteKind.PLANNED

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "ExclusionSite":
        data = dict(data)
        data["kind"] = SiteKind(data.get("kind", SiteKind.EXISTING.value))
        return cls(**data)


@dataclass
class Settlement:
    """A populated place that can anchor a candidate."""
    id: str
    name: str
    lat: float
    lng: float
    population: int
    population_measured: bool = True

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Settlement":
        return cls(**data)


@dataclass
class AnchorPOI:
    """A traffic generator (mall, transit hub, university...)."""
    id: str
    category: str
    lat: float
    lng: float

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "AnchorPOI":
        return cls(**data)


@dataclass
class SubRegion:
    """An administrative area. The fairness quota is applied per sub-region."""
    key: str
    name: str
    bounds: BoundingBox
    polygon: Optional[Polygon] = None

    @property
    def has_boundary(self) -> bool:
        return bool(self.polygon) and len(self.polygon) >= 3

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "name": self.name,
            "bounds": self.bounds.to_dict(),
            "polygon": [list(p) for p in self.polygon] if self.polygon else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SubRegion":
        polygon = data.get("polygon")
        return cls(
            key=data["key"],
            name=data.get("name", data["key"]),
            bounds=BoundingBox.from_dict(data["bounds"]),
            polygon=[tuple(p) for p in polygon] if polygon else None,
        )


@dataclass
class RegionData:
    """Everything the pipeline knows about one requested region."""
    key: str
    name: str
    boundary: List[Polygon] = field(default_factory=list)
    sub_regions: List[SubRegion] = field(default_factory=list)
    settlements: List[Settlement] = field(default_factory=list)
    anchors: List[AnchorPOI] = field(default_factory=list)
    anchors_available: bool = True
    """False when no POI source covered this region, so density is a guess."""

    @property
    def bounds(self) -> Optional[BoundingBox]:
        points = [p for poly in self.boundary for p in poly]
        for sub in self.sub_regions:
            points.append((sub.bounds.min_lat, sub.bounds.min_lng))
            points.append((sub.bounds.max_lat, sub.bounds.max_lng))
        if not points:
            return None
        return BoundingBox.from_points(points)

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "name": self.name,
            "boundary": [[list(p) for p in poly] for poly in self.boundary],
            "sub_regions": [s.to_dict() for s in self.sub_regions],
            "settlements": [s.to_dict() for s in self.settlements],
            "anchors": [a.to_dict() for a in self.anchors],
            "anchors_available": self.anchors_available,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RegionData":
        return cls(
            key=data["key"],
            name=data.get("name", data["key"]),
            boundary=[[tuple(p) for p in poly] for poly in data.get("boundary", [])],
            sub_regions=[SubRegion.from_dict(s) for s in data.get("sub_regions", [])],
            settlements=[Settlement.from_dict(s) for s in data.get("settlements", [])],
            anchors=[AnchorPOI.from_dict(a) for a in data.get("anchors", [])],
            anchors_available=data.get("anchors_available", True),
        )


# ═══════════════════════════════════════════════════════════════════════════
# PIPELINE STAGES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class Candidate:
    """
    A proposed point for a new site.

    Attributes:
        id: Deterministic id derived from its source
        source_type: Settlement-anchored or grid-exploration
        estimated_population: Trade-area population (measured or inferred)
        urban_density_index: 0-1 proxy for how urban the location is
        anchor_counts: Deduplicated anchor POIs within range, by category
        raw_anchor_count: Anchor listings before deduplication
        region_key: Sub-region the point falls in
        data_quality: Per-attribute quality ("location", "population", "anchors")
    """
    id: str
    lat: float
    lng: float
    source_type: SourceType
    estimated_population: int
    urban_density_index: float
    region_key: str
    anchor_counts: Dict[str, int] = field(default_factory=dict)
    raw_anchor_count: int = 0
    settlement_name: Optional[str] = None
    data_quality: Dict[str, DataQuality] = field(default_factory=dict)

    @property
    def anchor_total(self) -> int:
        return sum(self.anchor_counts.values())

    def quality(self, attribute: str) -> DataQuality:
        return self.data_quality.get(attribute, DataQuality.MEASURED)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["source_type"] = self.source_type.value
        data["data_quality"] = {k: v.value for k, v in self.data_quality.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Candidate":
        data = dict(data)
        data["source_type"] = SourceType(data["source_type"])
        data["data_quality"] = {k: DataQuality(v) for k, v in data.get("data_quality", {}).items()}
        return cls(**data)


@dataclass
class ScoredCandidate:
    """A candidate with its fused score and the full audit breakdown."""
    candidate: Candidate
    total_score: float
    components: Dict[str, float]
    component_quality: Dict[str, DataQuality]
    effective_weights: Dict[str, float]
    completeness_score: float
    nearest_site_km: Optional[float] = None
    performance_samples: int = 0
    fairness_exempt: bool = False

    @property
    def id(self) -> str:
        return self.candidate.id

    @property
    def region_key(self) -> str:
        return self.candidate.region_key

    @property
    def lat(self) -> float:
        return self.candidate.lat

    @property
    def lng(self) -> float:
        return self.candidate.lng

    def to_dict(self) -> Dict:
        return {
            "candidate": self.candidate.to_dict(),
            "total_score": self.total_score,
            "components": dict(self.components),
            "component_quality": {k: v.value for k, v in self.component_quality.items()},
            "effective_weights": dict(self.effective_weights),
            "completeness_score": self.completeness_score,
            "nearest_site_km": self.nearest_site_km,
            "performance_samples": self.performance_samples,
            "fairness_exempt": self.fairness_exempt,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScoredCandidate":
        return cls(
            candidate=Candidate.from_dict(data["candidate"]),
            total_score=data["total_score"],
            components=dict(data["components"]),
            component_quality={k: DataQuality(v) for k, v in data["component_quality"].items()},
            effective_weights=dict(data["effective_weights"]),
            completeness_score=data["completeness_score"],
            nearest_site_km=data.get("nearest_site_km"),
            performance_samples=data.get("performance_samples", 0),
            fairness_exempt=data.get("fairness_exempt", False),
        )


FAIRNESS_CAPPED = "fairness-capped"
TARGET_CAPPED = "target-capped"


@dataclass
class SuppressionRecord:
    """Why a scored candidate did not survive."""
    candidate_id: str
    dominated_by: str
    """Survivor id, or FAIRNESS_CAPPED / TARGET_CAPPED."""
    distance_km: Optional[float] = None
    region_key: Optional[str] = None
    score: Optional[float] = None

    @property
    def geometric(self) -> bool:
        return self.dominated_by not in (FAIRNESS_CAPPED, TARGET_CAPPED)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "SuppressionRecord":
        return cls(**data)


@dataclass
class DedupResult:
    """Survivors plus the full suppression graph."""
    survivors: List[ScoredCandidate]
    suppressed: List[SuppressionRecord]
    max_per_region: int
    fairness_ledger: Dict[str, int] = field(default_factory=dict)
    readmitted: int = 0
    routing_fallback: bool = False

    def suppression_graph(self) -> Dict[str, List[str]]:
        """Survivor id -> ids it geometrically suppressed."""
        graph: Dict[str, List[str]] = {s.id: [] for s in self.survivors}
        for record in self.suppressed:
            if record.geometric:
                graph.setdefault(record.dominated_by, []).append(record.candidate_id)
        return graph

    def to_dict(self) -> Dict:
        return {
            "survivors": [s.to_dict() for s in self.survivors],
            "suppressed": [r.to_dict() for r in self.suppressed],
            "max_per_region": self.max_per_region,
            "fairness_ledger": dict(self.fairness_ledger),
            "readmitted": self.readmitted,
            "routing_fallback": self.routing_fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DedupResult":
        return cls(
            survivors=[ScoredCandidate.from_dict(s) for s in data["survivors"]],
            suppressed=[SuppressionRecord.from_dict(r) for r in data["suppressed"]],
            max_per_region=data["max_per_region"],
            fairness_ledger=dict(data.get("fairness_ledger", {})),
            readmitted=data.get("readmitted", 0),
            routing_fallback=data.get("routing_fallback", False),
        )


@dataclass
class EnhancedSuggestion:
    """A survivor with its rationale. AI-only fields are None otherwise."""
    scored: ScoredCandidate
    rationale_text: str
    tier: EnhancementTier
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    ai_processing_rank: Optional[int] = None
    cache_hit: bool = False
    demotion_reason: Optional[str] = None

    @property
    def id(self) -> str:
        return self.scored.id

    def to_dict(self) -> Dict:
        return {
            "scored": self.scored.to_dict(),
            "rationale_text": self.rationale_text,
            "tier": self.tier.value,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "ai_processing_rank": self.ai_processing_rank,
            "cache_hit": self.cache_hit,
            "demotion_reason": self.demotion_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EnhancedSuggestion":
        return cls(
            scored=ScoredCandidate.from_dict(data["scored"]),
            rationale_text=data["rationale_text"],
            tier=EnhancementTier(data["tier"]),
            tokens_used=data.get("tokens_used"),
            cost=data.get("cost"),
            ai_processing_rank=data.get("ai_processing_rank"),
            cache_hit=data.get("cache_hit", False),
            demotion_reason=data.get("demotion_reason"),
        )

    def to_row(self) -> Dict[str, Any]:
        """Flat record for tabular export."""
        c = self.scored.candidate
        row = {
            "id": c.id,
            "lat": c.lat,
            "lng": c.lng,
            "region": c.region_key,
            "source": c.source_type.value,
            "settlement": c.settlement_name,
            "total_score": round(self.scored.total_score, 4),
            "completeness": round(self.scored.completeness_score, 2),
            "tier": self.tier.value,
            "ai_rank": self.ai_processing_rank,
            "cost": self.cost,
            "demotion_reason": self.demotion_reason,
            "rationale": self.rationale_text,
        }
        for name, value in self.scored.components.items():
            row[f"score_{name}"] = round(value, 4)
        return row


# ═══════════════════════════════════════════════════════════════════════════
# JOBS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class JobParams:
    """
    What the caller asked for.

    ai_fraction, ai_hard_cap, cost_cap and model default to the settings
    values when left as None.
    """
    region: str
    target_count: int
    ai_enabled: bool = True
    ai_fraction: Optional[float] = None
    ai_hard_cap: Optional[int] = None
    cost_cap: Optional[float] = None
    model: Optional[str] = None
    seed: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "JobParams":
        return cls(**data)


@dataclass
class JobResult:
    """Ordered suggestions plus run metadata."""
    job_id: int
    status: str
    suggestions: List[EnhancedSuggestion]
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "metadata": dict(self.metadata),
        }
