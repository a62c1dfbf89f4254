"""
Candidate Generator

Produces raw candidate points inside a region:
1. Settlement-anchored candidates, largest settlements first
2. Grid-exploration candidates, cells visited in seeded random order

The two sources are mixed by ``settlement_mix``; when one runs dry the
other fills its share. Every point is checked against the land boundary,
the exclusion clearance around existing and planned sites, and a
per-sub-region cap.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
import logging

import numpy as np

from expansion.config import ExpansionSettings
from expansion.errors import BoundaryDataUnavailable, InsufficientCandidates
from expansion.geo import BoundingBox, SpatialIndex, point_in_any, point_in_polygon
from expansion.models import (
    Candidate, DataQuality, ExclusionSite, RegionData, SourceType,
)
from expansion.scoring import AnchorCounter

log = logging.getLogger(__name__)

MIN_GRID_CELL_KM = 0.5


def urban_density_index(population: float) -> float:
    """0-1 on a log scale; one million people saturates."""
    if population <= 1:
        return 0.0
    return max(0.0, min(1.0, math.log10(population) / 6.0))


# ═══════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class GenerationResult:
    """Candidates plus an account of what was rejected and why."""
    candidates: List[Candidate]
    requested: int
    rejected: Dict[str, int] = field(default_factory=dict)
    by_source: Dict[str, int] = field(default_factory=dict)

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.candidates))

    @property
    def insufficient(self) -> bool:
        return self.shortfall > 0

    def to_dict(self) -> Dict:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "requested": self.requested,
            "rejected": dict(self.rejected),
            "by_source": dict(self.by_source),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GenerationResult":
        return cls(
            candidates=[Candidate.from_dict(c) for c in data["candidates"]],
            requested=data["requested"],
            rejected=dict(data.get("rejected", {})),
            by_source=dict(data.get("by_source", {})),
        )


# ═══════════════════════════════════════════════════════════════════════════
# LAND MASK
# ═══════════════════════════════════════════════════════════════════════════
class LandMask:
    """
    Answers "is this point on land, and in which sub-region?".

    Sub-regions with a polygon are matched exactly. Sub-regions without
    one fall back to their bounding box and the match is flagged as
    estimated.
    """

    def __init__(self, region: RegionData):
        self.region = region
        self.precise = sorted((s for s in region.sub_regions if s.has_boundary), key=lambda s: s.key)
        self.coarse = sorted((s for s in region.sub_regions if not s.has_boundary), key=lambda s: s.key)

        if not region.boundary and not region.sub_regions:
            raise BoundaryDataUnavailable(region.key, "no boundary polygon and no sub-regions")

        self.bounds = region.bounds
        if self.bounds is None:
            raise BoundaryDataUnavailable(region.key, "boundary has no extent")

        if self.coarse:
            log.warning(f"Region {region.key}: {len(self.coarse)} sub-regions lack boundaries, "
                        f"using bounding boxes")

    @property
    def bucket_count(self) -> int:
        return max(1, len(self.region.sub_regions))

    def locate(self, lat: float, lng: float) -> Optional[Tuple[str, bool]]:
        """
        Returns:
            (sub-region key, location_estimated) or None when off land
        """
        if self.region.boundary and not point_in_any(lat, lng, self.region.boundary):
            return None

        for sub in self.precise:
            if point_in_polygon(lat, lng, sub.polygon):
                return sub.key, False
        for sub in self.coarse:
            if sub.bounds.contains(lat, lng):
                return sub.key, True

        if self.region.boundary:
            # On land but outside every listed sub-region
            return self.region.key, False
        return None


# ═══════════════════════════════════════════════════════════════════════════
# GENERATOR
# ═══════════════════════════════════════════════════════════════════════════
class _Run:
    """Mutable bookkeeping shared by both sources during one generate() call."""

    def __init__(self, mask: LandMask, exclusions: SpatialIndex, clearance_km: float, cap: int):
        self.mask = mask
        self.exclusions = exclusions
        self.clearance_km = clearance_km
        self.cap = cap
        self.per_region: Dict[str, int] = {}
        self.rejected = {"outside_boundary": 0, "exclusion_zone": 0, "sub_region_cap": 0}

    def admit(self, lat: float, lng: float) -> Optional[Tuple[str, bool]]:
        located = self.mask.locate(lat, lng)
        if located is None:
            self.rejected["outside_boundary"] += 1
            return None
        if self.clearance_km > 0 and self.exclusions.within(lat, lng, self.clearance_km):
            self.rejected["exclusion_zone"] += 1
            return None
        key = located[0]
        if self.per_region.get(key, 0) >= self.cap:
            self.rejected["sub_region_cap"] += 1
            return None
        self.per_region[key] = self.per_region.get(key, 0) + 1
        return located


class CandidateGenerator:
    """
    Generates raw candidates for one region.

    Usage:
        generator = CandidateGenerator(settings)
        result = generator.generate(region, exclusions, target_count=50, seed=7)
    """

    def __init__(self, settings: ExpansionSettings):
        self.settings = settings

    def pool_size(self, target_count: int) -> int:
        """Raw candidates to produce for a requested number of sites."""
        return max(target_count, math.ceil(round(target_count * self.settings.candidate_pool_factor, 9)))

    def generate(self, region: RegionData, exclusions: Sequence[ExclusionSite],
                 target_count: int, seed: int = 0) -> GenerationResult:
        """
        Generate the raw candidate pool.

        Args:
            region: Boundary, sub-regions, settlements and anchors
            exclusions: Existing and planned sites to keep clear of
            target_count: Sites the caller wants after dedup
            seed: Seed for grid exploration order and jitter

        Returns:
            GenerationResult. Under-production is reported, never raised.

        Raises:
            BoundaryDataUnavailable: the region has no usable boundary at all
        """
        s = self.settings
        mask = LandMask(region)
        pool = self.pool_size(target_count)
        cap = max(s.sub_region_cap(pool), math.ceil(pool / mask.bucket_count))

        center_lat = mask.bounds.center[0]
        exclusion_index = SpatialIndex(max(s.exclusion_clearance_km, 1.0), center_lat,
                                       lambda e: (e.lat, e.lng))
        exclusion_index.extend(exclusions)

        anchors = AnchorCounter(region.anchors, s.anchor_coincidence_m, s.anchor_radius_km)
        anchor_quality = DataQuality.MEASURED if region.anchors_available else DataQuality.ESTIMATED
        run = _Run(mask, exclusion_index, s.exclusion_clearance_km, cap)

        settlement_quota = int(round(pool * s.settlement_mix))
        grid_quota = pool - settlement_quota

        settlements = self._settlement_candidates(region, run, anchors, anchor_quality)
        grid = self._grid_candidates(region, run, anchors, anchor_quality, grid_quota, seed)

        candidates: List[Candidate] = []
        candidates.extend(_take(settlements, settlement_quota))
        candidates.extend(_take(grid, pool - len(candidates)))
        if len(candidates) < pool:
            # Grid came up short; let settlements backfill
            candidates.extend(_take(settlements, pool - len(candidates)))

        by_source = {
            SourceType.SETTLEMENT.value: sum(1 for c in candidates if c.source_type is SourceType.SETTLEMENT),
            SourceType.GRID.value: sum(1 for c in candidates if c.source_type is SourceType.GRID),
        }
        result = GenerationResult(candidates=candidates, requested=pool,
                                  rejected=dict(run.rejected), by_source=by_source)

        log.info(f"Generated {len(candidates)}/{pool} candidates for {region.key} "
                 f"({by_source['settlement']} settlement, {by_source['grid']} grid), "
                 f"rejected={run.rejected}")
        if result.insufficient:
            log.warning(str(InsufficientCandidates(len(candidates), pool, "generate")))
        return result

    def _settlement_candidates(self, region: RegionData, run: _Run,
                               anchors: AnchorCounter,
                               anchor_quality: DataQuality) -> Iterator[Candidate]:
        eligible = sorted(
            (st for st in region.settlements if st.population >= self.settings.min_settlement_population),
            key=lambda st: (-st.population, st.id),
        )
        for st in eligible:
            located = run.admit(st.lat, st.lng)
            if located is None:
                continue
            region_key, location_estimated = located
            yield self._build(
                candidate_id=f"stl-{st.id}",
                lat=st.lat,
                lng=st.lng,
                source=SourceType.SETTLEMENT,
                population=st.population,
                population_quality=DataQuality.MEASURED if st.population_measured else DataQuality.ESTIMATED,
                region_key=region_key,
                location_estimated=location_estimated,
                anchors=anchors,
                anchor_quality=anchor_quality,
                settlement_name=st.name,
            )

    def _grid_candidates(self, region: RegionData, run: _Run, anchors: AnchorCounter,
                         anchor_quality: DataQuality, quota: int,
                         seed: int) -> Iterator[Candidate]:
        bounds: BoundingBox = run.mask.bounds
        cell_km = self._cell_km(bounds, quota)
        lat_step = cell_km / 111.0
        lng_step = cell_km / (111.0 * max(math.cos(math.radians(bounds.center[0])), 1e-6))
        rows = max(1, int(math.ceil((bounds.max_lat - bounds.min_lat) / lat_step)))
        cols = max(1, int(math.ceil((bounds.max_lng - bounds.min_lng) / lng_step)))

        rng = np.random.default_rng(seed)
        order = rng.permutation(rows * cols)
        jitter = rng.uniform(-0.4, 0.4, size=(rows * cols, 2))

        populated = [st for st in region.settlements if st.population > 0]
        settlement_index = SpatialIndex(self.settings.population_decay_km, bounds.center[0],
                                        lambda st: (st.lat, st.lng))
        settlement_index.extend(populated)

        for cell in order:
            cell = int(cell)
            row, col = divmod(cell, cols)
            lat = bounds.min_lat + (row + 0.5 + jitter[cell, 0]) * lat_step
            lng = bounds.min_lng + (col + 0.5 + jitter[cell, 1]) * lng_step
            located = run.admit(lat, lng)
            if located is None:
                continue
            region_key, location_estimated = located
            population = self._estimate_population(settlement_index, lat, lng)
            yield self._build(
                candidate_id=f"grd-{row}-{col}",
                lat=round(lat, 6),
                lng=round(lng, 6),
                source=SourceType.GRID,
                population=population,
                population_quality=DataQuality.ESTIMATED,
                region_key=region_key,
                location_estimated=location_estimated,
                anchors=anchors,
                anchor_quality=anchor_quality,
            )

    def _cell_km(self, bounds: BoundingBox, quota: int) -> float:
        """Shrink cells in small regions so the grid can still fill its quota."""
        area = max(bounds.height_km * bounds.width_km, 0.0)
        if quota <= 0 or area <= 0:
            return self.settings.grid_cell_km
        fitted = math.sqrt(area / (quota * 4))
        return max(MIN_GRID_CELL_KM, min(self.settings.grid_cell_km, fitted))

    def _estimate_population(self, index: SpatialIndex, lat: float, lng: float) -> int:
        """Distance-decayed sum of nearby settlement populations."""
        decay = self.settings.population_decay_km
        total = 0.0
        for st, d in index.within(lat, lng, 3 * decay):
            total += st.population * 0.5 ** (d / decay)
        return int(round(total))

    def _build(self, candidate_id: str, lat: float, lng: float, source: SourceType,
               population: int, population_quality: DataQuality, region_key: str,
               location_estimated: bool, anchors: AnchorCounter,
               anchor_quality: DataQuality, settlement_name: Optional[str] = None) -> Candidate:
        counts, raw = anchors.count(lat, lng)
        return Candidate(
            id=candidate_id,
            lat=lat,
            lng=lng,
            source_type=source,
            estimated_population=int(population),
            urban_density_index=urban_density_index(population),
            region_key=region_key,
            anchor_counts=counts,
            raw_anchor_count=raw,
            settlement_name=settlement_name,
            data_quality={
                "location": DataQuality.ESTIMATED if location_estimated else DataQuality.MEASURED,
                "population": population_quality,
                "anchors": anchor_quality,
            },
        )


def _take(source: Iterator[Candidate], n: int) -> List[Candidate]:
    taken = []
    while len(taken) < n:
        item = next(source, None)
        if item is None:
            break
        taken.append(item)
    return taken

