"""
Region providers - boundary, sub-regions, settlements and anchor POIs.

A region pack is one JSON file per region, in the RegionData.to_dict()
shape. OverpassRegionProvider fills in settlements and anchors a pack
leaves out.
"""

import json
import re
from pathlib import Path
from typing import Dict, Optional
import logging

from expansion.errors import BoundaryDataUnavailable
from expansion.models import RegionData
from providers.overpass import OverpassLoader

log = logging.getLogger(__name__)

REGION_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class RegionProvider:
    """Base contract for region lookups."""

    def get_region(self, key: str) -> RegionData:
        """
        Raises:
            BoundaryDataUnavailable: the region is unknown or has no usable boundary
        """
        raise NotImplementedError


class InMemoryRegionProvider(RegionProvider):
    def __init__(self, regions: Optional[Dict[str, RegionData]] = None):
        self._regions = dict(regions or {})

    def add(self, region: RegionData):
        self._regions[region.key] = region

    def get_region(self, key: str) -> RegionData:
        region = self._regions.get(key)
        if region is None:
            raise BoundaryDataUnavailable(key, "unknown region")
        return region


class FileRegionProvider(RegionProvider):
    """
    Region packs from a directory of <key>.json files.

    Usage:
        provider = FileRegionProvider("regions/")
        region = provider.get_region("small-country")
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._loaded: Dict[str, RegionData] = {}

    def get_region(self, key: str) -> RegionData:
        if key in self._loaded:
            return self._loaded[key]
        if not REGION_KEY_PATTERN.match(key or ""):
            raise BoundaryDataUnavailable(str(key), "invalid region key")

        path = self.directory / f"{key}.json"
        if not path.exists():
            raise BoundaryDataUnavailable(key, f"no region pack at {path}")
        try:
            with open(path) as f:
                region = RegionData.from_dict(json.load(f))
        except (ValueError, KeyError, TypeError) as e:
            raise BoundaryDataUnavailable(key, f"unreadable region pack: {e}") from e

        log.info(f"Loaded region {key}: {len(region.sub_regions)} sub-regions, "
                 f"{len(region.settlements)} settlements, {len(region.anchors)} anchors")
        self._loaded[key] = region
        return region


class OverpassRegionProvider(RegionProvider):
    """
    Wraps another provider and fetches missing settlements and anchors
    from OpenStreetMap.

    If anchors cannot be fetched the region is marked anchors_available=False
    and anchor density is scored as estimated.
    """

    def __init__(self, base: RegionProvider, loader: OverpassLoader):
        self.base = base
        self.loader = loader

    def get_region(self, key: str) -> RegionData:
        region = self.base.get_region(key)
        bounds = region.bounds
        if bounds is None:
            raise BoundaryDataUnavailable(key, "region has no extent")

        if not region.settlements:
            settlements = self.loader.fetch_settlements(bounds)
            if settlements:
                region.settlements = settlements
            else:
                log.warning(f"No settlements found for {key}; grid exploration only")

        if not region.anchors:
            anchors = self.loader.fetch_anchors(bounds)
            if anchors is None:
                log.warning(f"Anchor POIs unavailable for {key}; density will be estimated")
                region.anchors_available = False
            else:
                region.anchors = anchors
                region.anchors_available = True
        return region
