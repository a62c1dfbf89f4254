"""
Store registry - read-only access to existing and planned sites.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging

from expansion.models import ExclusionSite, SiteKind

log = logging.getLogger(__name__)


class StoreRegistry:
    """Base contract: every existing or planned site in a region."""

    def exclusion_sites(self, region_key: str) -> List[ExclusionSite]:
        raise NotImplementedError

    def existing_sites(self, region_key: str) -> List[ExclusionSite]:
        return [s for s in self.exclusion_sites(region_key) if s.kind is SiteKind.EXISTING]

    def planned_sites(self, region_key: str) -> List[ExclusionSite]:
        return [s for s in self.exclusion_sites(region_key) if s.kind is SiteKind.PLANNED]


class InMemoryStoreRegistry(StoreRegistry):
    """
    Usage:
        registry = InMemoryStoreRegistry({"small-country": [site_a, site_b]})
    """

    def __init__(self, sites: Optional[Dict[str, Iterable[ExclusionSite]]] = None):
        self._sites: Dict[str, List[ExclusionSite]] = {
            key: list(value) for key, value in (sites or {}).items()
        }

    def add(self, region_key: str, site: ExclusionSite):
        self._sites.setdefault(region_key, []).append(site)

    def exclusion_sites(self, region_key: str) -> List[ExclusionSite]:
        return list(self._sites.get(region_key, []))


class JsonStoreRegistry(StoreRegistry):
    """
    Sites from a JSON file shaped as {"<region>": [{"id", "kind", "lat", "lng", ...}]}.

    The file is read once, lazily.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._sites: Optional[Dict[str, List[ExclusionSite]]] = None

    def _load(self) -> Dict[str, List[ExclusionSite]]:
        if self._sites is None:
            if not self.path.exists():
                log.warning(f"Store file {self.path} not found; assuming no existing sites")
                self._sites = {}
            else:
                with open(self.path) as f:
                    raw = json.load(f)
                self._sites = {
                    key: [ExclusionSite.from_dict(s) for s in sites]
                    for key, sites in raw.items()
                }
                total = sum(len(v) for v in self._sites.values())
                log.info(f"Loaded {total} sites across {len(self._sites)} regions from {self.path}")
        return self._sites

    def exclusion_sites(self, region_key: str) -> List[ExclusionSite]:
        return list(self._load().get(region_key, []))
