"""
Collaborator adapters for the expansion pipeline.

Includes:
- Regions (JSON region packs, OpenStreetMap top-up)
- Existing and planned sites
- Drive distance (OSRM)
- AI rationale (OpenAI)
"""

from providers.rationale import RationaleProvider, RationaleRequest, RationaleResponse, OpenAIRationaleProvider
from providers.regions import RegionProvider, InMemoryRegionProvider, FileRegionProvider, OverpassRegionProvider
from providers.overpass import OverpassLoader
from providers.routing import OSRMClient
from providers.stores import StoreRegistry, InMemoryStoreRegistry, JsonStoreRegistry

__all__ = [
    # Rationale
    "RationaleProvider",
    "RationaleRequest",
    "RationaleResponse",
    "OpenAIRationaleProvider",
    # Regions
    "RegionProvider",
    "InMemoryRegionProvider",
    "FileRegionProvider",
    "OverpassRegionProvider",
    "OverpassLoader",
    # Routing
    "OSRMClient",
    # Sites
    "StoreRegistry",
    "InMemoryStoreRegistry",
    "JsonStoreRegistry",
]
