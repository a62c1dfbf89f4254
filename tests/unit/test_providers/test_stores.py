import json

from expansion.models import ExclusionSite, SiteKind
from providers.stores import InMemoryStoreRegistry, JsonStoreRegistry


def test_json_registry(tmp_path, exclusions):
    path = tmp_path / "stores.json"
    path.write_text(json.dumps({"small-country": [s.to_dict() for s in exclusions]}))

    registry = JsonStoreRegistry(str(path))

    assert registry.exclusion_sites("small-country") == exclusions
    assert [s.id for s in registry.existing_sites("small-country")] == ["s1", "s2", "s3"]
    assert [s.id for s in registry.planned_sites("small-country")] == ["p1"]
    assert registry.exclusion_sites("elsewhere") == []


def test_missing_file_means_no_sites(tmp_path):
    registry = JsonStoreRegistry(str(tmp_path / "nope.json"))
    assert registry.exclusion_sites("small-country") == []


def test_kind_defaults_to_existing(tmp_path):
    path = tmp_path / "stores.json"
    path.write_text(json.dumps({"r": [{"id": "x", "lat": 50.0, "lng": 10.0}]}))
    site = JsonStoreRegistry(str(path)).exclusion_sites("r")[0]
    assert site.kind is SiteKind.EXISTING


def test_in_memory_registry_returns_copies():
    registry = InMemoryStoreRegistry()
    registry.add("r", ExclusionSite("a", SiteKind.PLANNED, 50.0, 10.0))
    sites = registry.exclusion_sites("r")
    sites.clear()
    assert len(registry.exclusion_sites("r")) == 1
