import json

import pytest
from unittest.mock import MagicMock

from expansion.errors import BoundaryDataUnavailable
from expansion.models import AnchorPOI, RegionData, Settlement
from providers.regions import FileRegionProvider, InMemoryRegionProvider, OverpassRegionProvider


@pytest.fixture
def region_dir(tmp_path, small_country):
    (tmp_path / "small-country.json").write_text(json.dumps(small_country.to_dict()))
    (tmp_path / "broken.json").write_text("{not json")
    return tmp_path


def test_file_provider_loads_pack(region_dir, small_country):
    provider = FileRegionProvider(str(region_dir))
    region = provider.get_region("small-country")

    assert region.key == "small-country"
    assert len(region.settlements) == len(small_country.settlements)
    assert [s.key for s in region.sub_regions] == ["sw", "se", "nw", "ne"]
    assert provider.get_region("small-country") is region


def test_file_provider_missing_pack(region_dir):
    with pytest.raises(BoundaryDataUnavailable):
        FileRegionProvider(str(region_dir)).get_region("atlantis")


def test_file_provider_rejects_path_tricks(region_dir):
    with pytest.raises(BoundaryDataUnavailable):
        FileRegionProvider(str(region_dir)).get_region("../small-country")


def test_file_provider_unreadable_pack(region_dir):
    with pytest.raises(BoundaryDataUnavailable, match="unreadable"):
        FileRegionProvider(str(region_dir)).get_region("broken")


def test_in_memory_provider(small_country):
    provider = InMemoryRegionProvider()
    provider.add(small_country)
    assert provider.get_region("small-country") is small_country
    with pytest.raises(BoundaryDataUnavailable):
        provider.get_region("nowhere")


def _bare_region():
    return RegionData(
        key="bare",
        name="Bare",
        boundary=[[(50.0, 10.0), (50.0, 10.5), (50.5, 10.5), (50.5, 10.0)]],
    )


def test_overpass_fills_missing_data():
    loader = MagicMock()
    loader.fetch_settlements.return_value = [Settlement("osm-node-1", "Alpha", 50.2, 10.2, 12000)]
    loader.fetch_anchors.return_value = [AnchorPOI("osm-node-2", "mall", 50.21, 10.2)]

    region = OverpassRegionProvider(InMemoryRegionProvider({"bare": _bare_region()}), loader).get_region("bare")

    assert [s.name for s in region.settlements] == ["Alpha"]
    assert len(region.anchors) == 1
    assert region.anchors_available
    bounds = loader.fetch_settlements.call_args[0][0]
    assert (bounds.min_lat, bounds.max_lng) == (50.0, 10.5)


def test_overpass_outage_marks_anchors_estimated():
    loader = MagicMock()
    loader.fetch_settlements.return_value = None
    loader.fetch_anchors.return_value = None

    region = OverpassRegionProvider(InMemoryRegionProvider({"bare": _bare_region()}), loader).get_region("bare")

    assert region.settlements == []
    assert not region.anchors_available


def test_overpass_leaves_complete_packs_alone(small_country):
    loader = MagicMock()
    provider = OverpassRegionProvider(InMemoryRegionProvider({"small-country": small_country}), loader)
    provider.get_region("small-country")
    loader.fetch_settlements.assert_not_called()
    loader.fetch_anchors.assert_not_called()
