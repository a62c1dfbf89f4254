import dataclasses

from expansion.models import DataQuality
from expansion.templates import describe_factors, deterministic_rationale


def test_rationale_names_the_settlement(make_scored):
    scored = make_scored("stl-1", 50.1, 9.9, 0.82, name="Lindenau")
    text = deterministic_rationale(scored)
    assert text.startswith("Site near Lindenau scores 0.82 overall")
    assert "12.5 km away" in text
    assert "20,000" in text


def test_grid_candidates_use_coordinates(make_scored):
    text = deterministic_rationale(make_scored("grd-1-2", 50.12346, 9.87654, 0.4))
    assert text.startswith("Site at 50.1235, 9.8765")


def test_estimated_inputs_are_disclosed(make_scored):
    scored = make_scored("x", 50.0, 10.0, 0.6, quality={"anchor_density": DataQuality.ESTIMATED})
    text = deterministic_rationale(scored)
    assert "Estimated inputs: anchor density" in text

    measured = deterministic_rationale(make_scored("y", 50.0, 10.0, 0.6))
    assert "Estimated inputs" not in measured


def test_no_nearby_sites(make_scored):
    scored = dataclasses.replace(make_scored("x", 50.0, 10.0, 0.6), nearest_site_km=None)
    assert "No existing or planned sites" in deterministic_rationale(scored)


def test_factors_ordered_strongest_first(make_scored):
    scored = make_scored("x", 50.0, 10.0, 0.6)
    scored.components.update({"population": 0.2, "proximity_gap": 0.9, "anchor_density": 0.55})
    factors = describe_factors(scored)
    assert factors[0] == "a significant gap in existing coverage"
    assert factors[1] == "good sales potential"
    assert factors[-1] == "a smaller local catchment"


def test_same_input_same_text(make_scored):
    a = deterministic_rationale(make_scored("x", 50.0, 10.0, 0.77))
    b = deterministic_rationale(make_scored("x", 50.0, 10.0, 0.77))
    assert a == b
