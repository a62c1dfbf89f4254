"""
End-to-end flows: the pure pipeline, and the CLI driving a real job store,
cache and region pack on disk.
"""

import json

import pandas as pd
import pytest

import main
from expansion.geo import haversine_km
from expansion.pipeline import plan_sites


def test_plan_sites_is_deterministic(settings, small_country, exclusions):
    first = plan_sites(settings, small_country, exclusions, target_count=30, seed=5)
    second = plan_sites(settings, small_country, exclusions, target_count=30, seed=5)

    assert [s.id for s in first.survivors] == [s.id for s in second.survivors]
    assert [s.total_score for s in first.survivors] == [s.total_score for s in second.survivors]
    assert len(first.survivors) == 30


def test_plan_sites_invariants(settings, small_country, exclusions):
    plan = plan_sites(settings, small_country, exclusions, target_count=50, seed=1)
    survivors = plan.survivors

    assert len(survivors) + len(plan.dedup.suppressed) == len(plan.scored)
    for i, a in enumerate(survivors):
        for b in survivors[i + 1:]:
            assert haversine_km(a.lat, a.lng, b.lat, b.lng) >= settings.suppression_radius_km
    per_region = {}
    for s in survivors:
        if not s.fairness_exempt:
            per_region[s.region_key] = per_region.get(s.region_key, 0) + 1
    assert max(per_region.values()) <= plan.dedup.max_per_region


@pytest.fixture
def cli_env(tmp_path, monkeypatch, small_country, exclusions):
    regions = tmp_path / "regions"
    regions.mkdir()
    (regions / "small-country.json").write_text(json.dumps(small_country.to_dict()))
    stores = tmp_path / "stores.json"
    stores.write_text(json.dumps({"small-country": [s.to_dict() for s in exclusions]}))

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("EXPANSION_JOBS_DB_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setenv("EXPANSION_CACHE_DB_PATH", str(tmp_path / "cache.db"))
    return ["--regions-dir", str(regions), "--stores", str(stores)]


def test_cli_submit_run_and_export(cli_env, tmp_path, capsys):
    assert main.main(cli_env + ["submit", "small-country", "--target", "20", "--no-ai", "--run"]) == 0
    out = capsys.readouterr().out
    assert "Queued job 1" in out
    assert '"status": "completed"' in out

    csv_path = tmp_path / "out.csv"
    assert main.main(cli_env + ["result", "1", "--csv", str(csv_path)]) == 0

    df = pd.read_csv(csv_path)
    assert len(df) == 20
    assert set(df["tier"]) == {"deterministic"}
    assert df["total_score"].is_monotonic_decreasing
    assert df["rationale"].str.len().min() > 0


def test_cli_without_key_still_runs_templates(cli_env, capsys):
    assert main.main(cli_env + ["submit", "small-country", "--aggression", "10", "--run"]) == 0
    assert main.main(cli_env + ["result", "1"]) == 0
    out = capsys.readouterr().out
    assert "AI: 0/0" in out


def test_cli_unknown_region_fails_job(cli_env, capsys):
    assert main.main(cli_env + ["submit", "atlantis", "--target", "5", "--run"]) == 0
    out = capsys.readouterr().out
    assert "boundary_data_unavailable" in out
    assert main.main(cli_env + ["retry", "1"]) == 1


def test_cli_rejects_bad_input(cli_env):
    assert main.main(cli_env + ["submit", "small-country", "--aggression", "150"]) == 2
    assert main.main(cli_env + ["status", "99"]) == 2


def test_cli_idempotent_submit(cli_env, capsys):
    main.main(cli_env + ["submit", "small-country", "--target", "5", "--key", "abc"])
    main.main(cli_env + ["submit", "small-country", "--target", "5", "--key", "abc"])
    out = capsys.readouterr().out
    assert "Queued job 1" in out
    assert "Reusing job 1" in out


def test_cli_recover_keeps_recent_jobs(cli_env, monkeypatch, capsys):
    monkeypatch.setenv("EXPANSION_JOB_RETENTION_HOURS", "1")
    main.main(cli_env + ["submit", "small-country", "--target", "5", "--no-ai", "--run"])

    assert main.main(cli_env + ["recover"]) == 0
    assert "Deleted 0 finished jobs older than 1h" in capsys.readouterr().out
    assert main.main(cli_env + ["status", "1"]) == 0
