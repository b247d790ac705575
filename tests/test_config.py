import json

import pytest

from pipelines.config import ScoringConfig, ScoringThresholds, ScoringWeights, load_config
from pipelines.errors import ConfigurationError


def test_defaults():
    config = load_config()

    assert config.scoring.weights == ScoringWeights(0.0, 0.5, 0.35, 0.15)
    assert config.scoring.thresholds == ScoringThresholds(0.65, 0.8)
    assert config.scoring.cutoff_radius_m == 50.0
    assert config.geocoder.min_interval_sec == 1.0
    assert config.catalog.max_attempts == 3
    assert not config.dry_run


def test_presets_change_thresholds():
    assert load_config(preset="prod").scoring.thresholds == ScoringThresholds(0.7, 0.85)
    assert load_config(preset="dev").scoring.thresholds == ScoringThresholds(0.5, 0.7)
    with pytest.raises(ConfigurationError):
        load_config(preset="staging")


def test_file_then_overrides(tmp_path):
    path = tmp_path / "reconcile.json"
    path.write_text(
        json.dumps({"scoring": {"cutoff_radius_m": 75}, "geocoder": {"email": "ops@example.org"}}),
        encoding="utf-8",
    )

    config = load_config(path, overrides={"import": {"dry_run": True}, "geocoder": {"cache_path": "x.jsonl"}})

    assert config.scoring.cutoff_radius_m == 75.0
    assert config.scoring.weights.distance == 0.5
    assert config.geocoder.email == "ops@example.org"
    assert config.geocoder.cache_path == "x.jsonl"
    assert config.dry_run


@pytest.mark.parametrize(
    "scoring",
    [
        {"weights": {"distance": 0.6}},
        {"weights": {"distance": -0.1, "title": 0.95}},
        {"thresholds": {"warn": 0.9, "high": 0.8}},
        {"thresholds": {"high": 1.5}},
        {"cutoff_radius_m": 0},
        {"weights": {"colour": 0.1}},
    ],
)
def test_invalid_scoring_is_rejected(tmp_path, scoring):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"scoring": scoring}), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_user_agent_is_rejected():
    with pytest.raises(ConfigurationError):
        load_config(overrides={"geocoder": {"user_agent": "  "}})


def test_unknown_section_key_is_rejected():
    with pytest.raises(ConfigurationError):
        load_config(overrides={"catalog": {"retries": 5}})


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "absent.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(broken)


def test_scoring_config_validates_on_construction():
    with pytest.raises(ConfigurationError):
        ScoringConfig(weights=ScoringWeights(external_id=0.5))
