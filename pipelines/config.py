"""Pipeline configuration: defaults, JSON config files and validation."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from pipelines.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_STOP_WORDS = (
    "the",
    "a",
    "an",
    "and",
    "or",
    "but",
    "in",
    "on",
    "at",
    "to",
    "for",
    "of",
    "with",
    "by",
)

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "scoring": {
        "weights": {"external_id": 0.0, "distance": 0.5, "title": 0.35, "tags": 0.15},
        "thresholds": {"warn": 0.65, "high": 0.8},
        "cutoff_radius_m": 50.0,
        "min_title_length": 3,
        "neutral_score": 0.5,
        "stop_words": list(DEFAULT_STOP_WORDS),
    },
    "geocoder": {
        "base_url": "https://nominatim.openstreetmap.org",
        "user_agent": "poi-reconcile/0.1 (mass import)",
        "email": None,
        "min_interval_sec": 1.0,
        "timeout_sec": 10.0,
        "cache_path": "data/geocode_cache.jsonl",
    },
    "catalog": {
        "base_url": "http://localhost:8787/api",
        "api_token": None,
        "timeout_sec": 30.0,
        "max_attempts": 3,
        "backoff_sec": 2.0,
    },
    "import": {
        "state_dir": "data/batches",
        "report_dir": "reports",
        "max_title_length": 200,
        "enrich_location_tags": True,
        "dry_run": False,
    },
}

SCORING_PRESETS: Dict[str, Dict[str, Any]] = {
    "default": {},
    "dev": {"thresholds": {"warn": 0.5, "high": 0.7}},
    "prod": {"thresholds": {"warn": 0.7, "high": 0.85}},
}


@dataclass(frozen=True)
class ScoringWeights:
    external_id: float = 0.0
    distance: float = 0.5
    title: float = 0.35
    tags: float = 0.15

    def total(self) -> float:
        return self.external_id + self.distance + self.title + self.tags


@dataclass(frozen=True)
class ScoringThresholds:
    warn: float = 0.65
    high: float = 0.8


@dataclass(frozen=True)
class ScoringConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)
    cutoff_radius_m: float = 50.0
    min_title_length: int = 3
    neutral_score: float = 0.5
    stop_words: Tuple[str, ...] = DEFAULT_STOP_WORDS

    def __post_init__(self) -> None:
        validate_scoring_config(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoringConfig":
        weights = data.get("weights") or {}
        thresholds = data.get("thresholds") or {}
        try:
            return cls(
                weights=ScoringWeights(**{k: float(v) for k, v in weights.items()}),
                thresholds=ScoringThresholds(**{k: float(v) for k, v in thresholds.items()}),
                cutoff_radius_m=float(data.get("cutoff_radius_m", 50.0)),
                min_title_length=int(data.get("min_title_length", 3)),
                neutral_score=float(data.get("neutral_score", 0.5)),
                stop_words=tuple(str(word).lower() for word in data.get("stop_words", DEFAULT_STOP_WORDS)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid scoring configuration: {exc}") from exc


@dataclass(frozen=True)
class GeocoderConfig:
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "poi-reconcile/0.1 (mass import)"
    email: Optional[str] = None
    min_interval_sec: float = 1.0
    timeout_sec: float = 10.0
    cache_path: str = "data/geocode_cache.jsonl"


@dataclass(frozen=True)
class CatalogConfig:
    base_url: str = "http://localhost:8787/api"
    api_token: Optional[str] = None
    timeout_sec: float = 30.0
    max_attempts: int = 3
    backoff_sec: float = 2.0


@dataclass(frozen=True)
class ImportConfig:
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    geocoder: GeocoderConfig = field(default_factory=GeocoderConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    state_dir: str = "data/batches"
    report_dir: str = "reports"
    max_title_length: int = 200
    enrich_location_tags: bool = True
    dry_run: bool = False


def validate_scoring_config(config: ScoringConfig) -> None:
    """Raise ConfigurationError when weights or thresholds are inconsistent."""
    thresholds = config.thresholds
    for name in ("warn", "high"):
        value = getattr(thresholds, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"Invalid {name} threshold: {value}. Must be between 0 and 1.")
    if thresholds.high <= thresholds.warn:
        raise ConfigurationError(
            f"High threshold ({thresholds.high}) must be greater than warn threshold ({thresholds.warn}).",
            {"warn": thresholds.warn, "high": thresholds.high},
        )
    weights = config.weights
    for name in ("external_id", "distance", "title", "tags"):
        if getattr(weights, name) < 0:
            raise ConfigurationError("All similarity weights must be non-negative.", {"weight": name})
    if abs(weights.total() - 1.0) > 0.001:
        raise ConfigurationError(f"Similarity weights must sum to 1.0, got {weights.total():.4f}")
    if config.cutoff_radius_m <= 0:
        raise ConfigurationError(f"Cutoff radius must be positive, got {config.cutoff_radius_m}")
    if config.min_title_length < 1:
        raise ConfigurationError(f"Minimum title length must be at least 1, got {config.min_title_length}")
    if not 0.0 <= config.neutral_score <= 1.0:
        raise ConfigurationError(f"Neutral score must be between 0 and 1, got {config.neutral_score}")


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a JSON config file; missing files are an error."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file {path} not found.") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Config file {path} could not be read: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object.")
    return data


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    preset: str = "default",
) -> ImportConfig:
    """Defaults, then the scoring preset, then the config file, then overrides."""
    if preset not in SCORING_PRESETS:
        raise ConfigurationError(f"Unknown scoring preset {preset!r}.", {"known": sorted(SCORING_PRESETS)})
    raw = copy.deepcopy(DEFAULT_CONFIG)
    _deep_merge(raw["scoring"], SCORING_PRESETS[preset])
    if path is not None:
        logger.debug("Loading configuration from %s", path)
        _deep_merge(raw, load_config_file(path))
    if overrides:
        _deep_merge(raw, overrides)
    return build_config(raw)


def build_config(raw: Mapping[str, Any]) -> ImportConfig:
    geocoder_raw = dict(raw.get("geocoder") or {})
    catalog_raw = dict(raw.get("catalog") or {})
    import_raw = dict(raw.get("import") or {})
    try:
        geocoder = GeocoderConfig(**geocoder_raw)
        catalog = CatalogConfig(**catalog_raw)
    except TypeError as exc:
        raise ConfigurationError(f"Unknown configuration key: {exc}") from exc

    if not geocoder.user_agent or not geocoder.user_agent.strip():
        raise ConfigurationError("Geocoder user_agent is required by the geocoding service usage policy.")
    if geocoder.min_interval_sec < 0:
        raise ConfigurationError(f"min_interval_sec must be >= 0, got {geocoder.min_interval_sec}")
    if catalog.max_attempts < 1:
        raise ConfigurationError(f"max_attempts must be >= 1, got {catalog.max_attempts}")
    if catalog.backoff_sec < 0:
        raise ConfigurationError(f"backoff_sec must be >= 0, got {catalog.backoff_sec}")

    max_title_length = int(import_raw.get("max_title_length", 200))
    if max_title_length < 1:
        raise ConfigurationError(f"max_title_length must be positive, got {max_title_length}")

    return ImportConfig(
        scoring=ScoringConfig.from_dict(raw.get("scoring") or {}),
        geocoder=geocoder,
        catalog=catalog,
        state_dir=str(import_raw.get("state_dir", "data/batches")),
        report_dir=str(import_raw.get("report_dir", "reports")),
        max_title_length=max_title_length,
        enrich_location_tags=bool(import_raw.get("enrich_location_tags", True)),
        dry_run=bool(import_raw.get("dry_run", False)),
    )
