"""Record shapes shared by the geocoder, scorer, merge engine and orchestrator."""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

KEY_PRECISION = 6
CACHE_SCHEMA_VERSION = "1.0"

VERDICT_EXACT = "exact_duplicate"
VERDICT_LIKELY = "likely_duplicate"
VERDICT_POSSIBLE = "possible_duplicate"
VERDICT_DISTINCT = "distinct"

OUTCOME_CREATED = "created"
OUTCOME_MERGED = "merged"
OUTCOME_REVIEW = "skipped_for_review"
OUTCOME_FAILED = "failed"
OUTCOMES = (OUTCOME_CREATED, OUTCOME_MERGED, OUTCOME_REVIEW, OUTCOME_FAILED)

STAGE_PENDING = "pending"
STAGE_GEOCODING = "geocoding"
STAGE_SCORING = "scoring"
STAGE_CREATING = "creating"
STAGE_MERGING = "merging"
STAGE_DONE = "done"

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass(frozen=True)
class GeoCacheEntry:
    lat_key: float
    lon_key: float
    display_name: str
    country: Optional[str]
    region: Optional[str]
    city: Optional[str]
    suburb: Optional[str]
    neighbourhood: Optional[str]
    road: Optional[str]
    postcode: Optional[str]
    raw_response: str
    schema_version: str
    created_at: str

    @property
    def key(self) -> Tuple[float, float]:
        return (self.lat_key, self.lon_key)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GeoCacheEntry":
        return cls(
            lat_key=float(data["lat_key"]),
            lon_key=float(data["lon_key"]),
            display_name=str(data["display_name"]),
            country=data.get("country"),
            region=data.get("region"),
            city=data.get("city"),
            suburb=data.get("suburb"),
            neighbourhood=data.get("neighbourhood"),
            road=data.get("road"),
            postcode=data.get("postcode"),
            raw_response=str(data.get("raw_response") or "{}"),
            schema_version=str(data.get("schema_version") or CACHE_SCHEMA_VERSION),
            created_at=str(data["created_at"]),
        )


@dataclass
class ImportCandidate:
    source: str
    title: Optional[str]
    lat: Optional[float]
    lon: Optional[float]
    external_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    photos: List[str] = field(default_factory=list)
    row_index: int = 0

    def __post_init__(self) -> None:
        self.tags = normalize_tags(self.tags)
        self.external_id = _clean_identifier(self.external_id)


@dataclass
class ExistingRecord:
    id: str
    source: Optional[str]
    title: Optional[str]
    lat: Optional[float]
    lon: Optional[float]
    external_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    photos: List[str] = field(default_factory=list)
    created_at: Optional[str] = None

    def __post_init__(self) -> None:
        self.id = str(self.id)
        self.tags = normalize_tags(self.tags)
        self.external_id = _clean_identifier(self.external_id)


@dataclass(frozen=True)
class SimilarityResult:
    existing_id: str
    external_id_match: bool
    distance_meters: Optional[float]
    distance_score: float
    title_score: float
    tag_overlap_score: float
    composite_score: float
    verdict: str
    degraded_signals: Tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_signals)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["degraded_signals"] = list(self.degraded_signals)
        return data


def round_coordinate(value: float, precision: int = KEY_PRECISION) -> float:
    """Round a coordinate to the cache key precision."""
    return round(float(value), precision)


def is_valid_coordinate(lat: Any, lon: Any) -> bool:
    if lat is None or lon is None:
        return False
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat_f) or math.isnan(lon_f):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0


def normalize_tags(raw: Optional[Mapping[Any, Any]]) -> Dict[str, str]:
    """Lowercase keys, trim values, drop empties; insertion order is kept."""
    if not raw:
        return {}
    tags: Dict[str, str] = {}
    for key, value in raw.items():
        if key is None or value is None:
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        norm_key = str(key).strip().lower()
        if isinstance(value, bool):
            norm_value = "yes" if value else "no"
        else:
            norm_value = str(value).strip()
        if not norm_key or not norm_value:
            continue
        if norm_key not in tags:
            tags[norm_key] = norm_value
    return tags


def normalize_title(value: Optional[str]) -> str:
    """Lowercase, strip punctuation and accents, collapse whitespace."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _PUNCTUATION_PATTERN.sub(" ", ascii_only.lower())
    return _WHITESPACE_PATTERN.sub(" ", stripped).strip()


def candidate_key(candidate: ImportCandidate) -> str:
    """Stable key for a candidate, used by the batch resume log."""
    if candidate.external_id:
        return f"{candidate.source}:{candidate.external_id}"
    lat = "" if candidate.lat is None else f"{round_coordinate(candidate.lat):.{KEY_PRECISION}f}"
    lon = "" if candidate.lon is None else f"{round_coordinate(candidate.lon):.{KEY_PRECISION}f}"
    joined = "|".join([candidate.source or "", normalize_title(candidate.title), lat, lon])
    return f"{candidate.source}:sha1-{hashlib.sha1(joined.encode('utf-8')).hexdigest()[:16]}"


def _clean_identifier(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            value = int(value)
    text = str(value).strip()
    return text or None
