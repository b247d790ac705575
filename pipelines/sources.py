"""Load import candidates from JSON lines, JSON/GeoJSON or tabular files."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import pandas as pd

from import_schema import ImportCandidate, is_valid_coordinate

logger = logging.getLogger(__name__)

JSON_LINES_SUFFIXES = {".jsonl", ".ndjson"}
JSON_SUFFIXES = {".json", ".geojson"}
TABULAR_SUFFIXES = {".csv", ".parquet"}

TITLE_FIELDS = ("title", "name", "title_of_work")
EXTERNAL_ID_FIELDS = ("external_id", "id", "registryid")
LAT_FIELDS = ("lat", "latitude")
LON_FIELDS = ("lon", "lng", "longitude")

# Fields consumed by the mapping; everything else scalar becomes a tag.
RESERVED_FIELDS = set(TITLE_FIELDS + EXTERNAL_ID_FIELDS + LAT_FIELDS + LON_FIELDS) | {
    "source",
    "tags",
    "photos",
    "geo_point_2d",
    "geom",
    "geometry",
    "location",
    "type",
}


def _optional_value(value: Any) -> Any:
    """Coerce pandas NA and empty strings to None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def _to_float(value: Any) -> Optional[float]:
    value = _optional_value(value)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(record: Mapping[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = _optional_value(record.get(name))
        if value is not None:
            return value
    return None


def _point_coordinates(geometry: Any) -> Tuple[Optional[float], Optional[float]]:
    """Return (lat, lon) from a GeoJSON Point or a Feature wrapping one."""
    if not isinstance(geometry, Mapping):
        return None, None
    inner = geometry.get("geometry") if isinstance(geometry.get("geometry"), Mapping) else geometry
    if inner.get("type") != "Point":
        return None, None
    coords = inner.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None, None
    return _to_float(coords[1]), _to_float(coords[0])


def extract_lat_lon(record: Mapping[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    """Find coordinates in the shapes open-data exports commonly use."""
    point = record.get("geo_point_2d")
    if isinstance(point, Mapping):
        lat, lon = _to_float(point.get("lat")), _to_float(point.get("lon"))
        if is_valid_coordinate(lat, lon):
            return lat, lon

    for geom_field in ("geometry", "geom"):
        lat, lon = _point_coordinates(record.get(geom_field))
        if is_valid_coordinate(lat, lon):
            return lat, lon

    lat = _to_float(_first(record, LAT_FIELDS))
    lon = _to_float(_first(record, LON_FIELDS))
    if lat is None and lon is None and isinstance(record.get("location"), Mapping):
        location = record["location"]
        lat = _to_float(_first(location, LAT_FIELDS))
        lon = _to_float(_first(location, LON_FIELDS))
    return lat, lon


def _parse_photos(raw: Any) -> List[str]:
    raw = _optional_value(raw) if not isinstance(raw, (list, tuple)) else raw
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    if isinstance(raw, (list, tuple)):
        photos: List[str] = []
        for item in raw:
            if isinstance(item, Mapping):
                item = item.get("url")
            item = _optional_value(item)
            if item is not None:
                photos.append(str(item))
        return photos
    return []


def _collect_tags(record: Mapping[str, Any]) -> Dict[str, Any]:
    explicit = record.get("tags")
    if isinstance(explicit, str):
        try:
            explicit = json.loads(explicit)
        except json.JSONDecodeError:
            explicit = None
    if isinstance(explicit, Mapping):
        return dict(explicit)
    tags: Dict[str, Any] = {}
    for key, value in record.items():
        if key in RESERVED_FIELDS:
            continue
        if isinstance(value, (Mapping, list, tuple)):
            continue
        value = _optional_value(value)
        if value is not None:
            tags[key] = value
    return tags


def candidate_from_mapping(record: Mapping[str, Any], index: int, default_source: str) -> ImportCandidate:
    """Map one raw record onto an ImportCandidate. Never raises on bad values."""
    lat, lon = extract_lat_lon(record)
    title = _first(record, TITLE_FIELDS)
    external_id = _first(record, EXTERNAL_ID_FIELDS)
    source = _optional_value(record.get("source")) or default_source
    return ImportCandidate(
        source=str(source),
        title=None if title is None else str(title),
        lat=lat,
        lon=lon,
        external_id=external_id,
        tags=_collect_tags(record),
        photos=_parse_photos(record.get("photos")),
        row_index=index,
    )


def _feature_record(feature: Mapping[str, Any]) -> Dict[str, Any]:
    properties = dict(feature.get("properties") or {})
    properties.setdefault("geometry", feature.get("geometry"))
    if feature.get("id") is not None:
        properties.setdefault("id", feature.get("id"))
    return properties


def iter_raw_records(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield raw record mappings from a supported input file."""
    suffix = path.suffix.lower()
    if suffix in JSON_LINES_SUFFIXES:
        with path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Line %s of %s is not valid JSON; yielding an empty record.", line_no, path)
                    data = {}
                yield data if isinstance(data, dict) else {}
        return
    if suffix in JSON_SUFFIXES:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict) and data.get("type") == "FeatureCollection":
            for feature in data.get("features") or []:
                yield _feature_record(feature) if isinstance(feature, Mapping) else {}
            return
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, Mapping) and item.get("type") == "Feature":
                yield _feature_record(item)
            else:
                yield dict(item) if isinstance(item, Mapping) else {}
        return
    if suffix in TABULAR_SUFFIXES:
        df = pd.read_parquet(path) if suffix == ".parquet" else pd.read_csv(path, dtype=str, keep_default_na=False)
        for row in df.to_dict("records"):
            yield row
        return
    raise ValueError(
        f"Unsupported input format {suffix!r}. Supported: "
        + ", ".join(sorted(JSON_LINES_SUFFIXES | JSON_SUFFIXES | TABULAR_SUFFIXES))
    )


def load_candidates(path: Path, default_source: str) -> List[ImportCandidate]:
    """Load every record of ``path`` in input order."""
    path = Path(path)
    candidates = [
        candidate_from_mapping(record, index, default_source)
        for index, record in enumerate(iter_raw_records(path))
    ]
    logger.info("Loaded %s candidates from %s", len(candidates), path)
    return candidates


def extract_coordinates(path: Path) -> List[Tuple[float, float]]:
    """Valid (lat, lon) pairs of every record, for cache warming."""
    coordinates: List[Tuple[float, float]] = []
    skipped = 0
    for record in iter_raw_records(Path(path)):
        lat, lon = extract_lat_lon(record)
        if is_valid_coordinate(lat, lon):
            coordinates.append((float(lat), float(lon)))
        else:
            skipped += 1
    if skipped:
        logger.info("Skipped %s records without usable coordinates in %s", skipped, path)
    return coordinates
