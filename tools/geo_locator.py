"""Reverse geocoding through Nominatim behind a persistent, throttled cache."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from requests import Response, Session
from tqdm import tqdm

from import_schema import CACHE_SCHEMA_VERSION, GeoCacheEntry, round_coordinate
from pipelines.errors import GeocodeUnavailable, PersistenceError

logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org"


class SystemClock:
    """Wall clock used outside of tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class RateLimiter:
    """Simple rate limiter ensuring a minimum interval between events.

    The interval is measured from the start of the previous event, so the
    caller must invoke ``wait()`` immediately before each outbound call.
    """

    def __init__(self, min_interval_sec: float = 1.0, clock: Optional[Any] = None) -> None:
        self.min_interval = max(0.0, float(min_interval_sec))
        self.clock = clock or SystemClock()
        self._last_time: Optional[float] = None

    @property
    def last_call(self) -> Optional[float]:
        return self._last_time

    def time_until_next(self) -> float:
        if self._last_time is None or self.min_interval <= 0:
            return 0.0
        elapsed = self.clock.monotonic() - self._last_time
        return max(0.0, self.min_interval - elapsed)

    def wait(self) -> None:
        remaining = self.time_until_next()
        if remaining > 0:
            logger.debug("Throttling geocoder for %.3fs", remaining)
            self.clock.sleep(remaining)
        self._last_time = self.clock.monotonic()


class NominatimClient:
    """Thin client for the Nominatim reverse endpoint."""

    def __init__(
        self,
        user_agent: str,
        base_url: str = NOMINATIM_URL,
        email: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[Session] = None,
    ) -> None:
        if not user_agent:
            raise ValueError("Nominatim requires an identifying User-Agent.")
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": user_agent,
                "Accept": "application/json",
                "Accept-Language": "en",
            }
        )

    def reverse(self, lat: float, lon: float) -> Dict[str, Any]:
        """Return the raw reverse-geocoding payload for a coordinate."""
        params: Dict[str, Any] = {
            "format": "jsonv2",
            "addressdetails": 1,
            "lat": f"{lat:.7f}",
            "lon": f"{lon:.7f}",
        }
        if self.email:
            params["email"] = self.email
        context = {"lat": lat, "lon": lon}
        try:
            response = self.session.get(f"{self.base_url}/reverse", params=params, timeout=self.timeout)
        except requests.Timeout as exc:
            raise GeocodeUnavailable(f"Nominatim timed out after {self.timeout}s", context) from exc
        except requests.RequestException as exc:
            raise GeocodeUnavailable(f"Nominatim request failed: {exc}", context) from exc
        return _parse_response(response, context)


def _parse_response(resp: Response, context: Dict[str, Any]) -> Dict[str, Any]:
    if resp.status_code == 429:
        raise GeocodeUnavailable("Nominatim rejected the request (rate limited).", {**context, "status": 429})
    try:
        resp.raise_for_status()
        data = resp.json()
    except requests.HTTPError as exc:
        raise GeocodeUnavailable(f"Nominatim returned HTTP {resp.status_code}", {**context, "status": resp.status_code}) from exc
    except ValueError as exc:
        raise GeocodeUnavailable("Nominatim returned a non-JSON body.", context) from exc
    if not isinstance(data, dict):
        raise GeocodeUnavailable("Nominatim returned an unexpected payload shape.", context)
    if data.get("error"):
        raise GeocodeUnavailable(f"Nominatim error: {data['error']}", context)
    if not data.get("display_name"):
        raise GeocodeUnavailable("Nominatim payload has no display_name.", context)
    return data


def _first_present(address: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = address.get(key)
        if value:
            return str(value)
    return None


def parse_reverse_response(payload: Dict[str, Any], lat_key: float, lon_key: float) -> GeoCacheEntry:
    """Map a Nominatim reverse payload onto a cache entry, keeping the raw body."""
    address = payload.get("address") or {}
    if not isinstance(address, dict):
        address = {}
    return GeoCacheEntry(
        lat_key=lat_key,
        lon_key=lon_key,
        display_name=str(payload["display_name"]),
        country=_first_present(address, "country"),
        region=_first_present(address, "state", "state_district", "province"),
        city=_first_present(address, "city", "town", "village", "city_district"),
        suburb=_first_present(address, "suburb", "neighbourhood"),
        neighbourhood=_first_present(address, "neighbourhood"),
        road=_first_present(address, "road"),
        postcode=_first_present(address, "postcode"),
        raw_response=json.dumps(payload, ensure_ascii=False, sort_keys=True),
        schema_version=CACHE_SCHEMA_VERSION,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


class GeocodeStore:
    """Append-only JSON-lines store of cache entries keyed by rounded coordinate."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._entries: Dict[Tuple[float, float], GeoCacheEntry] = {}
        self._load()

    def _load(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                return
            with self.path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
            if lines and not lines[-1].endswith("\n"):
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write("\n")
        except OSError as exc:
            raise PersistenceError(f"Geocode cache {self.path} could not be opened: {exc}", {"path": str(self.path)}) from exc

        for line_no, line in enumerate(lines, start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                entry = GeoCacheEntry.from_dict(json.loads(stripped))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable cache line %s in %s", line_no, self.path)
                continue
            self._entries.setdefault(entry.key, entry)
        logger.debug("Loaded %s geocode cache entries from %s", len(self._entries), self.path)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[float, float]) -> bool:
        return key in self._entries

    def get(self, lat_key: float, lon_key: float) -> Optional[GeoCacheEntry]:
        return self._entries.get((lat_key, lon_key))

    def put(self, entry: GeoCacheEntry) -> None:
        """Durably append an entry. Existing keys are never rewritten."""
        if entry.key in self._entries:
            return
        line = json.dumps(entry.to_dict(), ensure_ascii=False, sort_keys=True)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise PersistenceError(f"Geocode cache {self.path} could not be written: {exc}", {"path": str(self.path)}) from exc
        self._entries[entry.key] = entry

    def stats(self) -> Dict[str, Any]:
        created = sorted(entry.created_at for entry in self._entries.values())
        return {
            "path": str(self.path),
            "total_entries": len(self._entries),
            "oldest_entry": created[0] if created else None,
            "newest_entry": created[-1] if created else None,
        }


class GeocodeCache:
    """Cache-first reverse geocoding with a global outbound throttle."""

    def __init__(self, store: GeocodeStore, client: NominatimClient, rate_limiter: RateLimiter) -> None:
        self.store = store
        self.client = client
        self.rate_limiter = rate_limiter
        self.hits = 0
        self.misses = 0
        self.calls = 0

    @staticmethod
    def key_for(lat: float, lon: float) -> Tuple[float, float]:
        return (round_coordinate(lat), round_coordinate(lon))

    def contains(self, lat: float, lon: float) -> bool:
        return self.key_for(lat, lon) in self.store

    def lookup(self, lat: float, lon: float) -> GeoCacheEntry:
        lat_key, lon_key = self.key_for(lat, lon)
        cached = self.store.get(lat_key, lon_key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        self.rate_limiter.wait()
        self.calls += 1
        payload = self.client.reverse(lat_key, lon_key)
        entry = parse_reverse_response(payload, lat_key, lon_key)
        self.store.put(entry)
        logger.debug("Geocoded %s,%s -> %s", lat_key, lon_key, entry.display_name)
        return entry

    def stats(self) -> Dict[str, Any]:
        data = self.store.stats()
        data.update({"hits": self.hits, "misses": self.misses, "calls": self.calls})
        return data


@dataclass
class WarmStats:
    total: int = 0
    unique: int = 0
    already_cached: int = 0
    geocoded_now: int = 0
    failures: int = 0
    capped: int = 0

    def summary(self) -> str:
        return (
            f"Coordinates: {self.total}  | Unique: {self.unique}  | Already cached: {self.already_cached}\n"
            f"Geocoded now: {self.geocoded_now}  | Failures: {self.failures}  | Capped: {self.capped}"
        )


def unique_coordinates(coordinates: Iterable[Tuple[float, float]]) -> List[Tuple[float, float]]:
    """Deduplicate by rounded key, keeping first-seen order."""
    seen: set[Tuple[float, float]] = set()
    ordered: List[Tuple[float, float]] = []
    for lat, lon in coordinates:
        key = GeocodeCache.key_for(lat, lon)
        if key in seen:
            continue
        seen.add(key)
        ordered.append(key)
    return ordered


def warm_cache(
    cache: GeocodeCache,
    coordinates: Iterable[Tuple[float, float]],
    max_new: Optional[int] = None,
    show_progress: bool = True,
) -> WarmStats:
    """
    Pre-fill the cache for a list of coordinates.

    Safe to interrupt: every fetched entry is persisted before the next call,
    and a rerun skips everything already cached.
    """
    all_coords = list(coordinates)
    unique = unique_coordinates(all_coords)
    stats = WarmStats(total=len(all_coords), unique=len(unique))

    pending = [coord for coord in unique if not cache.contains(*coord)]
    stats.already_cached = len(unique) - len(pending)
    logger.info(
        "%s coordinates (%s unique), %s already cached, %s to fetch.",
        stats.total,
        stats.unique,
        stats.already_cached,
        len(pending),
    )
    if pending:
        eta_min = len(pending) * cache.rate_limiter.min_interval / 60
        logger.info("Estimated time: %.1f minutes", eta_min)

    for lat, lon in tqdm(pending, desc="Warming cache", unit="coord", disable=not show_progress):
        if max_new is not None and stats.geocoded_now + stats.failures >= max_new:
            stats.capped += 1
            continue
        try:
            cache.lookup(lat, lon)
        except GeocodeUnavailable as exc:
            stats.failures += 1
            logger.warning("Failed to geocode %s,%s: %s", lat, lon, exc)
            continue
        stats.geocoded_now += 1

    return stats
