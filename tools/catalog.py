"""HTTP client for the catalog API consumed by the import pipeline."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import requests
from requests import Response, Session

from import_schema import ExistingRecord, ImportCandidate
from pipelines.errors import CatalogUnavailable

logger = logging.getLogger(__name__)


class CatalogClient:
    """Catalog operations the orchestrator depends on."""

    def find_near(self, lat: float, lon: float, radius_m: float) -> List[ExistingRecord]:
        raise NotImplementedError

    def create_record(self, candidate: ImportCandidate) -> str:
        raise NotImplementedError

    def append_tags(self, existing_id: str, tags: Mapping[str, str]) -> None:
        raise NotImplementedError


def record_from_payload(payload: Mapping[str, Any]) -> ExistingRecord:
    """Build an ExistingRecord from a catalog JSON object."""
    if "id" not in payload:
        raise CatalogUnavailable("Catalog record without id.", {"payload_keys": sorted(payload)})
    tags = payload.get("tags") or {}
    if not isinstance(tags, Mapping):
        tags = {}
    return ExistingRecord(
        id=str(payload["id"]),
        source=payload.get("source"),
        title=payload.get("title"),
        lat=_float_or_none(payload.get("lat")),
        lon=_float_or_none(payload.get("lon")),
        external_id=payload.get("external_id"),
        tags=dict(tags),
        photos=list(payload.get("photos") or []),
        created_at=payload.get("created_at"),
    )


def candidate_payload(candidate: ImportCandidate) -> Dict[str, Any]:
    return {
        "source": candidate.source,
        "external_id": candidate.external_id,
        "title": candidate.title,
        "lat": candidate.lat,
        "lon": candidate.lon,
        "tags": dict(candidate.tags),
        "photos": list(candidate.photos),
    }


def _float_or_none(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class HttpCatalogClient(CatalogClient):
    """
    Catalog over HTTP.

    Endpoints: ``GET /records/near``, ``POST /records`` and
    ``POST /records/{id}/tags``. Every transport error, non-2xx status or
    malformed body surfaces as CatalogUnavailable; retries are the caller's job.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response: Response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise CatalogUnavailable(f"{method} {path} failed: {exc}", {"url": url}) from exc
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CatalogUnavailable(f"{method} {path} returned a non-JSON body.", {"url": url}) from exc

    def find_near(self, lat: float, lon: float, radius_m: float) -> List[ExistingRecord]:
        data = self._request("GET", "/records/near", params={"lat": lat, "lon": lon, "radius": radius_m})
        if isinstance(data, Mapping):
            data = data.get("records")
        if not isinstance(data, list):
            raise CatalogUnavailable("find_near returned an unexpected payload.", {"lat": lat, "lon": lon})
        return [record_from_payload(item) for item in data if isinstance(item, Mapping)]

    def create_record(self, candidate: ImportCandidate) -> str:
        data = self._request("POST", "/records", json=candidate_payload(candidate))
        if not isinstance(data, Mapping) or not data.get("id"):
            raise CatalogUnavailable("create_record response has no id.", {"title": candidate.title})
        record_id = str(data["id"])
        logger.debug("Created catalog record %s for %r", record_id, candidate.title)
        return record_id

    def append_tags(self, existing_id: str, tags: Mapping[str, str]) -> None:
        self._request("POST", f"/records/{existing_id}/tags", json={"tags": dict(tags)})
