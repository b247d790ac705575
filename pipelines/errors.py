"""Typed errors raised across the reconciliation pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ReconcileError(Exception):
    """Base class carrying a stable code and a JSON-safe context."""

    code = "RECONCILE_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.context:
            payload["context"] = {key: _json_safe(value) for key, value in self.context.items()}
        if self.__cause__ is not None:
            payload["cause"] = f"{type(self.__cause__).__name__}: {self.__cause__}"
        return payload


class ValidationError(ReconcileError):
    """Malformed candidate; the record fails, the batch continues."""

    code = "CANDIDATE_INVALID"


class GeocodeUnavailable(ReconcileError):
    """Reverse geocoding failed; nothing is cached for the coordinate."""

    code = "GEOCODE_UNAVAILABLE"


class CatalogUnavailable(ReconcileError):
    """Catalog query or write failed."""

    code = "CATALOG_UNAVAILABLE"


class PersistenceError(ReconcileError):
    """Local cache or batch state store failed. Fatal for the batch."""

    code = "PERSISTENCE_FAILED"


class ConfigurationError(ReconcileError):
    code = "CONFIG_INVALID"


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return str(value)
