from typing import Dict, List, Mapping, Optional, Set, Tuple

import pytest

from import_schema import ExistingRecord, ImportCandidate, round_coordinate
from pipelines.batch_state import BatchStateLog
from pipelines.config import ImportConfig
from pipelines.errors import CatalogUnavailable, GeocodeUnavailable
from pipelines.reconcile import ImportOrchestrator
from pipelines.similarity import SimilarityScorer, haversine_m
from tools.catalog import CatalogClient
from tools.geo_locator import GeocodeCache, GeocodeStore, RateLimiter


class FakeClock:
    """Deterministic clock: sleep() advances time instead of blocking."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReverseClient:
    """Stands in for NominatimClient.reverse and records when it was called."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: List[Tuple[float, float]] = []
        self.call_times: List[float] = []
        self.fail_for: Set[Tuple[float, float]] = set()

    def reverse(self, lat: float, lon: float) -> dict:
        self.calls.append((lat, lon))
        self.call_times.append(self.clock.monotonic())
        # Every call takes a little time on the wire.
        self.clock.advance(0.05)
        if (round_coordinate(lat), round_coordinate(lon)) in self.fail_for:
            raise GeocodeUnavailable("Nominatim returned HTTP 503", {"lat": lat, "lon": lon})
        return {
            "display_name": f"Spot {lat:.4f}, {lon:.4f}, Vancouver, Canada",
            "address": {
                "road": "Main Street",
                "neighbourhood": "Downtown",
                "city": "Vancouver",
                "state": "British Columbia",
                "postcode": "V6B 1A1",
                "country": "Canada",
            },
        }


class InMemoryCatalog(CatalogClient):
    def __init__(self) -> None:
        self.records: Dict[str, ExistingRecord] = {}
        self.failures: Dict[str, int] = {}
        self.created: List[str] = []
        self.tag_appends: List[Tuple[str, Dict[str, str]]] = []
        # Creates that commit and then report a failure, like a timed-out POST.
        self.commit_then_fail = 0
        self._next_id = 1

    def _maybe_fail(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining > 0:
            self.failures[operation] = remaining - 1
            raise CatalogUnavailable(f"{operation} returned HTTP 502")

    def add(self, record: ExistingRecord) -> ExistingRecord:
        self.records[record.id] = record
        return record

    def find_near(self, lat: float, lon: float, radius_m: float) -> List[ExistingRecord]:
        self._maybe_fail("find_near")
        return [
            rec
            for rec in self.records.values()
            if rec.lat is not None and rec.lon is not None and haversine_m(lat, lon, rec.lat, rec.lon) <= radius_m
        ]

    def create_record(self, candidate: ImportCandidate) -> str:
        self._maybe_fail("create_record")
        record_id = f"rec-{self._next_id:04d}"
        self._next_id += 1
        self.records[record_id] = ExistingRecord(
            id=record_id,
            source=candidate.source,
            title=candidate.title,
            lat=candidate.lat,
            lon=candidate.lon,
            external_id=candidate.external_id,
            tags=dict(candidate.tags),
            photos=list(candidate.photos),
            created_at="2026-01-01T00:00:00+00:00",
        )
        self.created.append(record_id)
        if self.commit_then_fail > 0:
            self.commit_then_fail -= 1
            raise CatalogUnavailable("POST /records timed out")
        return record_id

    def append_tags(self, existing_id: str, tags: Mapping[str, str]) -> None:
        self._maybe_fail("append_tags")
        record = self.records[existing_id]
        for key, value in tags.items():
            record.tags.setdefault(key, value)
        self.tag_appends.append((existing_id, dict(tags)))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reverse_client(clock: FakeClock) -> FakeReverseClient:
    return FakeReverseClient(clock)


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "geocode_cache.jsonl"


@pytest.fixture
def geocoder(cache_path, reverse_client, clock) -> GeocodeCache:
    return GeocodeCache(GeocodeStore(cache_path), reverse_client, RateLimiter(1.0, clock=clock))


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
def make_orchestrator(tmp_path, geocoder, catalog, clock):
    state_dir = tmp_path / "batches"

    def factory(
        batch_id: str = "batch-1",
        config: Optional[ImportConfig] = None,
        state_log: Optional[BatchStateLog] = None,
    ) -> ImportOrchestrator:
        config = config or ImportConfig()
        log = state_log or BatchStateLog.for_batch(state_dir, batch_id).open()
        return ImportOrchestrator(
            geocoder=geocoder,
            catalog=catalog,
            scorer=SimilarityScorer(config.scoring),
            state_log=log,
            config=config,
            clock=clock,
            show_progress=False,
        )

    factory.state_dir = state_dir
    return factory
