import pandas as pd
import pytest

from import_schema import ExistingRecord, ImportCandidate
from pipelines.batch_state import BatchStateLog
from pipelines.config import CatalogConfig, ImportConfig
from pipelines.errors import PersistenceError, ValidationError
from pipelines.reconcile import assign_record_keys, validate_candidate

BRONZE_TAGS = {"artwork_type": "statue", "material": "bronze"}
EPSILON = 1e-9


def spread_batch(count=10, source="public-art"):
    """Candidates more than a kilometre apart, so none match each other."""
    return [
        ImportCandidate(
            source=source,
            title=f"Artwork number {i}",
            lat=round(49.0 + i * 0.01, 6),
            lon=-123.0,
            tags={"artwork_type": "mural"},
            row_index=i,
        )
        for i in range(count)
    ]


def bronze_horse_record():
    return ExistingRecord(
        id="rec-b",
        source="public-art",
        title="Bronze Horse",
        lat=49.2827,
        lon=-123.1207,
        tags=dict(BRONZE_TAGS),
    )


class CrashingLog(BatchStateLog):
    """Fails to persist the n-th outcome, as a full disk would."""

    def __init__(self, path, batch_id, crash_on):
        super().__init__(path, batch_id)
        self.crash_on = crash_on
        self.writes = 0

    def record(self, record_key, index, outcome, **details):
        self.writes += 1
        if self.writes == self.crash_on:
            raise PersistenceError("No space left on device")
        return super().record(record_key, index, outcome, **details)


def test_external_id_reimport_merges_with_no_new_tags(make_orchestrator, catalog):
    totem = ImportCandidate(source="osm", external_id="osm-123", title="Totem Pole", lat=49.2827, lon=-123.1207)

    first = make_orchestrator("first").run([totem])
    second = make_orchestrator("second").run([totem])

    assert first.counts["created"] == 1
    assert len(catalog.created) == 1
    assert second.counts["merged"] == 1
    merged = second.outcomes[0]
    assert merged["similarity"]["verdict"] == "exact_duplicate"
    assert merged["merge"]["tags_added"] == 0
    assert catalog.tag_appends == []


def test_nearby_similar_title_is_merged(make_orchestrator, catalog):
    catalog.add(bronze_horse_record())
    horse = ImportCandidate(
        source="public-art",
        title="The Bronze Horse",
        lat=49.28275,
        lon=-123.1207,
        tags={**BRONZE_TAGS, "material": "copper", "year": "1923"},
    )

    report = make_orchestrator().run([horse])

    assert report.counts["merged"] == 1
    entry = report.outcomes[0]
    assert entry["similarity"]["verdict"] == "likely_duplicate"
    assert entry["similarity"]["existing_id"] == "rec-b"
    record = catalog.records["rec-b"]
    assert record.tags["material"] == "bronze"
    assert record.tags["year"] == "1923"
    assert record.tags["location_city"] == "Vancouver"
    conflicts = [item for item in entry["merge"]["log"] if item["action"] == "conflict_skipped"]
    assert conflicts == [
        {"action": "conflict_skipped", "key": "artwork_type", "existing_value": "statue", "candidate_value": "statue"},
        {"action": "conflict_skipped", "key": "material", "existing_value": "bronze", "candidate_value": "copper"},
    ]
    assert catalog.created == []


def test_far_candidate_is_created(make_orchestrator, catalog):
    catalog.add(bronze_horse_record())
    far = ImportCandidate(
        source="public-art",
        title="Bronze Horse",
        lat=49.2827 + 0.0018,
        lon=-123.1207,
        tags=dict(BRONZE_TAGS),
    )

    report = make_orchestrator().run([far])

    assert report.counts["created"] == 1
    created_id = report.outcomes[0]["created_id"]
    assert catalog.created == [created_id]
    assert catalog.records[created_id].tags["location_country"] == "Canada"
    assert catalog.records["rec-b"].tags == BRONZE_TAGS


def test_geocode_failure_fails_only_that_record(make_orchestrator, catalog, reverse_client):
    batch = spread_batch()
    reverse_client.fail_for.add((batch[4].lat, batch[4].lon))

    report = make_orchestrator().run(batch)

    assert report.succeeded == 9
    assert report.failed == 1
    assert "9 succeeded, 1 failed" in report.digest()
    assert len(catalog.created) == 9
    failure = report.failures[0]
    assert failure["index"] == 4
    assert failure["stage"] == "geocoding"
    assert failure["error_type"] == "GeocodeUnavailable"
    assert not report.aborted


def test_outbound_geocoding_is_throttled(make_orchestrator, reverse_client):
    make_orchestrator().run(spread_batch())

    times = reverse_client.call_times
    assert len(times) == 10
    assert all(b - a >= 1.0 - EPSILON for a, b in zip(times, times[1:]))


def test_rerun_of_completed_batch_creates_nothing(make_orchestrator, catalog, reverse_client):
    batch = spread_batch(4)
    make_orchestrator("nightly").run(batch)
    assert len(catalog.created) == 4

    again = make_orchestrator("nightly").run(batch)

    assert again.counts["merged"] == 4
    assert len(catalog.created) == 4
    assert again.counts["tags_added"] == 0
    assert catalog.tag_appends == []
    # Second pass is served from the cache.
    assert len(reverse_client.calls) == 4


def test_limit_then_resume_finishes_batch(make_orchestrator, catalog):
    batch = spread_batch()

    partial = make_orchestrator("resumable").run(batch, limit=3)
    assert partial.counts["total"] == 3
    log_path = make_orchestrator.state_dir / "resumable.jsonl"
    assert log_path.exists()

    final = make_orchestrator("resumable").run(batch)

    assert final.counts["total"] == 10
    assert final.counts["created"] == 10
    assert final.counts["resumed"] == 3
    assert len(catalog.created) == 10
    assert not log_path.exists()
    assert list((make_orchestrator.state_dir / "archive").glob("resumable-*.jsonl"))


def test_persistence_failure_aborts_and_resume_does_not_duplicate(make_orchestrator, catalog):
    batch = spread_batch(4)
    log_path = make_orchestrator.state_dir / "crashy.jsonl"
    crashing = CrashingLog(log_path, "crashy", crash_on=2).open()

    aborted = make_orchestrator("crashy", state_log=crashing).run(batch)

    assert aborted.aborted
    assert "No space left" in aborted.abort_reason
    assert aborted.counts["total"] == 1
    assert len(catalog.created) == 2
    assert log_path.exists()

    resumed = make_orchestrator("crashy").run(batch)

    assert resumed.counts["total"] == 4
    assert len(catalog.created) == 4
    outcomes = {entry["index"]: entry["outcome"] for entry in resumed.outcomes}
    assert outcomes == {0: "created", 1: "merged", 2: "created", 3: "created"}


def test_catalog_errors_are_retried_with_backoff(make_orchestrator, catalog, clock):
    catalog.failures["create_record"] = 2

    report = make_orchestrator().run(spread_batch(1))

    assert report.counts["created"] == 1
    assert clock.sleeps == [2.0, 4.0]


def test_catalog_errors_fail_record_after_max_attempts(make_orchestrator, catalog, clock):
    catalog.failures["create_record"] = 3

    report = make_orchestrator().run(spread_batch(2))

    assert report.counts["failed"] == 1
    assert report.counts["created"] == 1
    failure = report.failures[0]
    assert failure["stage"] == "creating"
    assert failure["error_type"] == "CatalogUnavailable"
    assert clock.sleeps[:2] == [2.0, 4.0]


def test_create_that_committed_before_failing_is_not_repeated(make_orchestrator, catalog, clock):
    catalog.commit_then_fail = 1

    report = make_orchestrator().run(spread_batch(1))

    assert catalog.created == ["rec-0001"]
    assert report.counts["created"] == 0
    assert report.counts["merged"] == 1
    entry = report.outcomes[0]
    assert entry["recovered_create"] is True
    assert entry["merge"]["existing_id"] == "rec-0001"
    assert entry["merge"]["tags_added"] == 0
    assert entry["stage"] == "done"
    assert clock.sleeps == [2.0]


def test_successful_records_end_in_done_stage(make_orchestrator, reverse_client):
    batch = spread_batch(2)
    reverse_client.fail_for.add((batch[1].lat, batch[1].lon))

    report = make_orchestrator().run(batch)

    assert [entry["stage"] for entry in report.outcomes] == ["done", "geocoding"]


def test_find_near_failure_is_reported_at_scoring(make_orchestrator, catalog):
    config = ImportConfig(catalog=CatalogConfig(max_attempts=1))
    catalog.failures["find_near"] = 1

    report = make_orchestrator(config=config).run(spread_batch(1))

    assert report.failures[0]["stage"] == "scoring"


def test_invalid_candidate_fails_without_geocoding(make_orchestrator, reverse_client):
    broken = ImportCandidate(source="public-art", title="Nowhere", lat=None, lon=None)
    out_of_range = ImportCandidate(source="public-art", title="Off the map", lat=123.0, lon=10.0)

    report = make_orchestrator().run([broken, out_of_range])

    assert report.failed == 2
    assert {f["stage"] for f in report.failures} == {"pending"}
    assert {f["error_type"] for f in report.failures} == {"ValidationError"}
    assert reverse_client.calls == []


def test_possible_duplicate_is_left_for_review(make_orchestrator, catalog):
    catalog.add(ExistingRecord(id="rec-r", source="public-art", title="Fountain", lat=49.2827, lon=-123.1207, tags={"a": "1"}))
    unsure = ImportCandidate(source="public-art", title=None, lat=49.2827, lon=-123.1207, tags={"a": "1", "b": "2"})

    report = make_orchestrator().run([unsure])

    assert report.counts["skipped_for_review"] == 1
    assert report.review[0]["similarity"]["existing_id"] == "rec-r"
    assert report.review[0]["similarity"]["composite_score"] == pytest.approx(0.75)
    assert catalog.created == []
    assert catalog.tag_appends == []
    assert "Possible duplicates for manual review" in report.digest()


def test_dry_run_makes_no_catalog_writes(make_orchestrator, catalog):
    catalog.add(bronze_horse_record())
    horse = ImportCandidate(source="public-art", title="The Bronze Horse", lat=49.282835, lon=-123.1207, tags=dict(BRONZE_TAGS))
    far = ImportCandidate(source="public-art", title="Something else", lat=49.5, lon=-123.1207)

    report = make_orchestrator("preview", config=ImportConfig(dry_run=True)).run([horse, far])

    assert report.dry_run
    assert report.counts["merged"] == 1
    assert report.counts["created"] == 1
    assert catalog.created == []
    assert catalog.tag_appends == []
    assert catalog.records["rec-b"].tags == BRONZE_TAGS
    assert all(entry["dry_run"] for entry in report.outcomes)


def test_location_enrichment_can_be_disabled(make_orchestrator, catalog):
    config = ImportConfig(enrich_location_tags=False)

    report = make_orchestrator(config=config).run(spread_batch(1))

    created_id = report.outcomes[0]["created_id"]
    assert catalog.records[created_id].tags == {"artwork_type": "mural"}


def test_repeated_records_in_one_input(make_orchestrator, catalog):
    twin = ImportCandidate(source="public-art", title="Bench", lat=49.3, lon=-123.1, tags={"kind": "bench"})
    batch = [twin, ImportCandidate(source="public-art", title="Bench", lat=49.3, lon=-123.1, tags={"kind": "bench"})]

    keys = assign_record_keys(batch)
    report = make_orchestrator().run(batch)

    assert keys[1] == f"{keys[0]}#2"
    assert report.counts["created"] == 1
    assert report.counts["merged"] == 1
    assert len(catalog.created) == 1


def test_report_files_are_written(make_orchestrator, reverse_client, tmp_path):
    batch = spread_batch()
    reverse_client.fail_for.add((batch[0].lat, batch[0].lon))
    report = make_orchestrator("written").run(batch)

    paths = report.write(tmp_path / "reports")

    assert paths["json"].name == "written-report.json"
    assert "9 succeeded, 1 failed" in paths["digest"].read_text(encoding="utf-8")
    frame = pd.read_csv(paths["csv"])
    assert len(frame) == 10
    assert frame["outcome"].value_counts().to_dict() == {"created": 9, "failed": 1}


def test_validate_candidate_rejects_long_titles():
    long_title = ImportCandidate(source="s", title="x" * 201, lat=1.0, lon=1.0)
    with pytest.raises(ValidationError):
        validate_candidate(long_title, max_title_length=200)
    validate_candidate(ImportCandidate(source="s", title="x" * 200, lat=1.0, lon=1.0), max_title_length=200)
