"""Sequential, resumable reconciliation of import candidates against the catalog."""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from tqdm import tqdm

from import_schema import (
    OUTCOME_CREATED,
    OUTCOME_FAILED,
    OUTCOME_MERGED,
    OUTCOME_REVIEW,
    STAGE_CREATING,
    STAGE_DONE,
    STAGE_GEOCODING,
    STAGE_MERGING,
    STAGE_PENDING,
    STAGE_SCORING,
    VERDICT_DISTINCT,
    VERDICT_EXACT,
    VERDICT_LIKELY,
    VERDICT_POSSIBLE,
    ExistingRecord,
    GeoCacheEntry,
    ImportCandidate,
    SimilarityResult,
    candidate_key,
    is_valid_coordinate,
)
from pipelines.batch_state import BatchStateLog
from pipelines.config import ImportConfig
from pipelines.errors import (
    CatalogUnavailable,
    GeocodeUnavailable,
    PersistenceError,
    ReconcileError,
    ValidationError,
)
from pipelines.merge import merge_tags
from pipelines.report import ImportReport
from pipelines.similarity import SimilarityScorer
from tools.catalog import CatalogClient
from tools.geo_locator import GeocodeCache, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCATION_TAG_FIELDS = (
    ("location_display_name", "display_name"),
    ("location_country", "country"),
    ("location_region", "region"),
    ("location_city", "city"),
    ("location_suburb", "suburb"),
    ("location_neighbourhood", "neighbourhood"),
)


class _CreateCommitted(Exception):
    """A failed create turned out to have committed; carries the match found."""

    def __init__(self, best: SimilarityResult, existing_records: List[ExistingRecord]) -> None:
        super().__init__(best.existing_id)
        self.best = best
        self.existing_records = existing_records


class _RecordFailed(Exception):
    """Carries the stage a per-record error happened in."""

    def __init__(self, stage: str, error: ReconcileError) -> None:
        super().__init__(str(error))
        self.stage = stage
        self.error = error


def validate_candidate(candidate: ImportCandidate, max_title_length: int) -> None:
    """Raise ValidationError for candidates the pipeline cannot reconcile."""
    context = {"row_index": candidate.row_index, "external_id": candidate.external_id}
    if not candidate.source:
        raise ValidationError("Candidate has no source.", context)
    if candidate.lat is None or candidate.lon is None:
        raise ValidationError("Candidate is missing coordinates.", context)
    if not is_valid_coordinate(candidate.lat, candidate.lon):
        raise ValidationError(
            f"Coordinates out of range: {candidate.lat}, {candidate.lon}",
            {**context, "lat": candidate.lat, "lon": candidate.lon},
        )
    if candidate.title and len(candidate.title) > max_title_length:
        raise ValidationError(
            f"Title is {len(candidate.title)} characters long (max {max_title_length}).",
            context,
        )


def assign_record_keys(candidates: Sequence[ImportCandidate]) -> List[str]:
    """Record keys in input order; repeats of the same key get an occurrence suffix."""
    seen: Counter = Counter()
    keys: List[str] = []
    for candidate in candidates:
        base = candidate_key(candidate)
        seen[base] += 1
        keys.append(base if seen[base] == 1 else f"{base}#{seen[base]}")
    return keys


def location_tags(entry: GeoCacheEntry) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for tag_key, attr in LOCATION_TAG_FIELDS:
        value = getattr(entry, attr)
        if value:
            tags[tag_key] = value
    return tags


class ImportOrchestrator:
    """
    Drives one import batch.

    Records are processed strictly in input order, one at a time: the
    geocoder throttle is global, and each record must see the catalog as
    left by the records before it. Per-record errors end in a ``failed``
    outcome; only a PersistenceError stops the batch.
    """

    def __init__(
        self,
        geocoder: GeocodeCache,
        catalog: CatalogClient,
        scorer: SimilarityScorer,
        state_log: BatchStateLog,
        config: Optional[ImportConfig] = None,
        clock: Optional[Any] = None,
        show_progress: bool = True,
    ) -> None:
        self.geocoder = geocoder
        self.catalog = catalog
        self.scorer = scorer
        self.state_log = state_log
        self.config = config or ImportConfig()
        self.clock = clock or SystemClock()
        self.show_progress = show_progress

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def _call_catalog(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        before_retry: Optional[Callable[[], None]] = None,
    ) -> T:
        """Call the catalog, retrying CatalogUnavailable with exponential backoff.

        ``before_retry`` runs after each backoff sleep and may raise to stop
        the retry, which non-idempotent writes use to check for a commit that
        the failed attempt did make.
        """
        attempts = self.config.catalog.max_attempts
        backoff = self.config.catalog.backoff_sec
        for attempt in range(1, attempts + 1):
            try:
                return func(*args)
            except CatalogUnavailable as exc:
                if attempt >= attempts:
                    raise
                delay = backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Catalog %s failed (attempt %s/%s): %s; retrying in %.1fs",
                    operation,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self.clock.sleep(delay)
                if before_retry is not None:
                    before_retry()
        raise AssertionError("unreachable")

    def _enrich(self, candidate: ImportCandidate, entry: GeoCacheEntry) -> ImportCandidate:
        if not self.config.enrich_location_tags:
            return candidate
        tags = dict(candidate.tags)
        for key, value in location_tags(entry).items():
            tags.setdefault(key, value)
        return dataclasses.replace(candidate, tags=tags)

    def _find_existing(self, entry: GeoCacheEntry) -> List[ExistingRecord]:
        radius = self.config.scoring.cutoff_radius_m
        return self._call_catalog("find_near", self.catalog.find_near, entry.lat_key, entry.lon_key, radius)

    def _merge_into(
        self, candidate: ImportCandidate, existing: ExistingRecord, record_key: str
    ) -> Dict[str, Any]:
        result = merge_tags(existing, candidate)
        if result.added_tags and not self.dry_run:
            self._call_catalog("append_tags", self.catalog.append_tags, existing.id, result.added_tags)
        elif result.added_tags:
            logger.info("[dry-run] Would add %s tags to %s", result.tags_added, existing.id)
        for conflict in result.conflicts:
            logger.debug(
                "Kept %s=%r on %s (candidate had %r)",
                conflict.key,
                conflict.existing_value,
                existing.id,
                conflict.candidate_value,
            )
        return result.audit_entry(existing.id, record_key)

    def _merge_match(
        self,
        candidate: ImportCandidate,
        best: SimilarityResult,
        existing_records: Sequence[ExistingRecord],
        record_key: str,
    ) -> Dict[str, Any]:
        existing = next(rec for rec in existing_records if rec.id == best.existing_id)
        try:
            return self._merge_into(candidate, existing, record_key)
        except CatalogUnavailable as exc:
            raise _RecordFailed(STAGE_MERGING, exc) from exc

    def _create(self, candidate: ImportCandidate, enriched: ImportCandidate, entry: GeoCacheEntry) -> Optional[str]:
        if self.dry_run:
            logger.info("[dry-run] Would create %r", enriched.title)
            return None

        def check_for_commit() -> None:
            # POST /records is not idempotent; a failed attempt may still have committed.
            existing_records = self._find_existing(entry)
            best = self.scorer.best_match(candidate, existing_records)
            if best is not None and best.verdict in (VERDICT_EXACT, VERDICT_LIKELY):
                raise _CreateCommitted(best, existing_records)

        return self._call_catalog(
            "create_record",
            self.catalog.create_record,
            enriched,
            before_retry=check_for_commit,
        )

    def process_record(self, candidate: ImportCandidate, record_key: str) -> Dict[str, Any]:
        """Run one record through the state machine and return its outcome details."""
        stage = STAGE_PENDING
        details: Dict[str, Any] = {"title": candidate.title, "external_id": candidate.external_id}
        try:
            try:
                validate_candidate(candidate, self.config.max_title_length)
            except ValidationError as exc:
                raise _RecordFailed(stage, exc) from exc

            stage = STAGE_GEOCODING
            try:
                entry = self.geocoder.lookup(float(candidate.lat), float(candidate.lon))
            except GeocodeUnavailable as exc:
                raise _RecordFailed(stage, exc) from exc
            details["location"] = entry.display_name

            stage = STAGE_SCORING
            try:
                existing_records = self._find_existing(entry)
            except CatalogUnavailable as exc:
                raise _RecordFailed(stage, exc) from exc
            best: Optional[SimilarityResult] = self.scorer.best_match(candidate, existing_records)
            if best is not None:
                details["similarity"] = best.to_dict()
                if best.degraded:
                    logger.info(
                        "Reduced confidence for %s: signals %s fell back to neutral",
                        record_key,
                        ", ".join(best.degraded_signals),
                    )
            verdict = best.verdict if best is not None else VERDICT_DISTINCT
            enriched = self._enrich(candidate, entry)

            if verdict in (VERDICT_EXACT, VERDICT_LIKELY):
                details["merge"] = self._merge_match(enriched, best, existing_records, record_key)
                details["outcome"] = OUTCOME_MERGED
            elif verdict == VERDICT_POSSIBLE:
                logger.info(
                    "Possible duplicate %s ~ %s (%.3f); leaving for review",
                    record_key,
                    best.existing_id,
                    best.composite_score,
                )
                details["outcome"] = OUTCOME_REVIEW
            else:
                stage = STAGE_CREATING
                try:
                    details["created_id"] = self._create(candidate, enriched, entry)
                    details["outcome"] = OUTCOME_CREATED
                except CatalogUnavailable as exc:
                    raise _RecordFailed(stage, exc) from exc
                except _CreateCommitted as committed:
                    logger.warning(
                        "create_record for %s failed but the record exists as %s; merging instead of retrying",
                        record_key,
                        committed.best.existing_id,
                    )
                    details["similarity"] = committed.best.to_dict()
                    details["recovered_create"] = True
                    details["merge"] = self._merge_match(
                        enriched, committed.best, committed.existing_records, record_key
                    )
                    details["outcome"] = OUTCOME_MERGED
            details["stage"] = STAGE_DONE
        except _RecordFailed as failure:
            logger.warning("Record %s failed at %s: %s", record_key, failure.stage, failure.error)
            details.update(
                {
                    "outcome": OUTCOME_FAILED,
                    "stage": failure.stage,
                    "error_type": type(failure.error).__name__,
                    "error": failure.error.message,
                    "error_detail": failure.error.to_dict(),
                }
            )
        if self.dry_run:
            details["dry_run"] = True
        return details

    def run(self, candidates: Sequence[ImportCandidate], limit: Optional[int] = None) -> ImportReport:
        """Process the batch and return its report. Always returns a report."""
        started_at = datetime.now(timezone.utc).isoformat()
        prior_keys = {entry["record_key"] for entry in self.state_log.entries}
        keys = assign_record_keys(candidates)
        processed_now = 0
        completed = False
        abort_reason: Optional[str] = None

        try:
            progress = tqdm(
                list(zip(candidates, keys)),
                desc="Reconciling",
                unit="record",
                disable=not self.show_progress,
            )
            for index, (candidate, record_key) in enumerate(progress):
                if self.state_log.is_processed(record_key):
                    continue
                if limit is not None and processed_now >= limit:
                    logger.info("Limit of %s records reached; stopping before index %s.", limit, index)
                    break
                details = self.process_record(candidate, record_key)
                outcome = details.pop("outcome")
                self.state_log.record(record_key, index, outcome, **details)
                processed_now += 1
            else:
                completed = True
        except PersistenceError as exc:
            abort_reason = str(exc)
            logger.error("Aborting batch %s: %s", self.state_log.batch_id, exc)

        report = ImportReport.from_entries(
            self.state_log.batch_id,
            started_at,
            self.state_log.entries,
            resumed_keys=prior_keys,
        )
        report.finished_at = datetime.now(timezone.utc).isoformat()
        report.dry_run = self.dry_run
        report.geocoder = self.geocoder.stats()
        if abort_reason is not None:
            report.aborted = True
            report.abort_reason = abort_reason
        elif completed:
            try:
                self.state_log.archive()
            except PersistenceError as exc:
                logger.error("Batch completed but its log could not be archived: %s", exc)

        logger.info(
            "Batch %s: %s created, %s merged, %s for review, %s failed",
            report.batch_id,
            report.counts.get(OUTCOME_CREATED, 0),
            report.counts.get(OUTCOME_MERGED, 0),
            report.counts.get(OUTCOME_REVIEW, 0),
            report.counts.get(OUTCOME_FAILED, 0),
        )
        return report
