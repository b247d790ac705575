"""
Import batch reporting.

Builds the structured summary of a batch from its outcome log, so a resumed
run reports every record of the batch, and renders the operator digest.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from import_schema import OUTCOME_CREATED, OUTCOME_FAILED, OUTCOME_MERGED, OUTCOME_REVIEW, OUTCOMES

logger = logging.getLogger(__name__)

OUTCOME_COLUMNS = [
    "index",
    "record_key",
    "outcome",
    "external_id",
    "title",
    "existing_id",
    "created_id",
    "verdict",
    "composite_score",
    "tags_added",
    "stage",
    "error_type",
    "error",
]


@dataclass
class ImportReport:
    batch_id: str
    started_at: str
    finished_at: Optional[str] = None
    dry_run: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    review: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    merges: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[Dict[str, Any]] = field(default_factory=list)
    geocoder: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, batch_id: str, started_at: str, entries: Iterable[Dict[str, Any]], resumed_keys: Iterable[str] = ()) -> "ImportReport":
        report = cls(batch_id=batch_id, started_at=started_at)
        resumed = set(resumed_keys)
        counts: Dict[str, int] = OrderedDict((outcome, 0) for outcome in OUTCOMES)
        tags_added = 0
        for entry in entries:
            outcome = entry.get("outcome")
            if outcome not in counts:
                logger.warning("Unknown outcome %r for %s", outcome, entry.get("record_key"))
                continue
            counts[outcome] += 1
            report.outcomes.append(entry)
            if outcome == OUTCOME_REVIEW:
                report.review.append(
                    {
                        "record_key": entry.get("record_key"),
                        "index": entry.get("index"),
                        "title": entry.get("title"),
                        "external_id": entry.get("external_id"),
                        "similarity": entry.get("similarity"),
                    }
                )
            elif outcome == OUTCOME_FAILED:
                report.failures.append(
                    {
                        "record_key": entry.get("record_key"),
                        "index": entry.get("index"),
                        "external_id": entry.get("external_id"),
                        "title": entry.get("title"),
                        "stage": entry.get("stage"),
                        "error_type": entry.get("error_type"),
                        "error": entry.get("error"),
                    }
                )
            elif outcome == OUTCOME_MERGED:
                merge = entry.get("merge") or {}
                tags_added += int(merge.get("tags_added", 0))
                report.merges.append(merge)
        total = sum(counts.values())
        counts["total"] = total
        counts["succeeded"] = total - counts[OUTCOME_FAILED]
        counts["tags_added"] = tags_added
        counts["resumed"] = len(resumed)
        report.counts = dict(counts)
        return report

    @property
    def succeeded(self) -> int:
        return int(self.counts.get("succeeded", 0))

    @property
    def failed(self) -> int:
        return int(self.counts.get(OUTCOME_FAILED, 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "counts": self.counts,
            "review": self.review,
            "failures": self.failures,
            "merges": self.merges,
            "geocoder": self.geocoder,
        }

    def digest(self) -> str:
        lines: List[str] = []
        title = f"Import batch {self.batch_id}"
        if self.dry_run:
            title += " (dry run)"
        lines.append(title)
        lines.append("-" * len(title))
        if self.aborted:
            lines.append(f"ABORTED: {self.abort_reason}")
        lines.append(f"{self.succeeded} succeeded, {self.failed} failed")
        for outcome in (OUTCOME_CREATED, OUTCOME_MERGED, OUTCOME_REVIEW, OUTCOME_FAILED):
            lines.append(f"  {outcome}: {self.counts.get(outcome, 0):,}")
        lines.append(f"  tags added: {self.counts.get('tags_added', 0):,}")
        if self.counts.get("resumed"):
            lines.append(f"  resumed from previous run: {self.counts['resumed']:,}")
        if self.geocoder:
            lines.append(
                "Geocoder: {hits} cache hits, {calls} service calls, {total_entries} cached entries".format(
                    hits=self.geocoder.get("hits", 0),
                    calls=self.geocoder.get("calls", 0),
                    total_entries=self.geocoder.get("total_entries", 0),
                )
            )

        if self.review:
            lines.append("")
            lines.append("Possible duplicates for manual review")
            for item in self.review:
                similarity = item.get("similarity") or {}
                lines.append(
                    "  #{index} {title!r} -> existing {existing} (score {score:.3f}, {distance})".format(
                        index=item.get("index"),
                        title=item.get("title"),
                        existing=similarity.get("existing_id"),
                        score=float(similarity.get("composite_score") or 0.0),
                        distance=_format_distance(similarity.get("distance_meters")),
                    )
                )
        if self.failures:
            lines.append("")
            lines.append("Failed records")
            for item in self.failures:
                lines.append(
                    f"  #{item.get('index')} {item.get('record_key')} at {item.get('stage')}: "
                    f"{item.get('error_type')}: {item.get('error')}"
                )
        return "\n".join(lines)

    def outcomes_frame(self) -> pd.DataFrame:
        rows = []
        for entry in self.outcomes:
            similarity = entry.get("similarity") or {}
            merge = entry.get("merge") or {}
            rows.append(
                {
                    "index": entry.get("index"),
                    "record_key": entry.get("record_key"),
                    "outcome": entry.get("outcome"),
                    "external_id": entry.get("external_id"),
                    "title": entry.get("title"),
                    "existing_id": similarity.get("existing_id") or merge.get("existing_id"),
                    "created_id": entry.get("created_id"),
                    "verdict": similarity.get("verdict"),
                    "composite_score": similarity.get("composite_score"),
                    "tags_added": merge.get("tags_added"),
                    "stage": entry.get("stage"),
                    "error_type": entry.get("error_type"),
                    "error": entry.get("error"),
                }
            )
        return pd.DataFrame(rows, columns=OUTCOME_COLUMNS)

    def write(self, out_dir: Path) -> Dict[str, Path]:
        """Write JSON report, text digest and per-record CSV."""
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = {
            "json": out_dir / f"{self.batch_id}-report.json",
            "digest": out_dir / f"{self.batch_id}-digest.txt",
            "csv": out_dir / f"{self.batch_id}-outcomes.csv",
        }
        with paths["json"].open("w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, ensure_ascii=False, indent=2)
        paths["digest"].write_text(self.digest() + "\n", encoding="utf-8")
        self.outcomes_frame().to_csv(paths["csv"], index=False)
        logger.info("Wrote report files to %s", out_dir)
        return paths


def _format_distance(value: Any) -> str:
    if value is None:
        return "distance unknown"
    return f"{float(value):.1f} m"
