"""Conflict-safe tag merge of a duplicate candidate into an existing record."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from import_schema import ExistingRecord, ImportCandidate, normalize_tags

ACTION_ADDED = "added"
ACTION_CONFLICT_SKIPPED = "conflict_skipped"


@dataclass(frozen=True)
class MergeLogEntry:
    action: str
    key: str
    existing_value: Optional[str]
    candidate_value: str


@dataclass
class MergeResult:
    updated_tags: Dict[str, str]
    added_tags: Dict[str, str]
    merge_log: List[MergeLogEntry] = field(default_factory=list)

    @property
    def tags_added(self) -> int:
        return len(self.added_tags)

    @property
    def conflicts(self) -> List[MergeLogEntry]:
        return [entry for entry in self.merge_log if entry.action == ACTION_CONFLICT_SKIPPED]

    def audit_entry(self, existing_id: str, record_key: str) -> Dict[str, Any]:
        """Audit record of the merge decision, kept in the batch log and report."""
        return {
            "existing_id": existing_id,
            "record_key": record_key,
            "tags_added": self.tags_added,
            "added": dict(self.added_tags),
            "log": [asdict(entry) for entry in self.merge_log],
            "merged_at": datetime.now(timezone.utc).isoformat(),
        }


def merge_tag_maps(existing_tags: Mapping[str, str], incoming_tags: Mapping[str, str]) -> MergeResult:
    """Add keys the existing map lacks; every shared key keeps its value and is logged."""
    current = normalize_tags(existing_tags)
    incoming = normalize_tags(incoming_tags)
    updated = dict(current)
    added: Dict[str, str] = {}
    log: List[MergeLogEntry] = []

    for key, value in incoming.items():
        if key not in current:
            updated[key] = value
            added[key] = value
            log.append(MergeLogEntry(ACTION_ADDED, key, None, value))
            continue
        log.append(MergeLogEntry(ACTION_CONFLICT_SKIPPED, key, current[key], value))

    return MergeResult(updated_tags=updated, added_tags=added, merge_log=log)


def merge_tags(existing: ExistingRecord, candidate: ImportCandidate) -> MergeResult:
    """Merge a duplicate candidate's tags into an existing record without mutating either."""
    return merge_tag_maps(existing.tags, candidate.tags)
