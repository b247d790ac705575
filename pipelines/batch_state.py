"""Append-only outcome log that makes an import batch resumable."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pipelines.errors import PersistenceError

logger = logging.getLogger(__name__)

EVENT_STARTED = "batch_started"
EVENT_OUTCOME = "outcome"


class BatchStateLog:
    """
    Event log of ``(record_key, outcome)`` pairs for one batch.

    Every ``record()`` call is flushed and fsynced before returning, so a
    process killed at any point resumes at the first record without an
    outcome. The log is read back at startup into a skip set.
    """

    def __init__(self, path: Path, batch_id: str) -> None:
        self.path = Path(path)
        self.batch_id = batch_id
        self._processed: Set[str] = set()
        self._entries: List[Dict[str, Any]] = []
        self._last_index = -1
        self._opened = False

    @classmethod
    def for_batch(cls, state_dir: Path, batch_id: str) -> "BatchStateLog":
        return cls(Path(state_dir) / f"{batch_id}.jsonl", batch_id)

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    @property
    def last_processed_index(self) -> int:
        return self._last_index

    @property
    def resumed(self) -> bool:
        return bool(self._entries)

    def is_processed(self, record_key: str) -> bool:
        return record_key in self._processed

    def open(self) -> "BatchStateLog":
        """Read an existing log (resume) or start a new one."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            exists = self.path.exists()
            text = self.path.read_text(encoding="utf-8") if exists else ""
            if text and not text.endswith("\n"):
                # Terminate a torn last line so the next append starts clean.
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write("\n")
            lines = text.splitlines()
        except OSError as exc:
            raise PersistenceError(f"Batch log {self.path} could not be opened: {exc}", {"path": str(self.path)}) from exc

        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                # Only the last line can be torn by an interrupted write.
                logger.warning("Ignoring unreadable line %s in batch log %s", line_no, self.path)
                continue
            self._apply(event)

        if self._entries:
            logger.info(
                "Resuming batch %s: %s records already processed (last index %s).",
                self.batch_id,
                len(self._processed),
                self._last_index,
            )
        if not exists:
            self._append(
                {
                    "event": EVENT_STARTED,
                    "batch_id": self.batch_id,
                    "started_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        self._opened = True
        return self

    def _apply(self, event: Dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == EVENT_STARTED:
            logged_batch = event.get("batch_id")
            if logged_batch != self.batch_id:
                raise PersistenceError(
                    f"Batch log {self.path} belongs to batch {logged_batch!r}, not {self.batch_id!r}.",
                    {"path": str(self.path)},
                )
            return
        if kind != EVENT_OUTCOME:
            return
        key = event.get("record_key")
        if not key:
            return
        self._processed.add(key)
        self._entries.append(event)
        index = event.get("index")
        if isinstance(index, int):
            self._last_index = max(self._last_index, index)

    def _append(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, ensure_ascii=False, sort_keys=True)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise PersistenceError(f"Batch log {self.path} could not be written: {exc}", {"path": str(self.path)}) from exc

    def record(self, record_key: str, index: int, outcome: str, **details: Any) -> Dict[str, Any]:
        """Persist the outcome for one record."""
        if not self._opened:
            raise PersistenceError(f"Batch log {self.path} used before open().")
        event: Dict[str, Any] = {
            "event": EVENT_OUTCOME,
            "record_key": record_key,
            "index": index,
            "outcome": outcome,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        event.update({key: value for key, value in details.items() if value is not None})
        self._append(event)
        self._apply(event)
        return event

    def archive(self, archive_dir: Optional[Path] = None) -> Path:
        """Move the completed log aside so the next run of the batch starts fresh."""
        target_dir = Path(archive_dir) if archive_dir else self.path.parent / "archive"
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = target_dir / f"{self.path.stem}-{stamp}.jsonl"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            self.path.replace(target)
        except OSError as exc:
            raise PersistenceError(f"Batch log {self.path} could not be archived: {exc}", {"path": str(self.path)}) from exc
        logger.info("Archived batch log to %s", target)
        return target
