"""Durable execution history backed by a single JSON document.

The whole record set lives in memory and the document is rewritten on every
mutation. Execution counts are bounded by human-triggered runs, so a
whole-document rewrite stays cheap.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_runner.common import utc_now
from agent_runner.execution.models import (
    TERMINAL_STATUSES,
    ExecutionCompletion,
    ExecutionRecord,
    ExecutionStart,
    ExecutionStatus,
    ExecutionType,
)

logger = logging.getLogger(__name__)


class HistoryLedger:
    """Single writer of the history document."""

    def __init__(self, history_file: Path, *, log: logging.Logger | None = None) -> None:
        self.history_file = history_file
        self._log = log or logger
        self._records: list[ExecutionRecord] = []
        self._dirty = False
        self._load()

    @property
    def dirty(self) -> bool:
        """True when the last write failed and memory is ahead of disk."""

        return self._dirty

    def begin_execution(self, options: ExecutionStart) -> ExecutionRecord:
        """Create a running record and persist it immediately."""

        record = ExecutionRecord(
            id=self._generate_id(),
            type=options.type,
            target_id=options.target_id,
            label=options.label,
            log_file=options.log_file,
            status=ExecutionStatus.RUNNING,
            start_time=utc_now(),
            source_file=options.source_file,
            version_hash=options.version_hash,
            metadata=dict(options.metadata) if options.metadata else None,
        )
        self._records.append(record)
        self._save()
        self._log.info(
            "Execution %s started: %s/%s -> %s",
            record.id,
            record.type.value,
            record.target_id,
            record.log_file,
        )
        return record

    def complete_execution(
        self,
        record_id: str,
        options: ExecutionCompletion,
    ) -> ExecutionRecord | None:
        """Apply the terminal transition; unknown ids return None."""

        record = self.get(record_id)
        if record is None:
            return None
        if options.status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal execution status: {options.status.value}")
        if record.status in TERMINAL_STATUSES:
            self._log.warning(
                "Execution %s already closed as %s; ignoring %s",
                record_id,
                record.status.value,
                options.status.value,
            )
            return record

        end_time = options.end_time or utc_now()
        record.status = options.status
        record.end_time = max(end_time, record.start_time)
        if options.metadata:
            record.metadata = {**(record.metadata or {}), **options.metadata}
        self._save()
        self._log.info("Execution %s finished: %s", record_id, record.status.value)
        return record

    def update_metadata(self, record_id: str, metadata: dict[str, Any]) -> ExecutionRecord | None:
        """Merge metadata into a record; new keys overwrite same-named old keys."""

        record = self.get(record_id)
        if record is None:
            return None
        record.metadata = {**(record.metadata or {}), **metadata}
        self._save()
        return record

    def get(self, record_id: str) -> ExecutionRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def get_history(
        self,
        type_: ExecutionType,
        target_id: str,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        """Records of one target, newest start time first."""

        filtered = [
            record
            for record in self._records
            if record.type is type_ and record.target_id == target_id
        ]
        filtered.sort(key=_start_key, reverse=True)
        return filtered[:limit] if limit is not None else filtered

    def get_all(self) -> list[ExecutionRecord]:
        return list(self._records)

    def running(self, type_: ExecutionType, target_id: str) -> list[ExecutionRecord]:
        return [record for record in self.get_history(type_, target_id) if record.is_running]

    def remove_by_id(self, record_id: str) -> ExecutionRecord | None:
        record = self.get(record_id)
        if record is None:
            return None
        self._records.remove(record)
        self._save()
        return record

    def remove_by_log_file(self, log_file: str | Path) -> bool:
        """Drop every record referencing `log_file`."""

        target = _normalize_path(log_file)
        kept = [record for record in self._records if _normalize_path(record.log_file) != target]
        removed = len(kept) < len(self._records)
        if removed:
            self._records = kept
            self._save()
        return removed

    def cleanup_invalid_records(self) -> int:
        """Delete records whose log file no longer exists on disk."""

        kept: list[ExecutionRecord] = []
        for record in self._records:
            try:
                exists = Path(record.log_file).exists()
            except OSError as error:
                self._log.warning("Failed to check log file %s: %s", record.log_file, error)
                exists = False
            if exists:
                kept.append(record)

        removed_count = len(self._records) - len(kept)
        if removed_count > 0:
            self._records = kept
            self._save()
            self._log.info("Removed %d history records with missing log files", removed_count)
        return removed_count

    def recover_stale_runs(self, *, active_ids: frozenset[str] = frozenset()) -> int:
        """Close running records left behind by a previous host process."""

        recovered = 0
        now = utc_now()
        for record in self._records:
            if not record.is_running or record.id in active_ids:
                continue
            record.status = ExecutionStatus.FAILED
            record.end_time = max(now, record.start_time)
            record.metadata = {**(record.metadata or {}), "error": "interrupted"}
            recovered += 1
            self._log.warning("Recovered stale execution %s (%s)", record.id, record.target_id)
        if recovered:
            self._save()
        return recovered

    def flush(self) -> None:
        """Retry a previously failed write."""

        if self._dirty:
            self._save()

    def _load(self) -> None:
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            if not self.history_file.exists():
                self._records = []
                self._save()
                return
            parsed = json.loads(self.history_file.read_text("utf-8"))
        except (OSError, ValueError) as error:
            self._log.error("Failed to load history file %s: %s", self.history_file, error)
            self._records = []
            return

        if not isinstance(parsed, list):
            self._log.error(
                "History file %s does not contain a JSON array; starting empty",
                self.history_file,
            )
            self._records = []
            return

        records: list[ExecutionRecord] = []
        for index, raw in enumerate(parsed):
            try:
                if not isinstance(raw, dict):
                    raise TypeError("history record must be an object")
                records.append(ExecutionRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError) as error:
                self._log.warning("Skipping malformed history record #%d: %s", index, error)
        self._records = records

    def _save(self) -> None:
        payload = json.dumps(
            [record.to_dict() for record in self._records],
            ensure_ascii=False,
            indent=2,
        )
        tmp_path = self.history_file.with_name(f".{self.history_file.name}.tmp")
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, "utf-8")
            os.replace(tmp_path, self.history_file)
        except OSError as error:
            self._log.error("Failed to write history file %s: %s", self.history_file, error)
            self._dirty = True
            return
        self._dirty = False

    def _generate_id(self) -> str:
        while True:
            candidate = str(uuid4())
            if self.get(candidate) is None:
                return candidate


def _start_key(record: ExecutionRecord) -> datetime:
    return record.start_time


def _normalize_path(value: str | Path) -> str:
    return os.path.normcase(os.path.abspath(str(value)))
