"""
Scan history store.

A single JSON document {"scans": [...]} holding ScanRecords newest-first,
capped at max_records. Every mutation rewrites the whole file atomically
under a lock, so concurrent scan completions cannot drop each other.
"""
import json
import logging
import os
import tempfile
from threading import RLock
from typing import List, Optional

from pydantic import ValidationError

from config import get_config
from errors import PersistenceFailure
from models import ScanRecord
from scan_extractor import EXTRACTOR_VERSION, extract

logger = logging.getLogger(__name__)

_history: Optional['ScanHistoryStore'] = None
_history_lock = RLock()


def upgrade_record(record: ScanRecord) -> ScanRecord:
    """
    Re-derive findings for records written by an older extractor.
    Returns the same object when nothing needs to change.
    """
    if record.extractor_version >= EXTRACTOR_VERSION:
        return record
    if record.raw_report is None:
        return record.model_copy(update={"extractor_version": EXTRACTOR_VERSION})
    findings = extract(record.raw_report).findings
    return record.model_copy(update={"findings": findings, "extractor_version": EXTRACTOR_VERSION})


class ScanHistoryStore:
    """Lock-guarded, file-backed list of scan records."""

    def __init__(self, path: str, max_records: int = 50):
        self.path = path
        self.max_records = max_records
        self._lock = RLock()
        self._records: Optional[List[ScanRecord]] = None

    def _load(self) -> List[ScanRecord]:
        """Read the history file; an unreadable file counts as an empty history."""
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read scan history {self.path}: {e}")
            return []

        raw_scans = data.get("scans") if isinstance(data, dict) else None
        if not isinstance(raw_scans, list):
            logger.error(f"Scan history {self.path} has no 'scans' list; starting empty")
            return []

        records = []
        for raw in raw_scans:
            try:
                records.append(ScanRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping invalid scan record in {self.path}: {e.error_count()} errors")
        return records[: self.max_records]

    def _flush(self, records: List[ScanRecord]) -> None:
        payload = {"scans": [r.model_dump(mode="json") for r in records]}
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".scan_history.", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            logger.error(f"Could not write scan history {self.path}: {e}")
            raise PersistenceFailure(f"Could not write scan history: {e}") from e

    def _ensure_loaded(self) -> List[ScanRecord]:
        if self._records is None:
            self._records = self._load()
        return self._records

    def _upgrade(self) -> None:
        records = self._ensure_loaded()
        upgraded = [upgrade_record(r) for r in records]
        changed = [new for old, new in zip(records, upgraded) if new is not old]
        if changed:
            logger.info(f"Re-extracted findings for {len(changed)} scan record(s)")
            try:
                self._flush(upgraded)
            except PersistenceFailure:
                logger.warning("Upgraded scan records are kept in memory only")
        self._records = upgraded

    def list_records(self) -> List[ScanRecord]:
        """All records, newest first. Stale records are upgraded and persisted first."""
        with self._lock:
            self._upgrade()
            return list(self._records)

    def get(self, record_id: str) -> Optional[ScanRecord]:
        with self._lock:
            self._upgrade()
            for record in self._records:
                if record.id == record_id:
                    return record
            return None

    def add(self, record: ScanRecord) -> ScanRecord:
        """Prepend a record, evict the oldest beyond the cap and flush."""
        with self._lock:
            records = self._ensure_loaded()
            updated = ([record] + records)[: self.max_records]
            self._flush(updated)
            self._records = updated
            return record

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self._ensure_loaded()
            remaining = [r for r in records if r.id != record_id]
            if len(remaining) == len(records):
                return False
            self._flush(remaining)
            self._records = remaining
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._ensure_loaded())


def get_scan_history() -> ScanHistoryStore:
    """Get or create the process-wide history store (thread-safe)."""
    global _history
    with _history_lock:
        if _history is None:
            config = get_config()
            _history = ScanHistoryStore(config.scan_history_path, config.max_scan_history)
        return _history
