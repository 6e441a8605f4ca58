"""
Bounded log of guarded chat turns.
Keeps the most recent entries in memory, newest first, with running statistics.
"""
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import get_config
from models import GuardLogEntry, GuardResults, GuardVerdict


class GuardLog:
    """
    In-memory log of AI Guard verdicts per chat turn.
    Independent of the scan history; capped at max_entries (oldest evicted).
    """

    def __init__(self, max_entries: Optional[int] = None):
        """Initialize guard log."""
        self.max_entries = max_entries or get_config().max_guard_log
        self.entries: deque = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()
        self.stats = {
            'total_turns': 0,
            'blocked_input': 0,
            'blocked_output': 0,
            'allowed': 0,
            'warnings': 0,
        }

    def log_turn(
        self,
        provider: str,
        model: str,
        guard: GuardResults,
        blocked_stage: Optional[str] = None,
    ) -> str:
        """
        Record the guard verdicts of one chat turn.

        Args:
            provider: Provider identifier
            model: Requested model
            guard: Input/output verdicts of the turn
            blocked_stage: "input", "output" or None when the turn completed

        Returns:
            entry id
        """
        verdicts: List[GuardVerdict] = [v for v in (guard.input_validation, guard.output_validation) if v is not None]
        reasons = [reason for v in verdicts for reason in v.reasons]
        warnings = [v.warning for v in verdicts if v.warning]

        entry = GuardLogEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            provider=provider,
            model=model,
            input_action=guard.input_validation.action if guard.input_validation else None,
            output_action=guard.output_validation.action if guard.output_validation else None,
            blocked_stage=blocked_stage,
            reasons=reasons,
            warnings=warnings,
        )

        with self._lock:
            self.entries.appendleft(entry)
            self.stats['total_turns'] += 1
            if blocked_stage == "input":
                self.stats['blocked_input'] += 1
            elif blocked_stage == "output":
                self.stats['blocked_output'] += 1
            else:
                self.stats['allowed'] += 1
            if warnings:
                self.stats['warnings'] += 1
        return entry.id

    def get_entries(self, blocked_only: bool = False, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """Newest-first entries, optionally only blocked turns."""
        with self._lock:
            entries = list(self.entries)
        if blocked_only:
            entries = [e for e in entries if e.blocked_stage]
        return [e.model_dump() for e in entries[offset:offset + limit]]

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            total = self.stats['total_turns']
            blocked = self.stats['blocked_input'] + self.stats['blocked_output']
            return {
                **self.stats,
                'blocked_percentage': round(blocked / total * 100, 2) if total > 0 else 0.0,
                'retained_entries': len(self.entries),
            }

    def clear(self) -> int:
        with self._lock:
            removed = len(self.entries)
            self.entries.clear()
            for key in self.stats:
                self.stats[key] = 0
            return removed

    def __len__(self) -> int:
        return len(self.entries)
