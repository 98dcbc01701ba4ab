"""
Healing history for test self-healing operations.

Every healing attempt is appended here once it reaches a reportable state.
Records are never rewritten: finalizing a VALIDATING attempt appends a new
record with the same id, and readers take the latest record per id.
"""

import json
import threading
from pathlib import Path
from typing import Dict, List, Optional
import logging

from .models import HealingAttempt, HealingStatus


class HealingHistory:
    """Append-only log of healing attempts with optional JSONL persistence."""

    def __init__(self, storage_path: Optional[str] = None):
        """
        Initialize healing history.

        Args:
            storage_path: Optional JSONL file to mirror records into
        """
        self.storage_path = Path(storage_path) if storage_path else None
        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger("healing.history")
        self._lock = threading.Lock()
        self._records: List[HealingAttempt] = []

    def append(self, attempt: HealingAttempt) -> None:
        """Append an attempt record."""
        with self._lock:
            self._records.append(attempt)

        self.logger.info(
            f"Recorded healing attempt {attempt.id} for {attempt.test_ref}: "
            f"{attempt.strategy.value} -> {attempt.status.value}",
            extra={
                'session_id': attempt.id,
                'test_case': attempt.test_ref,
                'strategy': attempt.strategy.value,
                'success': attempt.success,
            }
        )
        self._save_record_to_file(attempt)

    def records(self) -> List[HealingAttempt]:
        """All records in append order."""
        with self._lock:
            return list(self._records)

    def latest(self) -> List[HealingAttempt]:
        """Latest record per attempt id, in first-seen order."""
        latest: Dict[str, HealingAttempt] = {}
        for record in self.records():
            latest[record.id] = record
        return list(latest.values())

    def get(self, attempt_id: str) -> Optional[HealingAttempt]:
        for record in reversed(self.records()):
            if record.id == attempt_id:
                return record
        return None

    def pending_validation(self) -> List[HealingAttempt]:
        return [a for a in self.latest() if a.status == HealingStatus.VALIDATING]

    def clear(self) -> None:
        """Forget in-memory records. The JSONL file is left untouched."""
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @classmethod
    def load(cls, storage_path: str) -> 'HealingHistory':
        """Rebuild history from a JSONL file, skipping unreadable lines."""
        history = cls(storage_path)
        path = Path(storage_path)
        if not path.exists():
            return history

        with open(path, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    history._records.append(HealingAttempt.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    history.logger.warning(f"Skipping corrupt history line {line_number}: {e}")
        return history

    def _save_record_to_file(self, attempt: HealingAttempt):
        """Append the record to the JSONL file."""
        if not self.storage_path:
            return

        try:
            with open(self.storage_path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(attempt.to_dict()) + '\n')
        except OSError as e:
            self.logger.error(f"Failed to save healing record to file: {e}")
