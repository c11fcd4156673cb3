"""Tracking of failed enrichment requests for later retry."""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from .identifiers import IdentifierMap
from .utils import utcnow


@dataclass
class FailedRequest:
    """A publication whose enrichment failed, possibly repeatedly."""
    publication_id: str
    identifiers: IdentifierMap
    last_error: str
    retry_count: int = 0
    first_failed_at: datetime = field(default_factory=utcnow)
    last_failed_at: datetime = field(default_factory=utcnow)


def _copy(entry: FailedRequest) -> FailedRequest:
    return replace(entry, identifiers=dict(entry.identifiers))


class FailedRequestTracker:
    """Thread-safe record of failures keyed by publication id.

    ``retry_count`` starts at 0 on the first failure and grows by one on
    every repeated failure. Success or an explicit clear removes the entry.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._failures: Dict[str, FailedRequest] = {}

    def record_failure(self, publication_id: str, identifiers: IdentifierMap,
                       error: Exception) -> FailedRequest:
        now = utcnow()
        with self._lock:
            entry = self._failures.get(publication_id)
            if entry is None:
                entry = FailedRequest(
                    publication_id=publication_id,
                    identifiers=dict(identifiers),
                    last_error=str(error),
                    first_failed_at=now,
                    last_failed_at=now,
                )
                self._failures[publication_id] = entry
            else:
                entry.retry_count += 1
                entry.identifiers = dict(identifiers)
                entry.last_error = str(error)
                entry.last_failed_at = now
            snapshot = _copy(entry)

        self.logger.debug(
            f"Recorded failure for {publication_id} (retry count {snapshot.retry_count}): {error}"
        )
        return snapshot

    def clear_failure(self, publication_id: str) -> bool:
        """Remove the entry for one publication. Returns whether one existed."""
        with self._lock:
            removed = self._failures.pop(publication_id, None) is not None
        if removed:
            self.logger.debug(f"Cleared failure for {publication_id}")
        return removed

    def clear_all(self) -> None:
        with self._lock:
            count = len(self._failures)
            self._failures.clear()
        self.logger.info(f"Cleared {count} failed requests")

    def get(self, publication_id: str) -> Optional[FailedRequest]:
        with self._lock:
            entry = self._failures.get(publication_id)
            return _copy(entry) if entry else None

    def requests_for_retry(self) -> List[FailedRequest]:
        """Copies of all tracked failures, in no particular order."""
        with self._lock:
            return [_copy(entry) for entry in self._failures.values()]

    @property
    def failure_count(self) -> int:
        with self._lock:
            return len(self._failures)

    def __len__(self) -> int:
        return self.failure_count
