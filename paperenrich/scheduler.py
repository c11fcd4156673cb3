"""Background scheduler that queues stale or never-enriched publications."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Tuple

from .identifiers import IdentifierMap, clean_identifiers
from .models import EnrichmentPriority, EnrichmentStatistics
from .retry import RetryPolicy
from .service import EnrichmentService
from .settings import SettingsProvider
from .utils import utcnow


@dataclass
class StalePublication:
    """A publication as seen by the staleness scan."""
    publication_id: str
    identifiers: IdentifierMap = field(default_factory=dict)
    last_enriched_at: Optional[datetime] = None


class StalePublicationProvider(ABC):
    """Source of publications for the staleness scan."""

    @abstractmethod
    def iter_publications(self) -> Iterable[StalePublication]:
        """Yield every publication with its identifiers and last enrichment time."""


def is_stale(last_enriched_at: Optional[datetime], refresh_interval_days: int,
             now: datetime) -> bool:
    """True if never enriched or last enriched more than the refresh interval ago."""
    if last_enriched_at is None:
        return True
    return now - last_enriched_at > timedelta(days=refresh_interval_days)


class BackgroundScheduler:
    """Periodically finds publications that need enrichment and queues them.

    ``trigger_immediate_check`` does one scan synchronously; ``start``
    runs it every ``check_interval`` seconds on a daemon thread while
    auto-sync is enabled.
    """

    def __init__(self, service: EnrichmentService,
                 publication_provider: StalePublicationProvider,
                 settings_provider: Optional[SettingsProvider] = None,
                 check_interval: float = 3600.0, items_per_cycle: int = 50,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.service = service
        self.publication_provider = publication_provider
        self.settings_provider = settings_provider if settings_provider is not None else service.settings_provider
        self.check_interval = check_interval
        self.items_per_cycle = items_per_cycle
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_check_at: Optional[datetime] = None

    def trigger_immediate_check(self) -> int:
        """Scan for stale publications and queue them at background priority.

        Publications without identifiers, or already waiting in the queue,
        are skipped. At most ``items_per_cycle`` are queued.

        Returns:
            Number of publications queued
        """
        refresh_days = self.settings_provider.refresh_interval_days
        now = self._clock()
        queued = 0

        for publication in self.publication_provider.iter_publications():
            if queued >= self.items_per_cycle:
                break
            if not is_stale(publication.last_enriched_at, refresh_days, now):
                continue
            identifiers = clean_identifiers(publication.identifiers)
            if not identifiers:
                self.logger.debug(f"Skipping {publication.publication_id}: no identifiers")
                continue
            if self.service.is_queued(publication.publication_id):
                continue
            self.service.queue_for_enrichment(
                publication.publication_id, identifiers, EnrichmentPriority.BACKGROUND
            )
            queued += 1

        self.last_check_at = now
        self.logger.info(f"Staleness check queued {queued} publications")
        return queued

    def retry_failed(self) -> int:
        """Re-queue tracked failures whose backoff has elapsed.

        A failure with ``retry_count`` n has failed n + 1 times; it is
        dropped once that exhausts the retry policy.

        Returns:
            Number of publications re-queued
        """
        now = self._clock()
        queued = 0
        for failed in self.service.tracker.requests_for_retry():
            if self.retry_policy.is_exhausted(failed.retry_count + 1):
                continue
            ready_at = failed.last_failed_at + timedelta(seconds=self.retry_policy.delay(failed.retry_count))
            if now < ready_at:
                continue
            if self.service.is_queued(failed.publication_id):
                continue
            self.service.queue_for_enrichment(
                failed.publication_id, failed.identifiers, EnrichmentPriority.BACKGROUND
            )
            queued += 1

        if queued:
            self.logger.info(f"Re-queued {queued} failed enrichment requests")
        return queued

    def run_cycle(self) -> Tuple[int, int]:
        """One scheduler cycle: staleness scan, then failure retries."""
        return self.trigger_immediate_check(), self.retry_failed()

    def statistics(self) -> EnrichmentStatistics:
        refresh_days = self.settings_provider.refresh_interval_days
        now = self._clock()
        stats = EnrichmentStatistics()
        for publication in self.publication_provider.iter_publications():
            if publication.last_enriched_at is None:
                stats.never_enriched_count += 1
                continue
            stats.total_enriched += 1
            if is_stale(publication.last_enriched_at, refresh_days, now):
                stats.stale_count += 1
        return stats

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,),
                name="enrichment-scheduler", daemon=True
            )
            self._thread.start()
        self.logger.info(f"Background scheduler started (every {self.check_interval:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._thread = None
            self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self.logger.info("Background scheduler stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            if self.settings_provider.auto_sync_enabled:
                try:
                    self.run_cycle()
                except Exception:
                    self.logger.exception("Background scheduler cycle failed")
            else:
                self.logger.debug("Auto-sync disabled, skipping scheduler cycle")
            stop_event.wait(self.check_interval)
