"""Enrichment service: source fallback chain, work queue and background sync."""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .errors import EnrichmentError, NoIdentifierError, NoSourceAvailableError, RateLimitedError
from .identifiers import IdentifierMap, SearchResult, clean_identifiers
from .models import (
    EnrichmentCapability,
    EnrichmentData,
    EnrichmentOutcome,
    EnrichmentPriority,
    EnrichmentProgressState,
    EnrichmentResult,
    ProgressStatus,
    QueueItem,
)
from .plugin import EnrichmentPlugin
from .retry import RetryPolicy
from .settings import DefaultSettingsProvider, SettingsProvider
from .tracker import FailedRequestTracker


CompletionCallback = Callable[[str, EnrichmentResult], None]


class EnrichmentQueue:
    """Thread-safe priority queue of pending enrichment requests.

    Higher tiers are always served first; within a tier, oldest first.
    The same publication may be queued more than once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._heap: List[Tuple[int, int, QueueItem]] = []
        self._counter = itertools.count()

    def push(self, item: QueueItem) -> int:
        """Add an item and return the new depth."""
        with self._lock:
            heapq.heappush(self._heap, (int(item.priority), next(self._counter), item))
            return len(self._heap)

    def pop(self) -> Optional[QueueItem]:
        with self._lock:
            if not self._heap:
                return None
            return heapq.heappop(self._heap)[2]

    def contains(self, publication_id: str) -> bool:
        with self._lock:
            return any(entry[2].publication_id == publication_id for entry in self._heap)

    def clear(self) -> int:
        with self._lock:
            count = len(self._heap)
            self._heap.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class EnrichmentService:
    """Coordinates enrichment sources.

    Sources are tried one at a time in the order given by the settings'
    ``source_priority``; the first success wins. A source reporting rate
    limiting stops the chain. Deferred requests go through an in-memory
    queue that a background thread can drain.
    """

    def __init__(self, plugins: List[EnrichmentPlugin],
                 settings_provider: Optional[SettingsProvider] = None,
                 tracker: Optional[FailedRequestTracker] = None,
                 on_enrichment_complete: Optional[CompletionCallback] = None,
                 idle_interval: float = 1.0, item_interval: float = 0.1):
        self.logger = logging.getLogger(__name__)
        self._plugins: List[EnrichmentPlugin] = []
        self._plugins_by_id: Dict[str, EnrichmentPlugin] = {}
        for plugin in plugins:
            if plugin.source_id in self._plugins_by_id:
                raise ValueError(f"Duplicate enrichment source id: {plugin.source_id}")
            self._plugins.append(plugin)
            self._plugins_by_id[plugin.source_id] = plugin

        self.settings_provider = settings_provider if settings_provider is not None else DefaultSettingsProvider()
        self.tracker = tracker if tracker is not None else FailedRequestTracker()
        self.on_enrichment_complete = on_enrichment_complete
        self.idle_interval = idle_interval
        self.item_interval = item_interval

        self._queue = EnrichmentQueue()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._progress = EnrichmentProgressState.idle()

        self.logger.info(
            f"Enrichment service initialized with sources: {[p.source_id for p in self._plugins]}"
        )

    # Plugin introspection

    @property
    def registered_plugins(self) -> List[EnrichmentPlugin]:
        return list(self._plugins)

    def plugin_for(self, source_id: str) -> Optional[EnrichmentPlugin]:
        return self._plugins_by_id.get(source_id)

    def plugins_supporting(self, capability: EnrichmentCapability) -> List[EnrichmentPlugin]:
        return [p for p in self._plugins if p.supports(capability)]

    def _plugins_in_priority_order(self) -> List[EnrichmentPlugin]:
        """Registered sources named in the priority list, in that order."""
        ordered = []
        for source_id in dict.fromkeys(self.settings_provider.source_priority):
            plugin = self._plugins_by_id.get(source_id)
            if plugin is not None:
                ordered.append(plugin)
        return ordered

    # On-demand enrichment

    def enrich_now(self, identifiers: IdentifierMap,
                   existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        """Enrich a paper immediately, walking the fallback chain.

        Args:
            identifiers: Identifier map for the paper
            existing_data: Previously stored data to merge into

        Returns:
            Result from the first source that succeeded

        Raises:
            NoIdentifierError: if ``identifiers`` is empty
            RateLimitedError: as soon as any source reports throttling
            EnrichmentError: the last source's error when every source failed,
                or NoSourceAvailableError when none could be tried
        """
        identifiers = clean_identifiers(identifiers)
        if not identifiers:
            self.logger.warning("Enrichment requested without identifiers")
            raise NoIdentifierError()

        self.logger.info(f"Enriching paper with identifiers: {sorted(k.value for k in identifiers)}")

        last_error: Optional[EnrichmentError] = None
        for plugin in self._plugins_in_priority_order():
            if not plugin.can_enrich(identifiers):
                self.logger.debug(f"Skipping {plugin.source_id}: no supported identifier")
                continue

            try:
                result = plugin.enrich(identifiers, existing_data)
                self.logger.info(f"Enriched via {plugin.source_id}")
                return result
            except RateLimitedError:
                self.logger.warning(f"{plugin.source_id} rate limited, stopping fallback chain")
                raise
            except EnrichmentError as e:
                self.logger.debug(f"{plugin.source_id} failed: {e}")
                last_error = e

        if last_error is not None:
            self.logger.info(f"All enrichment sources failed, last error: {last_error}")
            raise last_error
        self.logger.info("No enrichment source could handle the identifiers")
        raise NoSourceAvailableError()

    def enrich_search_result(self, result: SearchResult,
                             existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        return self.enrich_now(result.all_identifiers(), existing_data)

    def enrich_with_retry(self, identifiers: IdentifierMap,
                          existing_data: Optional[EnrichmentData] = None,
                          policy: Optional[RetryPolicy] = None,
                          sleep: Callable[[float], None] = time.sleep) -> EnrichmentResult:
        """Call :meth:`enrich_now`, backing off between failed attempts.

        Gives up after ``policy.max_attempts`` failures and re-raises the
        final attempt's error. A missing identifier is never retried.
        """
        policy = policy or RetryPolicy()
        attempt = 0
        while True:
            try:
                return self.enrich_now(identifiers, existing_data)
            except NoIdentifierError:
                raise
            except EnrichmentError as e:
                attempt += 1
                if policy.is_exhausted(attempt):
                    self.logger.warning(f"Enrichment failed after {attempt} attempts: {e}")
                    raise
                delay = policy.delay(attempt - 1)
                if isinstance(e, RateLimitedError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                self.logger.info(f"Enrichment attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                sleep(delay)

    # Queue

    def queue_for_enrichment(self, publication_id: str, identifiers: IdentifierMap,
                             priority: EnrichmentPriority = EnrichmentPriority.LIBRARY_PAPER) -> None:
        item = QueueItem(publication_id=publication_id, identifiers=dict(identifiers), priority=priority)
        depth = self._queue.push(item)
        self.logger.debug(f"Queued {publication_id} at {priority.name} priority (queue depth {depth})")

    def queue_depth(self) -> int:
        return len(self._queue)

    def is_queued(self, publication_id: str) -> bool:
        return self._queue.contains(publication_id)

    def clear_queue(self) -> int:
        count = self._queue.clear()
        self.logger.info(f"Cleared {count} queued enrichment requests")
        return count

    def process_next_queued(self) -> Optional[Tuple[str, EnrichmentOutcome]]:
        """Process the highest-priority, oldest queued request.

        Never raises. Returns None when the queue is empty, otherwise
        ``(publication_id, outcome)``.
        """
        item = self._queue.pop()
        if item is None:
            return None

        publication_id = item.publication_id
        try:
            result = self.enrich_now(item.identifiers)
        except EnrichmentError as e:
            self.tracker.record_failure(publication_id, item.identifiers, e)
            self.logger.info(f"Queued enrichment failed for {publication_id}: {e}")
            return publication_id, EnrichmentOutcome.failure(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error enriching {publication_id}")
            self.tracker.record_failure(publication_id, item.identifiers, e)
            return publication_id, EnrichmentOutcome.failure(e)

        self.tracker.clear_failure(publication_id)
        if self.on_enrichment_complete is not None:
            try:
                self.on_enrichment_complete(publication_id, result)
            except Exception:
                self.logger.exception(f"Completion callback failed for {publication_id}")
        return publication_id, EnrichmentOutcome.success(result)

    # Background sync

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def progress(self) -> EnrichmentProgressState:
        with self._lock:
            return self._progress

    def _set_progress(self, state: EnrichmentProgressState) -> None:
        with self._lock:
            self._progress = state

    def start_background_sync(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self.logger.debug("Background sync already running")
                return
            # Each run gets its own stop flag so a lingering old thread stays stopped
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_background_loop, args=(self._stop_event,),
                name="enrichment-sync", daemon=True
            )
            self._thread.start()
        self.logger.info("Started background enrichment sync")

    def stop_background_sync(self, timeout: Optional[float] = None) -> None:
        """Stop the loop after its in-flight request, waiting up to ``timeout``."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._thread = None
            self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        remaining = self.queue_depth()
        self._set_progress(
            EnrichmentProgressState(status=ProgressStatus.PAUSED, total_count=remaining)
            if remaining else EnrichmentProgressState.idle()
        )
        self.logger.info("Stopped background enrichment sync")

    def _run_background_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            processed = self._drain_queue(stop_event)
            if processed:
                self.logger.info(f"Background queue empty (processed {processed})")
                if not stop_event.is_set():
                    self._set_progress(EnrichmentProgressState.completed(processed))
            stop_event.wait(self.idle_interval)

    def _drain_queue(self, stop_event: threading.Event) -> int:
        processed = 0
        while not stop_event.is_set():
            total = processed + self.queue_depth()
            if total == processed:
                break
            self._set_progress(EnrichmentProgressState.enriching(processed, total))
            if self.process_next_queued() is None:
                break
            processed += 1
            stop_event.wait(self.item_interval)
        return processed
