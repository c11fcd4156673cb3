"""Tests for the enrichment service."""

import threading
import time

import pytest

from paperenrich.errors import (
    AuthenticationRequiredError,
    NetworkError,
    NoIdentifierError,
    NoSourceAvailableError,
    NotFoundError,
    ParseError,
    RateLimitedError,
)
from paperenrich.identifiers import IdentifierType, SearchResult
from paperenrich.models import (
    EnrichmentCapability,
    EnrichmentData,
    EnrichmentPriority,
    ProgressStatus,
    QueueItem,
)
from paperenrich.retry import RetryPolicy
from paperenrich.service import EnrichmentQueue, EnrichmentService
from paperenrich.settings import DefaultSettingsProvider, EnrichmentSettings
from paperenrich.tracker import FailedRequestTracker
from tests.fakes import FakePlugin


DOI = {IdentifierType.DOI: "10.1234/test"}


def make_service(*plugins, priority=None, **kwargs):
    if priority is None:
        priority = [p.source_id for p in plugins]
    settings = DefaultSettingsProvider(EnrichmentSettings(source_priority=priority))
    return EnrichmentService(list(plugins), settings_provider=settings, **kwargs)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestEnrichNow:
    """Tests for the fallback chain."""

    def test_empty_identifiers_fail_without_calls(self):
        """An empty map should fail with NoIdentifierError and contact nobody."""
        plugin = FakePlugin("a")
        service = make_service(plugin)
        with pytest.raises(NoIdentifierError):
            service.enrich_now({})
        with pytest.raises(NoIdentifierError):
            service.enrich_now({IdentifierType.DOI: "   "})
        assert plugin.call_count == 0

    def test_first_success_wins(self):
        """The first source in priority order that succeeds provides the data."""
        a = FakePlugin("a")
        b = FakePlugin("b")
        service = make_service(a, b)
        result = service.enrich_now(DOI)
        assert result.data.source == "a"
        assert b.call_count == 0

    def test_priority_order_comes_from_settings(self):
        """Sources should be tried in settings order, not registration order."""
        a = FakePlugin("a")
        b = FakePlugin("b")
        service = make_service(a, b, priority=["b", "a"])
        assert service.enrich_now(DOI).data.source == "b"
        assert a.call_count == 0

    def test_falls_back_on_failure(self):
        """A non-throttling failure should move on to the next source."""
        a = FakePlugin("a", error=NotFoundError())
        b = FakePlugin("b")
        service = make_service(a, b)
        assert service.enrich_now(DOI).data.source == "b"
        assert a.call_count == 1

    def test_rate_limited_short_circuits(self):
        """Rate limiting from one source should stop the chain."""
        a = FakePlugin("a", error=RateLimitedError(retry_after=30))
        b = FakePlugin("b")
        service = make_service(a, b)
        with pytest.raises(RateLimitedError) as exc_info:
            service.enrich_now(DOI)
        assert exc_info.value.retry_after == 30
        assert b.call_count == 0

    def test_last_error_is_reported(self):
        """When every source fails, the last source's error surfaces."""
        a = FakePlugin("a", error=AuthenticationRequiredError("a"))
        b = FakePlugin("b", error=NotFoundError())
        c = FakePlugin("c", error=ParseError("bad payload"))
        service = make_service(a, b, c)
        with pytest.raises(ParseError):
            service.enrich_now(DOI)
        assert (a.call_count, b.call_count, c.call_count) == (1, 1, 1)

    def test_sources_absent_from_priority_are_skipped(self):
        """Registered sources missing from the priority list are never asked."""
        a = FakePlugin("a")
        hidden = FakePlugin("hidden")
        service = make_service(a, hidden, priority=["a"])
        a.error = NotFoundError()
        with pytest.raises(NotFoundError):
            service.enrich_now(DOI)
        assert hidden.call_count == 0

    def test_sources_that_cannot_enrich_are_skipped(self):
        """Sources lacking a supported identifier kind are not called."""
        ads = FakePlugin("ads", supported=frozenset({IdentifierType.BIBCODE}))
        openalex = FakePlugin("openalex", supported=frozenset({IdentifierType.DOI}))
        service = make_service(ads, openalex)
        assert service.enrich_now(DOI).data.source == "openalex"
        assert ads.call_count == 0

    def test_no_source_available(self):
        """With no eligible source the error is NoSourceAvailableError."""
        ads = FakePlugin("ads", supported=frozenset({IdentifierType.BIBCODE}))
        service = make_service(ads)
        with pytest.raises(NoSourceAvailableError) as exc_info:
            service.enrich_now(DOI)
        assert str(exc_info.value) == "No enrichment source could provide data"

    def test_unknown_priority_ids_are_ignored(self):
        """Priority entries with no registered source are skipped."""
        a = FakePlugin("a")
        service = make_service(a, priority=["missing", "a"])
        assert service.enrich_now(DOI).data.source == "a"

    def test_existing_data_is_merged(self):
        """Existing data should be passed through and merged by the source."""
        a = FakePlugin("a", citation_count=None)
        service = make_service(a)
        existing = EnrichmentData(source="old", citation_count=5, abstract="Kept")
        result = service.enrich_now(DOI, existing)
        assert result.data.source == "a"
        assert result.data.citation_count == 5
        assert result.data.abstract == "Kept"

    def test_resolved_identifiers_are_returned(self):
        """Identifiers discovered by the source should be in the result."""
        a = FakePlugin("a", discovered={IdentifierType.OPENALEX: "W42"})
        service = make_service(a)
        result = service.enrich_now(DOI)
        assert result.resolved_identifiers == {**DOI, IdentifierType.OPENALEX: "W42"}

    def test_unexpected_exceptions_propagate(self):
        """Programming errors are not part of the fallback chain."""
        a = FakePlugin("a", error=KeyError("boom"))
        b = FakePlugin("b")
        service = make_service(a, b)
        with pytest.raises(KeyError):
            service.enrich_now(DOI)
        assert b.call_count == 0

    def test_enrich_search_result(self):
        """Search results should be enriched through their identifiers."""
        a = FakePlugin("a", supported=frozenset({IdentifierType.ARXIV}))
        service = make_service(a)
        result = service.enrich_search_result(
            SearchResult(id="r1", source_id="arxiv", title="Paper", arxiv_id="2301.01234")
        )
        assert result.data.source == "a"
        assert a.calls == [{IdentifierType.ARXIV: "2301.01234"}]


class TestEnrichWithRetry:
    """Tests for retrying enrichment with backoff."""

    def test_succeeds_after_transient_failures(self):
        """Transient failures should be retried with exponential delays."""
        a = FakePlugin("a", errors=[NetworkError("HTTP 503"), NetworkError("HTTP 503")])
        service = make_service(a)
        sleeps = []
        result = service.enrich_with_retry(
            DOI, policy=RetryPolicy(max_attempts=3, base_delay=1.0, jitter_factor=0), sleep=sleeps.append
        )
        assert result.data.source == "a"
        assert sleeps == [1.0, 2.0]
        assert a.call_count == 3

    def test_exhaustion_raises_final_error(self):
        """After max_attempts failures the last error is re-raised."""
        a = FakePlugin("a", errors=[NetworkError("first"), NetworkError("second"), NetworkError("third")])
        service = make_service(a)
        sleeps = []
        with pytest.raises(NetworkError) as exc_info:
            service.enrich_with_retry(
                DOI, policy=RetryPolicy(max_attempts=3, base_delay=0.5, jitter_factor=0), sleep=sleeps.append
            )
        assert exc_info.value.detail == "third"
        assert sleeps == [0.5, 1.0]

    def test_missing_identifier_is_not_retried(self):
        """NoIdentifierError should surface immediately."""
        service = make_service(FakePlugin("a"))
        sleeps = []
        with pytest.raises(NoIdentifierError):
            service.enrich_with_retry({}, sleep=sleeps.append)
        assert sleeps == []

    def test_rate_limit_retry_after_extends_delay(self):
        """A server-supplied retry-after longer than the backoff should be honoured."""
        a = FakePlugin("a", errors=[RateLimitedError(retry_after=10)])
        service = make_service(a)
        sleeps = []
        service.enrich_with_retry(
            DOI, policy=RetryPolicy(base_delay=1.0, jitter_factor=0), sleep=sleeps.append
        )
        assert sleeps == [10.0]


class TestEnrichmentQueue:
    """Tests for the priority queue."""

    def test_tiers_then_fifo(self):
        """Higher tiers first, FIFO within a tier."""
        queue = EnrichmentQueue()
        queue.push(QueueItem("bg1", DOI, EnrichmentPriority.BACKGROUND))
        queue.push(QueueItem("lib1", DOI, EnrichmentPriority.LIBRARY_PAPER))
        queue.push(QueueItem("bg2", DOI, EnrichmentPriority.BACKGROUND))
        queue.push(QueueItem("user1", DOI, EnrichmentPriority.USER_TRIGGERED))
        queue.push(QueueItem("lib2", DOI, EnrichmentPriority.LIBRARY_PAPER))

        order = []
        while len(queue):
            order.append(queue.pop().publication_id)
        assert order == ["user1", "lib1", "lib2", "bg1", "bg2"]
        assert queue.pop() is None


class TestQueueProcessing:
    """Tests for queued enrichment."""

    def test_empty_queue_returns_none(self):
        """Processing an empty queue should return None."""
        service = make_service(FakePlugin("a"))
        assert service.process_next_queued() is None

    def test_one_item_processed(self):
        """One queued item gives one outcome and empties the queue."""
        service = make_service(FakePlugin("a"))
        service.queue_for_enrichment("pub1", DOI, EnrichmentPriority.USER_TRIGGERED)
        assert service.queue_depth() == 1

        publication_id, outcome = service.process_next_queued()

        assert publication_id == "pub1"
        assert outcome.succeeded
        assert outcome.result.data.source == "a"
        assert service.queue_depth() == 0
        assert service.process_next_queued() is None

    def test_no_deduplication(self):
        """Queueing the same publication twice gives two items."""
        service = make_service(FakePlugin("a"))
        service.queue_for_enrichment("pub1", DOI)
        service.queue_for_enrichment("pub1", DOI)
        assert service.queue_depth() == 2
        assert service.is_queued("pub1")
        assert not service.is_queued("pub2")

    def test_priority_order(self):
        """User-triggered work should be processed before background work."""
        service = make_service(FakePlugin("a"))
        service.queue_for_enrichment("background", DOI, EnrichmentPriority.BACKGROUND)
        service.queue_for_enrichment("user", DOI, EnrichmentPriority.USER_TRIGGERED)
        assert service.process_next_queued()[0] == "user"
        assert service.process_next_queued()[0] == "background"

    def test_failure_is_recorded_not_raised(self):
        """A failed item should be tracked and reported, never raised."""
        tracker = FailedRequestTracker()
        service = make_service(FakePlugin("a", error=NotFoundError()), tracker=tracker)
        service.queue_for_enrichment("pub1", DOI)

        publication_id, outcome = service.process_next_queued()

        assert publication_id == "pub1"
        assert not outcome.succeeded
        assert isinstance(outcome.error, NotFoundError)
        assert tracker.get("pub1").retry_count == 0

    def test_empty_injected_tracker_is_kept(self):
        """An injected tracker with no entries yet should still be the one used."""
        tracker = FailedRequestTracker()
        assert len(tracker) == 0
        service = make_service(FakePlugin("a", error=NotFoundError()), tracker=tracker)
        assert service.tracker is tracker

        service.queue_for_enrichment("pub1", DOI)
        service.process_next_queued()

        assert len(tracker) == 1

    def test_unexpected_error_is_captured(self):
        """Even non-enrichment exceptions should become failure outcomes."""
        service = make_service(FakePlugin("a", error=RuntimeError("bug")))
        service.queue_for_enrichment("pub1", DOI)
        _, outcome = service.process_next_queued()
        assert isinstance(outcome.error, RuntimeError)
        assert service.tracker.failure_count == 1

    def test_success_clears_previous_failure(self):
        """A success should remove the publication from the tracker."""
        plugin = FakePlugin("a", errors=[NotFoundError()])
        service = make_service(plugin)
        service.queue_for_enrichment("pub1", DOI)
        service.process_next_queued()
        assert service.tracker.failure_count == 1

        service.queue_for_enrichment("pub1", DOI)
        _, outcome = service.process_next_queued()
        assert outcome.succeeded
        assert service.tracker.failure_count == 0

    def test_completion_callback(self):
        """The completion callback should receive successful results."""
        received = []
        service = make_service(
            FakePlugin("a"), on_enrichment_complete=lambda pid, result: received.append((pid, result))
        )
        service.queue_for_enrichment("pub1", DOI)
        service.process_next_queued()
        assert [pid for pid, _ in received] == ["pub1"]
        assert received[0][1].data.source == "a"

    def test_failing_callback_keeps_success(self):
        """A broken callback should not turn a success into a failure."""
        def callback(pid, result):
            raise OSError("disk full")

        service = make_service(FakePlugin("a"), on_enrichment_complete=callback)
        service.queue_for_enrichment("pub1", DOI)
        _, outcome = service.process_next_queued()
        assert outcome.succeeded
        assert service.tracker.failure_count == 0

    def test_concurrent_processing_never_double_processes(self):
        """Each queued item should be processed exactly once across threads."""
        plugin = FakePlugin("a")
        service = make_service(plugin)
        for i in range(100):
            service.queue_for_enrichment(f"pub{i}", DOI)

        processed = []
        lock = threading.Lock()

        def worker():
            while True:
                outcome = service.process_next_queued()
                if outcome is None:
                    return
                with lock:
                    processed.append(outcome[0])

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(processed) == sorted(f"pub{i}" for i in range(100))
        assert service.queue_depth() == 0


class TestPluginIntrospection:
    """Tests for plugin lookup."""

    def test_plugins_supporting(self):
        """Only sources with the capability should be listed."""
        a = FakePlugin("a", capabilities=EnrichmentCapability.CITATION_COUNT)
        b = FakePlugin("b", capabilities=EnrichmentCapability.CITATION_COUNT | EnrichmentCapability.REFERENCES)
        service = make_service(a, b)
        assert service.plugins_supporting(EnrichmentCapability.REFERENCES) == [b]
        assert service.plugins_supporting(EnrichmentCapability.CITATION_COUNT) == [a, b]

    def test_plugin_for(self):
        """Lookup by id should return the registered source or None."""
        a = FakePlugin("a")
        service = make_service(a)
        assert service.plugin_for("a") is a
        assert service.plugin_for("zzz") is None
        assert service.registered_plugins == [a]

    def test_duplicate_ids_rejected(self):
        """Two sources with one id should be rejected."""
        with pytest.raises(ValueError):
            make_service(FakePlugin("a"), FakePlugin("a"))


class TestBackgroundSync:
    """Tests for the background processing loop."""

    def test_start_and_stop_are_idempotent(self):
        """Starting twice or stopping twice should be harmless."""
        service = make_service(FakePlugin("a"), idle_interval=0.01, item_interval=0)
        assert not service.is_running
        service.start_background_sync()
        service.start_background_sync()
        assert service.is_running
        service.stop_background_sync(timeout=2)
        service.stop_background_sync(timeout=2)
        assert not service.is_running

    def test_background_loop_drains_queue(self):
        """Queued items should be processed by the background thread."""
        received = []
        service = make_service(
            FakePlugin("a"), idle_interval=0.01, item_interval=0,
            on_enrichment_complete=lambda pid, result: received.append(pid),
        )
        for i in range(5):
            service.queue_for_enrichment(f"pub{i}", DOI)

        service.start_background_sync()
        try:
            assert wait_until(lambda: len(received) == 5)
            assert wait_until(lambda: service.progress.status == ProgressStatus.COMPLETED)
        finally:
            service.stop_background_sync(timeout=2)

        assert sorted(received) == [f"pub{i}" for i in range(5)]
        assert service.queue_depth() == 0

    def test_items_queued_while_running_are_processed(self):
        """Items queued after start should be picked up on a later cycle."""
        received = []
        service = make_service(
            FakePlugin("a"), idle_interval=0.01, item_interval=0,
            on_enrichment_complete=lambda pid, result: received.append(pid),
        )
        service.start_background_sync()
        try:
            service.queue_for_enrichment("late", DOI)
            assert wait_until(lambda: received == ["late"])
        finally:
            service.stop_background_sync(timeout=2)

    def test_stop_leaves_progress_idle_when_empty(self):
        """Stopping with an empty queue should report idle."""
        service = make_service(FakePlugin("a"), idle_interval=0.01)
        service.start_background_sync()
        service.stop_background_sync(timeout=2)
        assert service.progress.status == ProgressStatus.IDLE
