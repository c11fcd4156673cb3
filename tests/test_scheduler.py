"""Tests for the background scheduler."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from paperenrich.errors import NetworkError
from paperenrich.identifiers import IdentifierType
from paperenrich.models import EnrichmentPriority
from paperenrich.retry import RetryPolicy
from paperenrich.scheduler import (
    BackgroundScheduler,
    StalePublication,
    StalePublicationProvider,
    is_stale,
)
from paperenrich.service import EnrichmentService
from paperenrich.settings import DefaultSettingsProvider, EnrichmentSettings
from paperenrich.utils import utcnow
from tests.fakes import FakePlugin


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class ListProvider(StalePublicationProvider):
    def __init__(self, publications):
        self.publications = list(publications)

    def iter_publications(self):
        return iter(self.publications)


def doi(n):
    return {IdentifierType.DOI: f"10.1234/paper{n}"}


@pytest.fixture
def settings():
    return DefaultSettingsProvider(EnrichmentSettings(source_priority=["a"], refresh_interval_days=7))


@pytest.fixture
def service(settings):
    return EnrichmentService([FakePlugin("a")], settings_provider=settings)


def make_scheduler(service, publications, **kwargs):
    kwargs.setdefault('clock', lambda: NOW)
    return BackgroundScheduler(service, ListProvider(publications), **kwargs)


class TestIsStale:
    """Tests for the staleness rule."""

    def test_never_enriched_is_stale(self):
        """A publication never enriched should always be stale."""
        assert is_stale(None, 7, NOW)

    def test_older_than_interval_is_stale(self):
        """Enrichment older than the interval should be stale."""
        assert is_stale(NOW - timedelta(days=10), 7, NOW)

    def test_within_interval_is_fresh(self):
        """Recent enrichment should not be stale."""
        assert not is_stale(NOW - timedelta(days=1), 7, NOW)
        assert not is_stale(NOW - timedelta(days=7), 7, NOW)


class TestTriggerImmediateCheck:
    """Tests for the staleness scan."""

    def test_queues_stale_and_never_enriched(self, service):
        """Never-enriched and 10-day-old publications are queued, a 1-day-old one is not."""
        scheduler = make_scheduler(service, [
            StalePublication("never", doi(1), None),
            StalePublication("old", doi(2), NOW - timedelta(days=10)),
            StalePublication("fresh", doi(3), NOW - timedelta(days=1)),
        ])

        assert scheduler.trigger_immediate_check() == 2
        assert service.queue_depth() == 2
        assert service.is_queued("never")
        assert service.is_queued("old")
        assert not service.is_queued("fresh")
        assert scheduler.last_check_at == NOW

    def test_queued_at_background_priority(self, service):
        """Scanned publications should wait behind user-triggered work."""
        scheduler = make_scheduler(service, [StalePublication("scan", doi(1), None)])
        scheduler.trigger_immediate_check()
        service.queue_for_enrichment("user", doi(2), EnrichmentPriority.USER_TRIGGERED)

        assert service.process_next_queued()[0] == "user"
        assert service.process_next_queued()[0] == "scan"

    def test_items_per_cycle_cap(self, service):
        """No more than items_per_cycle publications are queued per scan."""
        publications = [StalePublication(f"p{i}", doi(i), None) for i in range(10)]
        scheduler = make_scheduler(service, publications, items_per_cycle=3)
        assert scheduler.trigger_immediate_check() == 3
        assert service.queue_depth() == 3

    def test_publications_without_identifiers_skipped(self, service):
        """Publications with no usable identifiers are not queued."""
        scheduler = make_scheduler(service, [
            StalePublication("empty", {}, None),
            StalePublication("blank", {IdentifierType.DOI: "  "}, None),
            StalePublication("ok", doi(1), None),
        ])
        assert scheduler.trigger_immediate_check() == 1
        assert service.is_queued("ok")

    def test_already_queued_not_duplicated(self, service):
        """A second scan should not queue the same publication again."""
        scheduler = make_scheduler(service, [StalePublication("p1", doi(1), None)])
        assert scheduler.trigger_immediate_check() == 1
        assert scheduler.trigger_immediate_check() == 0
        assert service.queue_depth() == 1

    def test_uses_refresh_interval_from_settings(self, service, settings):
        """Changing the refresh interval should change what is stale."""
        scheduler = make_scheduler(service, [StalePublication("p1", doi(1), NOW - timedelta(days=3))])
        assert scheduler.trigger_immediate_check() == 0
        settings.update_refresh_interval_days(2)
        assert scheduler.trigger_immediate_check() == 1


class TestRetryFailed:
    """Tests for re-queueing tracked failures."""

    def fail_once(self, service, publication_id="p1"):
        service.tracker.record_failure(publication_id, doi(1), NetworkError("HTTP 503"))

    def test_waits_for_backoff(self, service):
        """A failure should only be re-queued after its backoff delay."""
        self.fail_once(service)
        failed_at = service.tracker.get("p1").last_failed_at
        clock = {'now': failed_at + timedelta(seconds=5)}
        scheduler = make_scheduler(
            service, [], clock=lambda: clock['now'],
            retry_policy=RetryPolicy(max_attempts=3, base_delay=10.0, jitter_factor=0),
        )

        assert scheduler.retry_failed() == 0
        clock['now'] = failed_at + timedelta(seconds=11)
        assert scheduler.retry_failed() == 1
        assert service.is_queued("p1")

    def test_exhausted_failures_dropped(self, service):
        """Failures that reached the attempt limit are not re-queued."""
        for _ in range(3):
            self.fail_once(service)
        assert service.tracker.get("p1").retry_count == 2
        scheduler = make_scheduler(
            service, [], clock=lambda: utcnow() + timedelta(days=1),
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0, jitter_factor=0),
        )
        assert scheduler.retry_failed() == 0

    def test_already_queued_skipped(self, service):
        """A failure that is already waiting in the queue is not added again."""
        self.fail_once(service)
        service.queue_for_enrichment("p1", doi(1))
        scheduler = make_scheduler(
            service, [], clock=lambda: utcnow() + timedelta(days=1),
            retry_policy=RetryPolicy(base_delay=0, jitter_factor=0),
        )
        assert scheduler.retry_failed() == 0
        assert service.queue_depth() == 1

    def test_run_cycle(self, service):
        """A cycle should scan and retry, reporting both counts."""
        self.fail_once(service, "failed")
        scheduler = make_scheduler(
            service, [StalePublication("stale", doi(2), None)],
            clock=lambda: utcnow() + timedelta(days=1),
            retry_policy=RetryPolicy(base_delay=0, jitter_factor=0),
        )
        assert scheduler.run_cycle() == (1, 1)


class TestStatistics:
    def test_counts(self, service):
        """Statistics should split enriched, stale and never-enriched."""
        scheduler = make_scheduler(service, [
            StalePublication("never", doi(1), None),
            StalePublication("old", doi(2), NOW - timedelta(days=10)),
            StalePublication("fresh", doi(3), NOW - timedelta(days=1)),
        ])
        stats = scheduler.statistics()
        assert stats.total_enriched == 2
        assert stats.stale_count == 1
        assert stats.never_enriched_count == 1
        assert stats.needs_enrichment == 2


class TestSchedulerThread:
    """Tests for the periodic loop."""

    def test_start_runs_a_cycle(self, service):
        """Starting should run a scan right away."""
        scheduler = make_scheduler(service, [StalePublication("p1", doi(1), None)], check_interval=60)
        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while not service.is_queued("p1") and time.monotonic() < deadline:
                time.sleep(0.01)
            assert service.is_queued("p1")
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=2)
        assert not scheduler.is_running

    def test_disabled_auto_sync_skips_cycles(self, service, settings):
        """No scan should happen while auto-sync is off."""
        settings.update_auto_sync_enabled(False)
        scheduler = make_scheduler(service, [StalePublication("p1", doi(1), None)], check_interval=0.01)
        scheduler.start()
        time.sleep(0.1)
        scheduler.stop(timeout=2)
        assert service.queue_depth() == 0
        assert scheduler.last_check_at is None

    def test_stop_without_start(self, service):
        """Stopping a scheduler that never started is harmless."""
        scheduler = make_scheduler(service, [])
        scheduler.stop()
        assert not scheduler.is_running
