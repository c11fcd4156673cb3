"""Tests for the failed request tracker."""

import threading

import pytest

from paperenrich.errors import NetworkError, NotFoundError
from paperenrich.identifiers import IdentifierType
from paperenrich.tracker import FailedRequestTracker


DOI = {IdentifierType.DOI: "10.1234/test"}


class TestFailedRequestTracker:
    """Tests for FailedRequestTracker."""

    @pytest.fixture
    def tracker(self):
        return FailedRequestTracker()

    def test_first_failure_starts_at_zero(self, tracker):
        """A new entry should have retry_count 0."""
        entry = tracker.record_failure("pub1", DOI, NotFoundError())
        assert entry.retry_count == 0
        assert tracker.failure_count == 1

    def test_repeated_failures_increment(self, tracker):
        """Three failures for one publication should give retry_count 2."""
        for _ in range(3):
            tracker.record_failure("pub1", DOI, NetworkError("HTTP 500"))
        entries = tracker.requests_for_retry()
        assert len(entries) == 1
        assert entries[0].retry_count == 2
        assert tracker.failure_count == 1

    def test_repeat_updates_error_and_identifiers(self, tracker):
        """A repeat failure should update details but keep first_failed_at."""
        first = tracker.record_failure("pub1", DOI, NotFoundError())
        richer = {**DOI, IdentifierType.ARXIV: "2301.01234"}
        second = tracker.record_failure("pub1", richer, NetworkError("HTTP 502"))
        assert second.identifiers == richer
        assert second.last_error == "Network error: HTTP 502"
        assert second.first_failed_at == first.first_failed_at
        assert second.last_failed_at >= first.last_failed_at

    def test_clear_failure_removes_only_that_entry(self, tracker):
        """clear_failure should remove exactly one entry."""
        tracker.record_failure("pub1", DOI, NotFoundError())
        tracker.record_failure("pub2", DOI, NotFoundError())
        assert tracker.clear_failure("pub1")
        assert not tracker.clear_failure("pub1")
        assert [e.publication_id for e in tracker.requests_for_retry()] == ["pub2"]

    def test_clear_all(self, tracker):
        """clear_all should empty the tracker."""
        tracker.record_failure("pub1", DOI, NotFoundError())
        tracker.record_failure("pub2", DOI, NotFoundError())
        tracker.clear_all()
        assert tracker.failure_count == 0
        assert tracker.requests_for_retry() == []

    def test_returned_entries_are_copies(self, tracker):
        """Mutating a returned entry should not affect the tracker."""
        tracker.record_failure("pub1", DOI, NotFoundError())
        entry = tracker.get("pub1")
        entry.retry_count = 99
        entry.identifiers[IdentifierType.BIBCODE] = "x"
        assert tracker.get("pub1").retry_count == 0
        assert IdentifierType.BIBCODE not in tracker.get("pub1").identifiers

    def test_concurrent_recording(self, tracker):
        """Concurrent failures for one publication should all be counted."""
        def worker():
            for _ in range(50):
                tracker.record_failure("pub1", DOI, NotFoundError())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.get("pub1").retry_count == 199
