"""
Tests for admission control and the result cache.
"""

import threading
import time

import pytest

from callsheet.extract.errors import AdmissionRejected
from callsheet.extract.schemas import ExtractionMetadata, ExtractionResult, Strategy
from callsheet.service.admission import AdmissionController
from callsheet.service.cache import ExtractionCache
from callsheet.service.config import AdmissionSettings, CacheSettings


def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


class TestAdmissionController:
    """Tests for AdmissionController."""

    def test_per_user_cap(self):
        """A user over the per-user cap is rejected when the queue is full."""
        controller = AdmissionController(global_limit=10, per_user_limit=2, max_queue_depth=0)
        controller.acquire("alice")
        controller.acquire("alice")
        with pytest.raises(AdmissionRejected):
            controller.acquire("alice")
        # other users are unaffected
        controller.acquire("bob")
        assert controller.stats().per_user == {"alice": 2, "bob": 1}

    def test_global_cap(self):
        """The global cap applies across users."""
        controller = AdmissionController(global_limit=2, per_user_limit=2, max_queue_depth=0)
        controller.acquire("alice")
        controller.acquire("bob")
        with pytest.raises(AdmissionRejected):
            controller.acquire("carol")
        assert controller.stats().global_active == 2

    def test_release(self):
        """Released permits free their slot; release is idempotent."""
        controller = AdmissionController(global_limit=1, per_user_limit=1, max_queue_depth=0)
        permit = controller.acquire("alice")
        permit.release()
        permit.release()
        assert controller.stats().global_active == 0
        with controller.acquire("alice"):
            assert controller.stats().global_active == 1
        assert controller.stats().global_active == 0

    def test_anonymous(self):
        """Callers without an id share the anonymous bucket."""
        controller = AdmissionController(global_limit=5, per_user_limit=1, max_queue_depth=0)
        controller.acquire()
        with pytest.raises(AdmissionRejected):
            controller.acquire(None)

    def test_wait_timeout(self):
        """Queued callers give up after the timeout."""
        controller = AdmissionController(global_limit=1, per_user_limit=1, max_queue_depth=5)
        controller.acquire("alice")
        with pytest.raises(AdmissionRejected):
            controller.acquire("bob", timeout=0.05)
        assert controller.stats().global_pending == 0

    def test_waiter_admitted_on_release(self):
        """A queued caller proceeds once a slot is freed."""
        controller = AdmissionController(global_limit=1, per_user_limit=1, max_queue_depth=5)
        held = controller.acquire("alice")
        admitted = []

        def waiter():
            with controller.acquire("bob", timeout=5.0):
                admitted.append("bob")

        thread = threading.Thread(target=waiter)
        thread.start()
        _wait_until(lambda: controller.stats().global_pending == 1)
        assert admitted == []
        held.release()
        thread.join(timeout=5.0)
        assert admitted == ["bob"]
        assert controller.stats().global_active == 0

    def test_invalid_limits(self):
        """Limits must be positive."""
        with pytest.raises(ValueError):
            AdmissionController(global_limit=0)

    def test_from_settings(self):
        """Controllers are built from AdmissionSettings."""
        controller = AdmissionController.from_settings(AdmissionSettings(global_limit=3, per_user_limit=1))
        assert controller.global_limit == 3
        assert controller.per_user_limit == 1
        assert controller.max_queue_depth == 20


# ─── Cache ───


def _result(success=True) -> ExtractionResult:
    return ExtractionResult(
        success=success,
        metadata=ExtractionMetadata(strategy=Strategy.PATTERN_FAST_PATH),
        error=None if success else "empty",
    )


class TestExtractionCache:
    """Tests for ExtractionCache."""

    def test_put_get(self):
        """Stored results come back and hits are counted."""
        cache = ExtractionCache()
        key = ExtractionCache.make_key("text", "opts")
        assert cache.get(key) is None
        cache.put(key, _result())
        assert cache.get(key) is not None
        assert (cache.hits, cache.misses) == (1, 1)

    def test_key_includes_options(self):
        """Same text with different options gives different keys."""
        assert ExtractionCache.make_key("text", "a") != ExtractionCache.make_key("text", "b")
        assert ExtractionCache.make_key("text", "a") == ExtractionCache.make_key("text", "a")

    def test_failures_not_stored(self):
        """Unsuccessful results are never cached."""
        cache = ExtractionCache()
        cache.put("k", _result(success=False))
        assert len(cache) == 0

    def test_ttl_expiry(self, clock):
        """Entries expire after the TTL."""
        cache = ExtractionCache(maxsize=4, ttl=60, timer=clock)
        cache.put("k", _result())
        clock.advance(59)
        assert cache.get("k") is not None
        clock.advance(2)
        assert cache.get("k") is None

    def test_maxsize(self):
        """The cache holds at most maxsize entries."""
        cache = ExtractionCache(maxsize=2)
        for key in ("a", "b", "c"):
            cache.put(key, _result())
        assert len(cache) == 2

    def test_from_settings(self):
        """Disabled settings give no cache."""
        assert ExtractionCache.from_settings(CacheSettings(enabled=False)) is None
        assert isinstance(ExtractionCache.from_settings(CacheSettings()), ExtractionCache)
