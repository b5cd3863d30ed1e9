import threading
import time

import pytest

from pricing_integrity.cache.catalog_cache import CatalogCache
from pricing_integrity.cache.refresher import CatalogRefresher
from pricing_integrity.cache.store import CacheStore, MemoryCacheStore
from pricing_integrity.catalog.provider import DEFAULT_PLANS
from pricing_integrity.errors import CatalogUnavailableError


class BrokenStore(CacheStore):
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    def delete(self, key):
        raise ConnectionError("cache down")


def _cache(clock, ttl=300):
    return CatalogCache(MemoryCacheStore(clock=clock), ttl_seconds=ttl, clock=clock)


def test_put_then_get_and_ttl_expiry(clock):
    c = _cache(clock)
    assert c.get() is None
    snap = c.put(DEFAULT_PLANS)
    assert c.get().version == snap.version
    assert len(c.get().plans) == len(DEFAULT_PLANS)
    clock.advance(300)
    assert c.get() is None


def test_version_changes_on_every_put(clock):
    c = _cache(clock)
    versions = {c.put(DEFAULT_PLANS).version for _ in range(20)}
    assert len(versions) == 20
    assert all(v.startswith(f"v{int(clock.now * 1000)}_") for v in versions)


def test_statistics_after_invalidate_and_rebuild(clock):
    c = _cache(clock)
    first = c.put(DEFAULT_PLANS)
    stats = c.statistics()
    assert stats.is_cached and stats.plan_count == 4 and stats.version == first.version
    c.invalidate()
    assert c.statistics().is_cached is False
    assert c.last_known_good is None
    second = c.get_or_build(lambda: DEFAULT_PLANS)
    stats = c.statistics()
    assert stats.is_cached and stats.version == second.version != first.version


def test_backend_errors_read_as_miss(clock):
    c = CatalogCache(BrokenStore(), clock=clock)
    assert c.get() is None
    snap = c.put(DEFAULT_PLANS)
    assert c.last_known_good is snap
    c.invalidate()
    assert c.statistics().is_cached is False


def test_corrupt_entry_is_a_miss(clock):
    store = MemoryCacheStore(clock=clock)
    store.set("pricing:validated_plans", "{not json", 300)
    assert CatalogCache(store, clock=clock).get() is None


def test_single_flight_on_cold_cache(clock):
    c = _cache(clock)
    calls = []
    gate = threading.Event()

    def build():
        calls.append(1)
        gate.wait(2)
        return DEFAULT_PLANS

    results = []
    threads = [threading.Thread(target=lambda: results.append(c.get_or_build(build))) for _ in range(8)]
    for t in threads:
        t.start()
    time.sleep(0.2)
    gate.set()
    for t in threads:
        t.join(5)
    assert len(results) == 8
    assert len({r.version for r in results}) == 1
    assert len(calls) == 1


def test_build_failure_propagates_and_next_call_retries(clock):
    c = _cache(clock)

    def build():
        raise CatalogUnavailableError("provider down")

    with pytest.raises(CatalogUnavailableError):
        c.get_or_build(build)
    assert c.get_or_build(lambda: DEFAULT_PLANS).plans


def test_refresher_runs_until_stopped():
    ticks = []
    r = CatalogRefresher(lambda: ticks.append(1), interval_seconds=0.05)
    r.start()
    assert r.running
    time.sleep(0.3)
    r.stop()
    assert not r.running
    assert len(ticks) >= 2


def test_refresher_survives_failures():
    ticks = []

    def refresh():
        ticks.append(1)
        raise CatalogUnavailableError("down")

    r = CatalogRefresher(refresh, interval_seconds=0.05)
    r.start()
    time.sleep(0.25)
    r.stop()
    assert len(ticks) >= 2
