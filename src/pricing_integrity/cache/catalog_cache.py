from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Callable, Optional

from pydantic import ValidationError

from ..api.models import CacheStatistics, CatalogSnapshot, PricingPlan
from ..errors import CatalogUnavailableError
from .store import CacheStore


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.snapshot: CatalogSnapshot | None = None
        self.error: BaseException | None = None


class CatalogCache:
    """Versioned, short-lived snapshot of the validated plan catalog.

    Reads treat any backend error as a miss so the caller rebuilds. A snapshot is
    serialized in full before the single ``store.set`` that publishes it, so a
    reader never sees a partial catalog. The last snapshot this process built or
    read is retained in memory for degraded display reads.
    """

    def __init__(
        self,
        store: CacheStore,
        ttl_seconds: int = 300,
        key: str = "pricing:validated_plans",
        clock: Callable[[], float] = time.time,
        follower_wait_seconds: float = 10.0,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key = key
        self._clock = clock
        self.follower_wait_seconds = follower_wait_seconds
        self._flight_lock = threading.Lock()
        self._in_flight: _Flight | None = None
        self._last_good: CatalogSnapshot | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def new_version(self) -> str:
        return f"v{self._now_ms()}_{secrets.token_hex(5)}"

    def get(self) -> Optional[CatalogSnapshot]:
        try:
            raw = self.store.get(self.key)
        except Exception as e:  # noqa: BLE001 - read path fails open to a rebuild
            logging.warning("Catalog cache read failed, treating as miss: %s", e)
            return None
        if not raw:
            return None
        try:
            snap = CatalogSnapshot.model_validate_json(raw)
        except ValidationError:
            logging.warning("Discarding undecodable catalog snapshot under %s", self.key)
            return None
        if self._now_ms() - snap.last_updated_ms >= self.ttl_seconds * 1000:
            return None
        self._last_good = snap
        return snap

    def put(self, plans: list[PricingPlan]) -> CatalogSnapshot:
        snap = CatalogSnapshot(plans=list(plans), last_updated_ms=self._now_ms(), version=self.new_version())
        payload = snap.model_dump_json()
        try:
            self.store.set(self.key, payload, self.ttl_seconds)
        except Exception as e:  # noqa: BLE001
            logging.warning("Catalog cache write failed; snapshot %s kept in-process only: %s", snap.version, e)
        self._last_good = snap
        return snap

    def invalidate(self) -> None:
        try:
            self.store.delete(self.key)
        except Exception as e:  # noqa: BLE001
            logging.warning("Catalog cache invalidate failed: %s", e)
        # Invalidation means "do not trust"; nothing is kept to degrade to
        self._last_good = None

    @property
    def last_known_good(self) -> CatalogSnapshot | None:
        return self._last_good

    def statistics(self) -> CacheStatistics:
        snap = self.get()
        if snap is None:
            return CacheStatistics(is_cached=False)
        return CacheStatistics(
            is_cached=True,
            last_updated_ms=snap.last_updated_ms,
            version=snap.version,
            plan_count=len(snap.plans),
        )

    def get_or_build(self, build: Callable[[], list[PricingPlan]]) -> CatalogSnapshot:
        """Return the cached snapshot, rebuilding it at most once per cold episode.

        Concurrent callers on a cold cache elect one leader; the rest wait for its
        result (or its exception). No lock is held while ``build`` runs.
        """
        snap = self.get()
        if snap is not None:
            return snap
        with self._flight_lock:
            flight = self._in_flight
            leader = flight is None
            if leader:
                flight = self._in_flight = _Flight()
        if not leader:
            if not flight.done.wait(self.follower_wait_seconds):
                raise CatalogUnavailableError("timed out waiting for catalog rebuild")
            if flight.error is not None:
                raise flight.error
            return flight.snapshot
        try:
            snap = self.put(build())
            flight.snapshot = snap
            return snap
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._flight_lock:
                self._in_flight = None
            flight.done.set()
