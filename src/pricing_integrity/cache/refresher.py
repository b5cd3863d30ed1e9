from __future__ import annotations

import logging
import threading
from typing import Callable


class CatalogRefresher:
    """Daemon thread that rebuilds the catalog snapshot on a fixed interval."""

    def __init__(self, refresh: Callable[[], object], interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._refresh = refresh
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="catalog-refresh-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._refresh()
            except Exception:  # noqa: BLE001 - next tick retries
                logging.exception("Background catalog refresh failed")
