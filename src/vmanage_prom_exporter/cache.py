from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable


LOGGER = logging.getLogger("vmanage_prom_exporter.cache")

DEVICES_KEY = "devices"


def interfaces_key(device_id: str) -> str:
    return f"interfaces:{device_id}"


def system_status_key(device_id: str) -> str:
    return f"systemStatus:{device_id}"


class SnapshotCache:
    def __init__(
        self,
        ttl_seconds: float,
        sweep_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @classmethod
    def for_scrape_interval(cls, interval_seconds: float) -> SnapshotCache:
        return cls(ttl_seconds=5 * interval_seconds, sweep_interval_seconds=10 * interval_seconds)

    def set(self, key: str, value: Any) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[key] = (value, expires_at)

    def get(self, key: str) -> tuple[Any, bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None, False
        value, expires_at = entry
        if now >= expires_at:
            return None, False
        return value, True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            LOGGER.debug("swept %d expired cache entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start(self) -> None:
        if self._sweeper is not None or self.sweep_interval_seconds <= 0:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="snapshot-cache-sweeper", daemon=True)
        self._sweeper.start()

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5.0)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            self.sweep()
