from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from vmanage_prom_exporter.cache import DEVICES_KEY, SnapshotCache, interfaces_key, system_status_key
from vmanage_prom_exporter.client import (
    CancelledError,
    Deadline,
    InterfaceListOptions,
    SystemStatusListOptions,
    VManageClient,
    VManageError,
)
from vmanage_prom_exporter.models import Device


LOGGER = logging.getLogger("vmanage_prom_exporter.scraper")
DEFAULT_WORKERS = 5


class ErrorCounter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass(frozen=True)
class ScrapeResult:
    success: bool
    device_count: int = 0
    errors: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    error: str | None = None


class _CycleStats:
    def __init__(self) -> None:
        self.errors = 0
        self.skipped = 0
        self._lock = threading.Lock()

    def add_error(self) -> None:
        with self._lock:
            self.errors += 1

    def add_skipped(self) -> None:
        with self._lock:
            self.skipped += 1


class VManageScraper:
    def __init__(
        self,
        client: VManageClient,
        cache: SnapshotCache,
        errors: ErrorCounter,
        *,
        workers: int = DEFAULT_WORKERS,
        synced: bool = True,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.client = client
        self.cache = cache
        self.errors = errors
        self.workers = workers
        self.synced = synced
        self.last_result: ScrapeResult | None = None

    def run(self, deadline: Deadline | None = None) -> ScrapeResult:
        if deadline is None:
            deadline = Deadline(None)
        LOGGER.info("refreshing device list")
        started = time.monotonic()

        try:
            device_list = self.client.devices(deadline=deadline)
        except VManageError as error:
            LOGGER.error("error fetching device list: %s", error)
            self.errors.inc()
            result = ScrapeResult(
                success=False,
                errors=1,
                duration_seconds=time.monotonic() - started,
                error=str(error),
            )
            self.last_result = result
            return result

        devices: dict[str, Device] = {device.device_id: device for device in device_list}
        LOGGER.info("successfully refreshed device list: %d devices", len(devices))
        self.cache.set(DEVICES_KEY, devices)

        pending: queue.Queue[str] = queue.Queue(maxsize=len(devices))
        for device_id in devices:
            pending.put_nowait(device_id)

        stats = _CycleStats()
        threads = [
            threading.Thread(
                target=self._worker,
                args=(pending, deadline, stats),
                name=f"vmanage-scrape-worker-{index}",
                daemon=True,
            )
            for index in range(min(self.workers, max(1, len(devices))))
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        duration = time.monotonic() - started
        LOGGER.info(
            "refresh done in %.3fs: %d devices, %d errors, %d skipped",
            duration,
            len(devices),
            stats.errors,
            stats.skipped,
        )
        result = ScrapeResult(
            success=True,
            device_count=len(devices),
            errors=stats.errors,
            skipped=stats.skipped,
            duration_seconds=duration,
        )
        self.last_result = result
        return result

    def _worker(self, pending: queue.Queue[str], deadline: Deadline, stats: _CycleStats) -> None:
        while True:
            try:
                device_id = pending.get_nowait()
            except queue.Empty:
                return
            if deadline.expired():
                LOGGER.warning("timed out refreshing statistics, skipping device %s", device_id)
                stats.add_skipped()
                continue
            try:
                self._refresh_device(device_id, deadline, stats)
            except CancelledError as error:
                LOGGER.warning("timed out refreshing statistics for device %s: %s", device_id, error)
                stats.add_skipped()

    def _record_error(self, stats: _CycleStats) -> None:
        self.errors.inc()
        stats.add_error()

    def _refresh_device(self, device_id: str, deadline: Deadline, stats: _CycleStats) -> None:
        LOGGER.info("refreshing interface statistics for device %s", device_id)
        try:
            interfaces = self.client.device_interfaces(
                InterfaceListOptions(device_id=device_id),
                synced=self.synced,
                deadline=deadline,
            )
        except CancelledError:
            raise
        except VManageError as error:
            LOGGER.warning("error fetching interface statistics for device %s: %s", device_id, error)
            self._record_error(stats)
        else:
            self.cache.set(interfaces_key(device_id), interfaces)

        LOGGER.info("refreshing system status for device %s", device_id)
        try:
            statuses = self.client.device_system_status(
                SystemStatusListOptions(device_id=device_id),
                synced=self.synced,
                deadline=deadline,
            )
        except CancelledError:
            raise
        except VManageError as error:
            LOGGER.warning("error fetching system status for device %s: %s", device_id, error)
            self._record_error(stats)
            return

        if len(statuses) != 1:
            LOGGER.warning(
                "error fetching system status for device %s: expected a single entry, got %d",
                device_id,
                len(statuses),
            )
            self._record_error(stats)
            return

        self.cache.set(system_status_key(device_id), statuses[0])


class ScrapeScheduler:
    def __init__(
        self,
        run_cycle: Callable[[Deadline], Any],
        *,
        interval_seconds: float,
        tick_seconds: float | None = None,
        exclusive: bool = False,
    ) -> None:
        self._run_cycle = run_cycle
        self.interval_seconds = interval_seconds
        self.tick_seconds = tick_seconds if tick_seconds is not None else interval_seconds * 1.5
        self.exclusive = exclusive
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._ticker: threading.Thread | None = None
        self._cycles: list[threading.Thread] = []
        self._cycles_lock = threading.Lock()

    def fire(self) -> threading.Thread | None:
        if self.exclusive and not self._running.acquire(blocking=False):
            LOGGER.warning("previous scrape cycle still running, skipping this tick")
            return None
        thread = threading.Thread(target=self._run_once, name="vmanage-scrape-cycle", daemon=True)
        with self._cycles_lock:
            self._cycles = [cycle for cycle in self._cycles if cycle.is_alive()]
            self._cycles.append(thread)
        thread.start()
        return thread

    def _run_once(self) -> None:
        try:
            self._run_cycle(Deadline(self.interval_seconds))
        except Exception:
            LOGGER.exception("scrape cycle crashed")
        finally:
            if self.exclusive:
                self._running.release()

    def start(self) -> None:
        if self._ticker is not None:
            return
        self._stop.clear()
        self._ticker = threading.Thread(target=self._tick_loop, name="vmanage-scrape-scheduler", daemon=True)
        self._ticker.start()

    def _tick_loop(self) -> None:
        self.fire()
        next_tick_at = time.monotonic() + self.tick_seconds
        while not self._stop.wait(max(0.0, next_tick_at - time.monotonic())):
            self.fire()
            next_tick_at += self.tick_seconds

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=timeout)
            self._ticker = None

    def wait_idle(self, timeout: float | None = None) -> None:
        with self._cycles_lock:
            cycles = list(self._cycles)
        for cycle in cycles:
            cycle.join(timeout=timeout)
