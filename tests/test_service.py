import logging
import threading
import time
from typing import Any, Callable

from vmanage_prom_exporter.cache import DEVICES_KEY, SnapshotCache, interfaces_key, system_status_key
from vmanage_prom_exporter.client import (
    CancelledError,
    Deadline,
    FetchError,
    InterfaceListOptions,
    SystemStatusListOptions,
    TransportError,
)
from vmanage_prom_exporter.models import Device, DeviceInterface, DeviceSystemStatus
from vmanage_prom_exporter.service import ErrorCounter, ScrapeScheduler, VManageScraper


DEVICE_A = Device(device_id="A", hostname="edge-a", status="normal", reachability="reachable", uptime_date=1000)
DEVICE_B = Device(device_id="B", hostname="edge-b", status="degraded", reachability="unreachable", uptime_date=2000)
STATUS_A = DeviceSystemStatus(mem_used="2048", mem_total="4096", cpu_user="10.5")


class StubClient:
    def __init__(
        self,
        devices: list[Device] | Exception,
        *,
        interfaces: dict[str, Any] | None = None,
        statuses: dict[str, Any] | None = None,
        on_fetch: Callable[[str, str, Deadline | None], None] | None = None,
    ) -> None:
        self._devices = devices
        self._interfaces = interfaces or {}
        self._statuses = statuses or {}
        self._on_fetch = on_fetch
        self.calls: list[tuple[str, str, bool]] = []
        self._lock = threading.Lock()

    def _record(self, kind: str, device_id: str, synced: bool, deadline: Deadline | None) -> None:
        with self._lock:
            self.calls.append((kind, device_id, synced))
        if self._on_fetch is not None:
            self._on_fetch(kind, device_id, deadline)

    def devices(self, *, deadline: Deadline | None = None) -> list[Device]:
        if isinstance(self._devices, Exception):
            raise self._devices
        return list(self._devices)

    def device_interfaces(
        self,
        options: InterfaceListOptions,
        *,
        synced: bool = True,
        deadline: Deadline | None = None,
    ) -> list[DeviceInterface]:
        device_id = options.device_id or ""
        self._record("interfaces", device_id, synced, deadline)
        result = self._interfaces.get(device_id, [])
        if isinstance(result, Exception):
            raise result
        return result

    def device_system_status(
        self,
        options: SystemStatusListOptions,
        *,
        synced: bool = True,
        deadline: Deadline | None = None,
    ) -> list[DeviceSystemStatus]:
        device_id = options.device_id or ""
        self._record("system_status", device_id, synced, deadline)
        result = self._statuses.get(device_id, [])
        if isinstance(result, Exception):
            raise result
        return result


def _cache() -> SnapshotCache:
    return SnapshotCache(ttl_seconds=75.0, sweep_interval_seconds=150.0)


def test_run_caches_devices_interfaces_and_system_status() -> None:
    interface = DeviceInterface(vdevice_name="A", ifname="ge0/0", if_index=1)
    client = StubClient(
        [DEVICE_A, DEVICE_B],
        interfaces={"A": [interface], "B": []},
        statuses={"A": [STATUS_A], "B": FetchError(500, "boom")},
    )
    cache = _cache()
    errors = ErrorCounter()

    result = VManageScraper(client, cache, errors).run()

    assert result.success is True
    assert result.device_count == 2
    assert result.errors == 1
    assert errors.value == 1
    assert cache.get(DEVICES_KEY) == ({"A": DEVICE_A, "B": DEVICE_B}, True)
    assert cache.get(interfaces_key("A")) == ([interface], True)
    assert cache.get(interfaces_key("B")) == ([], True)
    assert cache.get(system_status_key("A")) == (STATUS_A, True)
    assert cache.get(system_status_key("B"))[1] is False


def test_run_uses_synced_endpoints_and_fetches_interfaces_before_status() -> None:
    client = StubClient([DEVICE_A], statuses={"A": [STATUS_A]})

    VManageScraper(client, _cache(), ErrorCounter()).run()

    assert client.calls == [("interfaces", "A", True), ("system_status", "A", True)]


def test_device_list_failure_keeps_stale_cache() -> None:
    cache = _cache()
    cache.set(DEVICES_KEY, {"A": DEVICE_A})
    cache.set(system_status_key("A"), STATUS_A)
    errors = ErrorCounter()
    client = StubClient(TransportError("connection refused"))

    result = VManageScraper(client, cache, errors).run()

    assert result.success is False
    assert "connection refused" in (result.error or "")
    assert errors.value == 1
    assert cache.get(DEVICES_KEY) == ({"A": DEVICE_A}, True)
    assert cache.get(system_status_key("A")) == (STATUS_A, True)
    assert client.calls == []


def test_system_status_with_wrong_record_count_leaves_cache_untouched(caplog) -> None:
    cache = _cache()
    previous = DeviceSystemStatus(mem_used="1")
    cache.set(system_status_key("A"), previous)
    cache.set(system_status_key("B"), previous)
    errors = ErrorCounter()
    client = StubClient(
        [DEVICE_A, DEVICE_B],
        statuses={"A": [STATUS_A, STATUS_A], "B": []},
    )

    with caplog.at_level(logging.WARNING):
        VManageScraper(client, cache, errors).run()

    assert errors.value == 2
    assert cache.get(system_status_key("A")) == (previous, True)
    assert cache.get(system_status_key("B")) == (previous, True)
    assert "expected a single entry" in caplog.text


def test_interface_failure_does_not_block_system_status() -> None:
    cache = _cache()
    errors = ErrorCounter()
    client = StubClient(
        [DEVICE_A],
        interfaces={"A": FetchError(502, "bad gateway")},
        statuses={"A": [STATUS_A]},
    )

    VManageScraper(client, cache, errors).run()

    assert errors.value == 1
    assert cache.get(interfaces_key("A"))[1] is False
    assert cache.get(system_status_key("A")) == (STATUS_A, True)


def test_expired_deadline_skips_remaining_devices_without_counting_errors() -> None:
    deadline = Deadline(None)

    def cancel_after_device_a(kind: str, device_id: str, _deadline: Deadline | None) -> None:
        if kind == "system_status" and device_id == "A":
            deadline.cancel()

    cache = _cache()
    errors = ErrorCounter()
    client = StubClient(
        [DEVICE_A, DEVICE_B],
        statuses={"A": [STATUS_A], "B": [STATUS_A]},
        on_fetch=cancel_after_device_a,
    )

    result = VManageScraper(client, cache, errors, workers=1).run(deadline)

    assert result.skipped == 1
    assert errors.value == 0
    assert cache.get(system_status_key("A")) == (STATUS_A, True)
    assert cache.get(system_status_key("B"))[1] is False
    assert cache.get(interfaces_key("B"))[1] is False
    assert [call for call in client.calls if call[1] == "B"] == []


def test_in_flight_cancellation_is_a_skip_not_an_error() -> None:
    cache = _cache()
    errors = ErrorCounter()
    client = StubClient(
        [DEVICE_A, DEVICE_B],
        interfaces={"B": CancelledError("deadline exceeded")},
        statuses={"A": [STATUS_A], "B": [STATUS_A]},
    )

    result = VManageScraper(client, cache, errors).run()

    assert result.skipped == 1
    assert errors.value == 0
    assert cache.get(system_status_key("B"))[1] is False


def test_worker_pool_is_bounded() -> None:
    devices = [Device(device_id=f"D{index}") for index in range(12)]
    active = 0
    peak = 0
    lock = threading.Lock()

    def track(kind: str, device_id: str, _deadline: Deadline | None) -> None:
        nonlocal active, peak
        if kind != "interfaces":
            return
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1

    client = StubClient(devices, on_fetch=track)

    result = VManageScraper(client, _cache(), ErrorCounter(), workers=3).run()

    assert result.device_count == 12
    assert len([call for call in client.calls if call[0] == "interfaces"]) == 12
    assert 1 < peak <= 3


def test_error_counter_only_increases() -> None:
    errors = ErrorCounter()

    threads = [threading.Thread(target=lambda: [errors.inc() for _ in range(100)]) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors.value == 400


def test_scheduler_fires_immediately_and_passes_interval_deadline() -> None:
    fired = threading.Event()
    remaining: list[float | None] = []

    def run_cycle(deadline: Deadline) -> None:
        remaining.append(deadline.remaining())
        fired.set()

    scheduler = ScrapeScheduler(run_cycle, interval_seconds=30.0)
    scheduler.start()
    try:
        assert fired.wait(2.0) is True
    finally:
        scheduler.stop(timeout=2.0)
        scheduler.wait_idle(timeout=2.0)

    assert scheduler.tick_seconds == 45.0
    assert remaining[0] is not None
    assert 0.0 < remaining[0] <= 30.0


def test_scheduler_ticks_periodically() -> None:
    count = 0
    lock = threading.Lock()

    def run_cycle(_deadline: Deadline) -> None:
        nonlocal count
        with lock:
            count += 1

    scheduler = ScrapeScheduler(run_cycle, interval_seconds=1.0, tick_seconds=0.05)
    scheduler.start()
    time.sleep(0.3)
    scheduler.stop(timeout=2.0)
    scheduler.wait_idle(timeout=2.0)

    assert count >= 3


def test_scheduler_allows_overlapping_cycles() -> None:
    release = threading.Event()
    started = threading.Semaphore(0)

    def run_cycle(_deadline: Deadline) -> None:
        started.release()
        release.wait(2.0)

    scheduler = ScrapeScheduler(run_cycle, interval_seconds=1.0)
    first = scheduler.fire()
    second = scheduler.fire()

    assert started.acquire(timeout=2.0) is True
    assert started.acquire(timeout=2.0) is True
    assert first is not None and second is not None
    assert first.is_alive() and second.is_alive()
    release.set()
    scheduler.wait_idle(timeout=2.0)


def test_exclusive_scheduler_skips_tick_while_cycle_running() -> None:
    release = threading.Event()
    started = threading.Event()

    def run_cycle(_deadline: Deadline) -> None:
        started.set()
        release.wait(2.0)

    scheduler = ScrapeScheduler(run_cycle, interval_seconds=1.0, exclusive=True)
    first = scheduler.fire()
    assert started.wait(2.0) is True

    assert scheduler.fire() is None

    release.set()
    scheduler.wait_idle(timeout=2.0)
    assert first is not None and not first.is_alive()
    assert scheduler.fire() is not None
    scheduler.wait_idle(timeout=2.0)
