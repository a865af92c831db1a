from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterator

from prometheus_client import CollectorRegistry
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from vmanage_prom_exporter.cache import DEVICES_KEY, SnapshotCache, interfaces_key, system_status_key
from vmanage_prom_exporter.models import Device, DeviceInterface, DeviceSystemStatus
from vmanage_prom_exporter.service import ErrorCounter, VManageScraper


GAUGE = "gauge"
COUNTER = "counter"

DEVICE_INFO_LABELS = ("DeviceID", "SystemIP", "Hostname", "DeviceModel", "Version", "DeviceOS")
DEVICE_LABELS = ("DeviceID", "Hostname")
INTERFACE_LABELS = ("DeviceID", "VdeviceName", "Ifname", "IfIndex", "AfType", "VdeviceDataKey")


@dataclass(frozen=True)
class MetricSample:
    name: str
    documentation: str
    labels: tuple[tuple[str, str], ...]
    value: float
    kind: str

    @property
    def label_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.labels)

    @property
    def label_values(self) -> tuple[str, ...]:
        return tuple(value for _, value in self.labels)


def _device_info_labels(device: Device) -> tuple[tuple[str, str], ...]:
    values = (
        device.device_id,
        device.system_ip,
        device.hostname,
        device.device_model,
        device.version,
        device.device_os,
    )
    return tuple(zip(DEVICE_INFO_LABELS, values))


def _device_labels(device: Device) -> tuple[tuple[str, str], ...]:
    return tuple(zip(DEVICE_LABELS, (device.device_id, device.hostname)))


def _interface_labels(device: Device, interface: DeviceInterface) -> tuple[tuple[str, str], ...]:
    values = (
        device.device_id,
        interface.vdevice_name,
        interface.ifname,
        str(interface.if_index),
        interface.af_type,
        interface.vdevice_data_key,
    )
    return tuple(zip(INTERFACE_LABELS, values))


_SYSTEM_GAUGES: tuple[tuple[str, str], ...] = (
    ("vmanage_device_mem_used", "Memory Used"),
    ("vmanage_device_mem_free", "Memory Free"),
    ("vmanage_device_mem_total", "Memory Total"),
    ("vmanage_device_cpu_user_percentage", "CPU User(%)"),
    ("vmanage_device_cpu_system_percentage", "CPU System(%)"),
    ("vmanage_device_cpu_idle_percentage", "CPU Idle(%)"),
    ("vmanage_device_load_avg1", "Load Average 1 min"),
    ("vmanage_device_load_avg5", "Load Average 5 min"),
    ("vmanage_device_load_avg15", "Load Average 15 min"),
)

_INTERFACE_COUNTERS: tuple[tuple[str, str, str], ...] = (
    ("vmanage_device_interface_tx_octets", "Interface TX Octets", "tx_octets"),
    ("vmanage_device_interface_rx_octets", "Interface RX Octets", "rx_octets"),
    ("vmanage_device_interface_tx_packets", "Interface TX Unicast Packets", "tx_packets"),
    ("vmanage_device_interface_rx_packets", "Interface RX Unicast Packets", "rx_packets"),
    ("vmanage_device_interface_tx_errors", "Interface TX Errors", "tx_errors"),
    ("vmanage_device_interface_rx_errors", "Interface RX Errors", "rx_errors"),
    ("vmanage_device_interface_tx_drops", "Interface TX Drops", "tx_drops"),
    ("vmanage_device_interface_rx_drops", "Interface RX Drops", "rx_drops"),
)


def _system_status_values(status: DeviceSystemStatus) -> tuple[float, ...]:
    memory = status.memory()
    cpu = status.cpu()
    return (
        memory.used,
        memory.free,
        memory.total,
        cpu.user_percentage,
        cpu.system_percentage,
        cpu.idle_percentage,
        cpu.load_avg1,
        cpu.load_avg5,
        cpu.load_avg15,
    )


def project_samples(cache: SnapshotCache, now_ms: int | None = None) -> list[MetricSample]:
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    cached_devices, found = cache.get(DEVICES_KEY)
    devices: dict[str, Device] = cached_devices if found and isinstance(cached_devices, dict) else {}

    samples = [
        MetricSample(
            "vmanage_devices",
            "Number of devices managed by vmanage",
            (),
            float(len(devices)),
            GAUGE,
        )
    ]

    for device in devices.values():
        labels = _device_labels(device)
        samples.append(
            MetricSample(
                "vmanage_device_info",
                "Info about device",
                _device_info_labels(device),
                1.0 if device.is_normal else 0.0,
                GAUGE,
            )
        )
        samples.append(
            MetricSample(
                "vmanage_device_status",
                "Status of device",
                (*labels, ("status", device.status)),
                1.0 if device.is_normal else 0.0,
                GAUGE,
            )
        )
        samples.append(
            MetricSample(
                "vmanage_device_reachability",
                "Reachability of device",
                (*labels, ("reachability", device.reachability)),
                1.0 if device.is_reachable else 0.0,
                GAUGE,
            )
        )
        samples.append(
            MetricSample(
                "vmanage_device_uptime",
                "Uptime of device in milliseconds",
                labels,
                float(now_ms - device.uptime_date),
                COUNTER,
            )
        )

        status, found = cache.get(system_status_key(device.device_id))
        if found and isinstance(status, DeviceSystemStatus):
            for (name, documentation), value in zip(_SYSTEM_GAUGES, _system_status_values(status)):
                samples.append(MetricSample(name, documentation, labels, value, GAUGE))

        interfaces, found = cache.get(interfaces_key(device.device_id))
        if found and interfaces:
            for interface in interfaces:
                if_labels = _interface_labels(device, interface)
                for name, documentation, attribute in _INTERFACE_COUNTERS:
                    samples.append(
                        MetricSample(
                            name,
                            documentation,
                            if_labels,
                            float(getattr(interface, attribute)),
                            COUNTER,
                        )
                    )

    return samples


def _group_families(samples: list[MetricSample]) -> Iterator[Metric]:
    families: dict[str, GaugeMetricFamily | CounterMetricFamily] = {}
    for sample in samples:
        family = families.get(sample.name)
        if family is None:
            family_type = CounterMetricFamily if sample.kind == COUNTER else GaugeMetricFamily
            family = family_type(sample.name, sample.documentation, labels=sample.label_names)
            families[sample.name] = family
        family.add_metric(sample.label_values, sample.value)
    yield from families.values()


class VManageCollector(Collector):
    def __init__(self, cache: SnapshotCache) -> None:
        self.cache = cache

    def collect(self) -> Iterator[Metric]:
        return _group_families(project_samples(self.cache))


class ExporterStatsCollector(Collector):
    def __init__(self, errors: ErrorCounter, scraper: VManageScraper | None = None) -> None:
        self.errors = errors
        self.scraper = scraper

    def collect(self) -> Iterator[Metric]:
        yield GaugeMetricFamily(
            "vmanage_exporter_scrape_errors",
            "Number of scrape errors",
            value=float(self.errors.value),
        )
        last_result = self.scraper.last_result if self.scraper is not None else None
        if last_result is not None:
            yield GaugeMetricFamily(
                "vmanage_exporter_last_scrape_duration_seconds",
                "Duration of the last vmanage scrape cycle in seconds",
                value=last_result.duration_seconds,
            )


def build_registry(
    cache: SnapshotCache,
    errors: ErrorCounter,
    scraper: VManageScraper | None = None,
    registry: CollectorRegistry | None = None,
) -> CollectorRegistry:
    if registry is None:
        registry = CollectorRegistry()
    registry.register(ExporterStatsCollector(errors, scraper))
    registry.register(VManageCollector(cache))
    return registry
