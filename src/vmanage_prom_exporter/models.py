from __future__ import annotations

from dataclasses import dataclass
from typing import Any


STATUS_NORMAL = "normal"
REACHABLE = "reachable"


class ParseError(ValueError):
    pass


def parse_number(raw: Any) -> float:
    if isinstance(raw, bool):
        raise ParseError(f"boolean is not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw.strip())
        except ValueError as error:
            raise ParseError(f"not a number: {raw!r}") from error
    raise ParseError(f"unsupported numeric value: {raw!r}")


def parse_float(raw: Any, default: float = 0.0) -> float:
    try:
        return parse_number(raw)
    except ParseError:
        return default


def _as_int(raw: Any, default: int = 0) -> int:
    try:
        return int(parse_number(raw))
    except (ParseError, OverflowError, ValueError):
        return default


def normalize_if_index(raw: Any) -> int:
    # ifindex arrives as "14", 14 or 14.0 depending on the interface type
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            pass
    return _as_int(raw)


def _as_str(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw)


@dataclass(frozen=True)
class Device:
    device_id: str
    system_ip: str = ""
    hostname: str = ""
    device_model: str = ""
    version: str = ""
    device_os: str = ""
    personality: str = ""
    device_type: str = ""
    site_id: str = ""
    status: str = ""
    reachability: str = ""
    uptime_date: int = 0

    @property
    def is_normal(self) -> bool:
        return self.status == STATUS_NORMAL

    @property
    def is_reachable(self) -> bool:
        return self.reachability == REACHABLE

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Device:
        return cls(
            device_id=_as_str(payload.get("deviceId")),
            system_ip=_as_str(payload.get("system-ip")),
            hostname=_as_str(payload.get("host-name")),
            device_model=_as_str(payload.get("device-model")),
            version=_as_str(payload.get("version")),
            device_os=_as_str(payload.get("device-os")),
            personality=_as_str(payload.get("personality")),
            device_type=_as_str(payload.get("device-type")),
            site_id=_as_str(payload.get("site-id")),
            status=_as_str(payload.get("status")),
            reachability=_as_str(payload.get("reachability")),
            uptime_date=_as_int(payload.get("uptime-date")),
        )


@dataclass(frozen=True)
class DeviceInterface:
    vdevice_name: str
    ifname: str
    if_index: int = 0
    af_type: str = ""
    vdevice_host_name: str = ""
    vdevice_data_key: str = ""
    vpn_id: str = ""
    if_admin_status: str = ""
    if_oper_status: str = ""
    tx_octets: int = 0
    rx_octets: int = 0
    tx_packets: int = 0
    rx_packets: int = 0
    tx_errors: int = 0
    rx_errors: int = 0
    tx_drops: int = 0
    rx_drops: int = 0
    tx_kbps: int = 0
    rx_kbps: int = 0
    tx_pps: int = 0
    rx_pps: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DeviceInterface:
        return cls(
            vdevice_name=_as_str(payload.get("vdevice-name")),
            ifname=_as_str(payload.get("ifname")),
            if_index=normalize_if_index(payload.get("ifindex")),
            af_type=_as_str(payload.get("af-type")),
            vdevice_host_name=_as_str(payload.get("vdevice-host-name")),
            vdevice_data_key=_as_str(payload.get("vdevice-dataKey")),
            vpn_id=_as_str(payload.get("vpn-id")),
            if_admin_status=_as_str(payload.get("if-admin-status")),
            if_oper_status=_as_str(payload.get("if-oper-status")),
            tx_octets=_as_int(payload.get("tx-octets")),
            rx_octets=_as_int(payload.get("rx-octets")),
            tx_packets=_as_int(payload.get("tx-packets")),
            rx_packets=_as_int(payload.get("rx-packets")),
            tx_errors=_as_int(payload.get("tx-errors")),
            rx_errors=_as_int(payload.get("rx-errors")),
            tx_drops=_as_int(payload.get("tx-drops")),
            rx_drops=_as_int(payload.get("rx-drops")),
            tx_kbps=_as_int(payload.get("tx-kbps")),
            rx_kbps=_as_int(payload.get("rx-kbps")),
            tx_pps=_as_int(payload.get("tx-pps")),
            rx_pps=_as_int(payload.get("rx-pps")),
        )


@dataclass(frozen=True)
class MemoryUsage:
    used: float
    free: float
    total: float
    buffers: float
    cached: float


@dataclass(frozen=True)
class CpuUsage:
    user_percentage: float
    system_percentage: float
    idle_percentage: float
    load_avg1: float
    load_avg5: float
    load_avg15: float


@dataclass(frozen=True)
class DeviceSystemStatus:
    vdevice_name: str = ""
    vdevice_host_name: str = ""
    mem_used: str = ""
    mem_free: str = ""
    mem_total: str = ""
    mem_buffers: str = ""
    mem_cached: str = ""
    cpu_user: str = ""
    cpu_system: str = ""
    cpu_idle: str = ""
    min1_avg: str = ""
    min5_avg: str = ""
    min15_avg: str = ""
    uptime: str = ""
    state: str = ""

    def memory(self) -> MemoryUsage:
        return MemoryUsage(
            used=parse_float(self.mem_used),
            free=parse_float(self.mem_free),
            total=parse_float(self.mem_total),
            buffers=parse_float(self.mem_buffers),
            cached=parse_float(self.mem_cached),
        )

    def cpu(self) -> CpuUsage:
        return CpuUsage(
            user_percentage=parse_float(self.cpu_user),
            system_percentage=parse_float(self.cpu_system),
            idle_percentage=parse_float(self.cpu_idle),
            load_avg1=parse_float(self.min1_avg),
            load_avg5=parse_float(self.min5_avg),
            load_avg15=parse_float(self.min15_avg),
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DeviceSystemStatus:
        return cls(
            vdevice_name=_as_str(payload.get("vdevice-name")),
            vdevice_host_name=_as_str(payload.get("vdevice-host-name")),
            mem_used=_as_str(payload.get("mem_used")),
            mem_free=_as_str(payload.get("mem_free")),
            mem_total=_as_str(payload.get("mem_total")),
            mem_buffers=_as_str(payload.get("mem_buffers")),
            mem_cached=_as_str(payload.get("mem_cached")),
            cpu_user=_as_str(payload.get("cpu_user")),
            cpu_system=_as_str(payload.get("cpu_system")),
            cpu_idle=_as_str(payload.get("cpu_idle")),
            min1_avg=_as_str(payload.get("min1_avg")),
            min5_avg=_as_str(payload.get("min5_avg")),
            min15_avg=_as_str(payload.get("min15_avg")),
            uptime=_as_str(payload.get("uptime")),
            state=_as_str(payload.get("state")),
        )
