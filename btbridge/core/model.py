"""Core data models shared by transports, service, and gateway."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from btbridge.core.health import HealthMonitor

KIND_CLASSIC = "classic"
KIND_BLE = "ble"

CLASSIC_ID_PREFIX = "classic_"
BLE_ID_PREFIX = "ble_"

UNKNOWN_DEVICE_NAME = "Unknown Device"


@dataclass(frozen=True)
class ClassicDeviceInfo:
    name: str
    address: str
    paired: bool = False
    connected: bool = False


@dataclass(frozen=True)
class BLEDeviceInfo:
    id: str
    name: str
    address: str
    rssi: int | None = None


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    address: str
    kind: str
    paired: bool | None = None
    rssi: int | None = None
    connected: bool = False

    def to_wire(self) -> dict[str, object]:
        wire: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "type": self.kind,
        }
        if self.kind == KIND_BLE:
            wire["rssi"] = self.rssi
        else:
            wire["paired"] = bool(self.paired)
        wire["connected"] = self.connected
        return wire


@dataclass(frozen=True)
class ConnectionRecord:
    device: Device
    kind: str
    connected_at: float
    health_monitor: HealthMonitor | None = None


@dataclass(frozen=True)
class DataChunk:
    data: bytes


@dataclass(frozen=True)
class DelayChunk:
    milliseconds: int


Chunk = Union[DataChunk, DelayChunk]


@dataclass(frozen=True)
class SendResult:
    bytes_sent: int


def classic_device_id(address: str) -> str:
    return f"{CLASSIC_ID_PREFIX}{address}"


def ble_device_id(local_id: str) -> str:
    return f"{BLE_ID_PREFIX}{local_id}"


def strip_ble_prefix(device_id: str) -> str:
    if device_id.startswith(BLE_ID_PREFIX):
        return device_id[len(BLE_ID_PREFIX):]
    return device_id
