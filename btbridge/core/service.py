"""Device registry and routing layer shared by the gateway and the CLI."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

from btbridge.core.config import BridgeConfig
from btbridge.core.errors import (
    AlreadyConnectedError,
    BridgeError,
    DeviceNotFoundError,
    NotConnectedError,
)
from btbridge.core.model import (
    BLE_ID_PREFIX,
    KIND_BLE,
    KIND_CLASSIC,
    UNKNOWN_DEVICE_NAME,
    ConnectionRecord,
    Device,
    ble_device_id,
    classic_device_id,
)
from btbridge.transports.ble_gatt import BLEGATTTransport
from btbridge.transports.classic import ClassicTransport

LOGGER = logging.getLogger(__name__)

Response = dict[str, Any]


class BridgeService:
    """Owns the discovery catalogs and the connection table.

    Classic and BLE catalogs and the connection table are three separate maps
    joined on device id. Connection records hold frozen snapshots, so catalog
    refreshes never touch a live connection's recorded name or address.
    """

    def __init__(
        self,
        *,
        classic: ClassicTransport | None = None,
        ble: BLEGATTTransport | None = None,
        config: BridgeConfig | None = None,
        on_device_disconnected: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.classic = classic or ClassicTransport(
            rfcomm_channel=self.config.classic.rfcomm_channel,
            rfcomm_timeout_s=self.config.classic.rfcomm_timeout_s,
            health_interval_s=self.config.classic.health_interval_s,
            max_total_delay_ms=self.config.send.max_total_delay_ms,
        )
        self.ble = ble or BLEGATTTransport(
            health_interval_s=self.config.ble.health_interval_s,
            health_max_failures=self.config.ble.health_max_failures,
            connect_timeout_s=self.config.ble.connect_timeout_s,
            max_total_delay_ms=self.config.send.max_total_delay_ms,
        )
        self._sink = on_device_disconnected
        self._classic_devices: dict[str, Device] = {}
        self._ble_devices: dict[str, Device] = {}
        self._injected_ble_ids: set[str] = set()
        self._connections: dict[str, ConnectionRecord] = {}
        self._pending: set[str] = set()

        self.classic.set_disconnect_callback(self._handle_adapter_disconnect)
        self.ble.set_disconnect_callback(self._handle_adapter_disconnect)

    async def discover_devices(self, filters: Mapping[str, Any] | None = None) -> Response:
        filters = filters or {}
        ignore_unknown = bool(filters.get("ignoreUnknown", False))

        LOGGER.info("Starting Bluetooth Classic discovery...")
        try:
            classic_found = await self.classic.discover()
        except Exception as exc:
            LOGGER.warning("Classic discovery error: %s", exc, exc_info=True)
        else:
            for info in classic_found:
                device_id = classic_device_id(info.address)
                self._classic_devices[device_id] = Device(
                    id=device_id,
                    name=info.name,
                    address=info.address,
                    kind=KIND_CLASSIC,
                    paired=info.paired,
                    connected=info.connected,
                )
            LOGGER.info("Found %d classic devices", len(classic_found))

        LOGGER.info("Starting BLE scan for nearby devices...")
        try:
            ble_found = await self.ble.scan(self.config.discovery.ble_scan_ms)
        except Exception as exc:
            LOGGER.warning("BLE scan error: %s", exc, exc_info=True)
        else:
            injected = {
                device_id: device
                for device_id, device in self._ble_devices.items()
                if device_id in self._injected_ble_ids
            }
            self._ble_devices.clear()
            for info in ble_found:
                device_id = ble_device_id(info.id)
                self._ble_devices[device_id] = Device(
                    id=device_id,
                    name=info.name,
                    address=info.address,
                    kind=KIND_BLE,
                    rssi=info.rssi,
                )
            for device_id, device in injected.items():
                self._ble_devices.setdefault(device_id, device)
            LOGGER.info("Found %d BLE devices", len(ble_found))

        devices: list[dict[str, object]] = []
        for catalog in (self._ble_devices, self._classic_devices):
            for device_id, device in catalog.items():
                if ignore_unknown and device.name == UNKNOWN_DEVICE_NAME:
                    continue
                connected = device.connected or device_id in self._connections
                devices.append(replace(device, connected=connected).to_wire())

        filtered = f" ({len(devices)} after filtering)" if ignore_unknown else ""
        LOGGER.info("Returning %d total devices%s", len(devices), filtered)
        return {"success": True, "devices": devices}

    async def connect_device(self, device_id: str) -> Response:
        try:
            if device_id in self._connections or device_id in self._pending:
                raise AlreadyConnectedError("Device already connected")

            device = self._ble_devices.get(device_id) or self._classic_devices.get(device_id)
            if device is None:
                raise DeviceNotFoundError("Device not found")

            self._pending.add(device_id)
            try:
                if device.kind == KIND_CLASSIC:
                    monitor = await self.classic.connect(device.address)
                else:
                    monitor = await self.ble.connect(device_id)
            finally:
                self._pending.discard(device_id)

            self._connections[device_id] = ConnectionRecord(
                device=replace(device, connected=True),
                kind=device.kind,
                connected_at=time.time(),
                health_monitor=monitor,
            )
        except BridgeError as exc:
            LOGGER.info("Connect %s failed: %s", device_id, exc)
            return {"success": False, "error": str(exc)}

        LOGGER.info("Connected %s (%s)", device_id, device.name)
        return {"success": True, "deviceId": device_id, "name": device.name, "type": device.kind}

    async def disconnect_device(self, device_id: str) -> Response:
        try:
            record = self._require_connection(device_id)
            if record.kind == KIND_CLASSIC:
                await self.classic.disconnect(record.device.address)
            else:
                await self.ble.disconnect(device_id)
        except BridgeError as exc:
            LOGGER.info("Disconnect %s failed: %s", device_id, exc)
            return {"success": False, "error": str(exc)}
        finally:
            if not self._adapter_connected(device_id):
                self._connections.pop(device_id, None)
                self._mark_catalog_disconnected(device_id)

        return {"success": True, "deviceId": device_id}

    async def get_connected_devices(self) -> Response:
        devices = [
            {
                "id": device_id,
                "name": record.device.name,
                "address": record.device.address,
                "type": record.kind,
                "connectedAt": int(record.connected_at * 1000),
            }
            for device_id, record in self._connections.items()
        ]
        return {"success": True, "devices": devices}

    async def send_data(self, device_id: str, payload: bytes) -> Response:
        try:
            record = self._require_connection(device_id)
            if record.kind == KIND_CLASSIC:
                result = await self.classic.send_data(record.device.address, payload)
            else:
                result = await self.ble.send_data(device_id, payload)
        except BridgeError as exc:
            LOGGER.info("Send to %s failed: %s", device_id, exc)
            return {"success": False, "error": str(exc)}

        return {
            "success": True,
            "deviceId": device_id,
            "bytesSent": result.bytes_sent,
            "type": record.kind,
        }

    def add_discovered_device(self, device: Mapping[str, Any]) -> str:
        raw_id = device.get("id")
        if raw_id:
            raw_id = str(raw_id)
            device_id = raw_id if raw_id.startswith(BLE_ID_PREFIX) else ble_device_id(raw_id)
        else:
            device_id = ble_device_id(uuid.uuid4().hex[:12])

        self._ble_devices[device_id] = Device(
            id=device_id,
            name=device.get("name") or UNKNOWN_DEVICE_NAME,
            address=device.get("address") or "N/A",
            kind=KIND_BLE,
        )
        self._injected_ble_ids.add(device_id)
        LOGGER.info("Added externally discovered device %s", device_id)
        return device_id

    def clear_discovered_devices(self) -> None:
        self._ble_devices.clear()
        self._classic_devices.clear()
        self._injected_ble_ids.clear()
        LOGGER.info("Cleared discovered devices; %d connections kept", len(self._connections))

    def connection(self, device_id: str) -> ConnectionRecord | None:
        return self._connections.get(device_id)

    async def shutdown(self) -> None:
        for device_id in list(self._connections):
            result = await self.disconnect_device(device_id)
            if not result["success"]:
                LOGGER.warning("Shutdown disconnect of %s failed: %s", device_id, result["error"])

    def _require_connection(self, device_id: str) -> ConnectionRecord:
        record = self._connections.get(device_id)
        if record is None:
            raise NotConnectedError("Device not connected")
        return record

    def _adapter_connected(self, device_id: str) -> bool:
        record = self._connections.get(device_id)
        if record is None:
            return False
        if record.kind == KIND_CLASSIC:
            return self.classic.is_connected(record.device.address)
        return self.ble.is_connected(device_id)

    def _mark_catalog_disconnected(self, device_id: str) -> None:
        for catalog in (self._classic_devices, self._ble_devices):
            device = catalog.get(device_id)
            if device is not None:
                catalog[device_id] = replace(device, connected=False)

    def _handle_adapter_disconnect(self, device_id: str) -> None:
        record = self._connections.pop(device_id, None)
        self._mark_catalog_disconnected(device_id)
        if record is None:
            return
        LOGGER.info("Device %s lost its connection", device_id)
        if self._sink is not None:
            self._sink(device_id)
