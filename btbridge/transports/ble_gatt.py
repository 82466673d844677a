"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from btbridge.core.codec import encode
from btbridge.core.errors import (
    DeviceNotFoundError,
    NoWritableCharacteristicError,
    NotConnectedError,
    RadioUnavailableError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from btbridge.core.health import HealthMonitor
from btbridge.core.model import (
    UNKNOWN_DEVICE_NAME,
    BLEDeviceInfo,
    SendResult,
    ble_device_id,
    strip_ble_prefix,
)
from btbridge.core.pacing import DEFAULT_MAX_TOTAL_DELAY_MS, transmit
from btbridge.transports.base import DisconnectCallback

LOGGER = logging.getLogger(__name__)

WRITE = "write"
WRITE_WITHOUT_RESPONSE = "write-without-response"


@dataclass
class _BLELink:
    client: Any
    monitor: HealthMonitor | None = None
    characteristics: list[Any] | None = None


class BLEGATTTransport:
    def __init__(
        self,
        *,
        scanner_factory: Callable[..., Any] | None = None,
        client_factory: Callable[..., Any] | None = None,
        health_interval_s: float = 3.0,
        health_max_failures: int = 2,
        connect_timeout_s: float = 10.0,
        max_total_delay_ms: int = DEFAULT_MAX_TOTAL_DELAY_MS,
    ) -> None:
        self._scanner_factory = scanner_factory or BleakScanner
        self._client_factory = client_factory or BleakClient
        self.health_interval_s = health_interval_s
        self.health_max_failures = health_max_failures
        self.connect_timeout_s = connect_timeout_s
        self.max_total_delay_ms = max_total_delay_ms
        self._scan_task: asyncio.Task[list[BLEDeviceInfo]] | None = None
        self._devices: dict[str, BLEDeviceInfo] = {}
        self._peripherals: dict[str, Any] = {}
        self._connections: dict[str, _BLELink] = {}
        self._on_disconnect: DisconnectCallback | None = None
        self._background: set[asyncio.Task[None]] = set()

    def set_disconnect_callback(self, callback: DisconnectCallback) -> None:
        self._on_disconnect = callback

    def is_connected(self, device_id: str) -> bool:
        return strip_ble_prefix(device_id) in self._connections

    @property
    def scanning(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    async def scan(self, duration_ms: int = 5000) -> list[BLEDeviceInfo]:
        """Scan for ``duration_ms``; a call made while a scan runs joins that scan."""
        if self.scanning:
            LOGGER.info("BLE scan already in progress, joining it")
        else:
            self._scan_task = asyncio.get_running_loop().create_task(self._scan(duration_ms))
        return await asyncio.shield(self._scan_task)

    async def _scan(self, duration_ms: int) -> list[BLEDeviceInfo]:
        self._devices.clear()

        def _on_advertisement(device: Any, advertisement: Any) -> None:
            local_id = device.address
            info = BLEDeviceInfo(
                id=local_id,
                name=getattr(advertisement, "local_name", None) or device.name or UNKNOWN_DEVICE_NAME,
                address=device.address,
                rssi=getattr(advertisement, "rssi", None),
            )
            self._devices[local_id] = info
            self._peripherals[local_id] = device
            LOGGER.debug("Discovered: %s (%s)", info.name, info.address)

        try:
            scanner = self._scanner_factory(detection_callback=_on_advertisement)
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise RadioUnavailableError(f"Bluetooth radio is not available: {exc}") from exc

        LOGGER.info("Starting BLE scan for %dms", duration_ms)
        try:
            await asyncio.sleep(duration_ms / 1000)
        finally:
            try:
                await scanner.stop()
            except BleakError as exc:
                LOGGER.warning("Failed to stop BLE scanner cleanly: %s", exc)

        LOGGER.info("Scan complete. Found %d devices", len(self._devices))
        return list(self._devices.values())

    async def connect(self, device_id: str) -> HealthMonitor | None:
        local_id = strip_ble_prefix(device_id)

        existing = self._connections.get(local_id)
        if existing is not None:
            LOGGER.debug("BLE device %s already connected", local_id)
            return existing.monitor

        peripheral = self._peripherals.get(local_id)
        if peripheral is None:
            LOGGER.error(
                "Peripheral not found for ID %s; known peripherals: %s",
                local_id,
                ", ".join(self._peripherals) or "<none>",
            )
            raise DeviceNotFoundError("Device not found. Please discover devices first.")

        client = self._client_factory(
            peripheral,
            disconnected_callback=lambda _client: self._on_link_lost(local_id, "platform disconnect"),
            timeout=self.connect_timeout_s,
        )
        LOGGER.info("Connecting to BLE device %s", local_id)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise TransportConnectError(f"Failed to connect: {exc}") from exc

        link = _BLELink(client=client)
        try:
            link.characteristics = _writable_characteristics(client)
        except BleakError as exc:
            LOGGER.warning("Characteristic discovery for %s deferred: %s", local_id, exc)

        link.monitor = HealthMonitor(
            ble_device_id(local_id),
            lambda: self._probe(link),
            lambda: self._on_link_lost(local_id, "health check"),
            interval_s=self.health_interval_s,
            max_failures=self.health_max_failures,
        )
        self._connections[local_id] = link
        link.monitor.start()
        LOGGER.info("Successfully connected to %s", local_id)
        return link.monitor

    async def disconnect(self, device_id: str) -> None:
        local_id = strip_ble_prefix(device_id)
        link = self._connections.pop(local_id, None)
        if link is None:
            raise NotConnectedError("Device not connected")

        if link.monitor is not None:
            link.monitor.stop()

        LOGGER.info("Disconnecting from BLE device %s", local_id)
        try:
            await link.client.disconnect()
        except (BleakError, OSError) as exc:
            raise TransportError(f"Failed to disconnect: {exc}") from exc

    async def send_data(self, device_id: str, payload: bytes) -> SendResult:
        local_id = strip_ble_prefix(device_id)
        link = self._connections.get(local_id)
        if link is None:
            raise NotConnectedError("Device not connected")

        characteristic = self._select_writable(link)
        without_response = WRITE_WITHOUT_RESPONSE in characteristic.properties
        max_piece = getattr(characteristic, "max_write_without_response_size", 0) or 0

        async def _write(data: bytes) -> None:
            try:
                if without_response and max_piece > 0:
                    for start in range(0, len(data), max_piece):
                        await link.client.write_gatt_char(
                            characteristic, data[start:start + max_piece], response=False
                        )
                else:
                    await link.client.write_gatt_char(
                        characteristic, data, response=not without_response
                    )
            except (BleakError, OSError) as exc:
                raise TransportSendError(f"Failed to write data: {exc}") from exc

        bytes_sent = await transmit(
            encode(payload),
            _write,
            is_live=lambda: self._connections.get(local_id) is link,
            max_total_delay_ms=self.max_total_delay_ms,
            label=local_id,
        )
        return SendResult(bytes_sent=bytes_sent)

    def _select_writable(self, link: _BLELink) -> Any:
        if link.characteristics is None:
            try:
                link.characteristics = _writable_characteristics(link.client)
            except BleakError as exc:
                raise TransportSendError(f"Failed to discover services: {exc}") from exc
        if not link.characteristics:
            raise NoWritableCharacteristicError("No writable characteristic found")
        return link.characteristics[0]

    async def _probe(self, link: _BLELink) -> bool:
        client = link.client
        if not client.is_connected:
            return False
        get_rssi = getattr(client, "get_rssi", None)
        if get_rssi is not None:
            await get_rssi()
        return True

    def _on_link_lost(self, local_id: str, reason: str) -> None:
        link = self._connections.pop(local_id, None)
        if link is None:
            return
        if link.monitor is not None:
            link.monitor.stop()
        LOGGER.warning("BLE device %s disconnected (%s)", local_id, reason)

        if link.client.is_connected:
            task = asyncio.get_running_loop().create_task(self._close_quietly(local_id, link.client))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        if self._on_disconnect is not None:
            self._on_disconnect(ble_device_id(local_id))

    @staticmethod
    async def _close_quietly(local_id: str, client: Any) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            LOGGER.debug("Ignoring disconnect error for stale link %s: %s", local_id, exc)


def _writable_characteristics(client: Any) -> list[Any]:
    writable: list[Any] = []
    for service in client.services or []:
        for characteristic in service.characteristics:
            properties = characteristic.properties
            if WRITE in properties or WRITE_WITHOUT_RESPONSE in properties:
                writable.append(characteristic)
    return writable
