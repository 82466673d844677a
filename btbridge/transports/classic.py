"""Classic Bluetooth transport: platform-delegated link control plus RFCOMM sends."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from btbridge.core.codec import encode
from btbridge.core.errors import AdapterFailure, NotConnectedError, TransportConnectError, TransportError
from btbridge.core.health import HealthMonitor
from btbridge.core.model import (
    UNKNOWN_DEVICE_NAME,
    ClassicDeviceInfo,
    SendResult,
    classic_device_id,
)
from btbridge.core.pacing import DEFAULT_MAX_TOTAL_DELAY_MS, transmit
from btbridge.transports.base import ByteChannel, ClassicPlatform, DisconnectCallback
from btbridge.transports.platforms import default_platform
from btbridge.transports.rfcomm import RFCOMMChannel

LOGGER = logging.getLogger(__name__)

ChannelOpener = Callable[..., ByteChannel]


@dataclass
class _ClassicLink:
    address: str
    connected_at: float
    monitor: HealthMonitor


class ClassicTransport:
    def __init__(
        self,
        platform: ClassicPlatform | None = None,
        *,
        channel_opener: ChannelOpener | None = None,
        rfcomm_channel: int = 1,
        rfcomm_timeout_s: float = 3.0,
        health_interval_s: float = 5.0,
        max_total_delay_ms: int = DEFAULT_MAX_TOTAL_DELAY_MS,
    ) -> None:
        self._platform = platform or default_platform()
        self._open_channel = channel_opener or RFCOMMChannel.open
        self.rfcomm_channel = rfcomm_channel
        self.rfcomm_timeout_s = rfcomm_timeout_s
        self.health_interval_s = health_interval_s
        self.max_total_delay_ms = max_total_delay_ms
        self._devices: dict[str, ClassicDeviceInfo] = {}
        self._connections: dict[str, _ClassicLink] = {}
        self._on_disconnect: DisconnectCallback | None = None

    def set_disconnect_callback(self, callback: DisconnectCallback) -> None:
        self._on_disconnect = callback

    def is_connected(self, address: str) -> bool:
        return address in self._connections

    def get_device(self, address: str) -> ClassicDeviceInfo | None:
        return self._devices.get(address)

    async def discover(self) -> list[ClassicDeviceInfo]:
        try:
            devices = await asyncio.to_thread(self._platform.discover)
        except AdapterFailure:
            raise
        except Exception as exc:
            raise TransportError(f"Discovery failed: {exc}") from exc

        for device in devices:
            self._devices[device.address] = device
        LOGGER.info("Classic discovery found %d devices", len(devices))
        return devices

    async def connect(self, address: str) -> HealthMonitor:
        existing = self._connections.get(address)
        if existing is not None:
            return existing.monitor

        try:
            await asyncio.to_thread(self._platform.connect, address)
        except AdapterFailure:
            raise
        except Exception as exc:
            raise TransportConnectError(f"Connection failed: {exc}") from exc

        self._set_connected(address, True)
        monitor = HealthMonitor(
            classic_device_id(address),
            lambda: self._probe(address),
            lambda: self._on_link_lost(address),
            interval_s=self.health_interval_s,
        )
        self._connections[address] = _ClassicLink(
            address=address,
            connected_at=time.time(),
            monitor=monitor,
        )
        monitor.start()
        LOGGER.info("Connected classic device %s", address)
        return monitor

    async def disconnect(self, address: str) -> None:
        link = self._connections.get(address)
        if link is not None:
            link.monitor.stop()

        try:
            await asyncio.to_thread(self._platform.disconnect, address)
        except AdapterFailure:
            raise
        except Exception as exc:
            raise TransportError(f"Disconnection failed: {exc}") from exc
        finally:
            self._set_connected(address, False)
            self._connections.pop(address, None)

        LOGGER.info("Disconnected classic device %s", address)

    async def send_data(self, address: str, payload: bytes) -> SendResult:
        link = self._connections.get(address)
        if link is None:
            raise NotConnectedError("Device not connected")

        stream: ByteChannel | None = None

        # The RFCOMM channel is opened on the first data chunk.
        async def _write(data: bytes) -> None:
            nonlocal stream
            if stream is None:
                stream = await asyncio.to_thread(
                    self._open_channel,
                    address,
                    channel=self.rfcomm_channel,
                    timeout_s=self.rfcomm_timeout_s,
                )
            await asyncio.to_thread(stream.write, data)

        try:
            bytes_sent = await transmit(
                encode(payload),
                _write,
                is_live=lambda: self._connections.get(address) is link,
                max_total_delay_ms=self.max_total_delay_ms,
                label=address,
            )
        finally:
            if stream is not None:
                await asyncio.to_thread(stream.close)

        return SendResult(bytes_sent=bytes_sent)

    async def _probe(self, address: str) -> bool:
        return await asyncio.to_thread(self._platform.is_connected, address)

    def _on_link_lost(self, address: str) -> None:
        link = self._connections.pop(address, None)
        if link is None:
            return
        link.monitor.stop()
        self._set_connected(address, False)
        LOGGER.warning("Classic device %s disconnected", address)
        if self._on_disconnect is not None:
            self._on_disconnect(classic_device_id(address))

    def _set_connected(self, address: str, connected: bool) -> None:
        device = self._devices.get(address)
        if device is None:
            device = ClassicDeviceInfo(name=UNKNOWN_DEVICE_NAME, address=address)
        self._devices[address] = replace(device, connected=connected)
