"""Application context: the one place where service and gateway are wired."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from btbridge.core.config import BridgeConfig
from btbridge.core.service import BridgeService
from btbridge.gateway.server import ClientRegistry, Gateway
from btbridge.transports.ble_gatt import BLEGATTTransport
from btbridge.transports.classic import ClassicTransport

LOGGER = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: BridgeConfig
    clients: ClientRegistry
    service: BridgeService
    gateway: Gateway

    async def shutdown(self) -> None:
        await self.service.shutdown()
        await self.gateway.stop()


def build_context(
    config: BridgeConfig,
    *,
    classic: ClassicTransport | None = None,
    ble: BLEGATTTransport | None = None,
) -> AppContext:
    clients = ClientRegistry()
    service = BridgeService(
        classic=classic,
        ble=ble,
        config=config,
        on_device_disconnected=clients.announce_disconnect,
    )
    gateway = Gateway(
        service,
        clients=clients,
        host=config.gateway.host,
        port=config.gateway.port,
        bind_retries=config.gateway.bind_retries,
    )
    return AppContext(config=config, clients=clients, service=service, gateway=gateway)


async def serve(context: AppContext, *, stop: asyncio.Event | None = None) -> None:
    """Run the gateway until ``stop`` is set or the task is cancelled."""
    stop = stop or asyncio.Event()
    await context.gateway.start()
    try:
        await stop.wait()
    finally:
        LOGGER.info("Shutting down")
        await context.shutdown()
