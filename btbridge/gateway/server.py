"""WebSocket gateway exposing the bridge service to clients."""

from __future__ import annotations

import asyncio
import errno
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from btbridge.core.errors import BindExhaustedError, MalformedEnvelopeError
from btbridge.core.service import BridgeService
from btbridge.gateway.protocol import Request, decode_data, error_envelope, parse_request, response

LOGGER = logging.getLogger(__name__)

CONNECTED_MESSAGE = "WebSocket connected successfully"

Handler = Callable[[Request], Awaitable[dict[str, Any]]]


class ClientRegistry:
    """Live WebSocket clients, used to fan out push messages."""

    def __init__(self) -> None:
        self._clients: set[web.WebSocketResponse] = set()
        self._tasks: set[asyncio.Task[int]] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def __iter__(self):
        return iter(list(self._clients))

    def add(self, ws: web.WebSocketResponse) -> None:
        self._clients.add(ws)

    def discard(self, ws: web.WebSocketResponse) -> None:
        self._clients.discard(ws)

    async def broadcast(self, message: dict[str, Any]) -> int:
        delivered = 0
        for ws in list(self._clients):
            if ws.closed:
                continue
            try:
                await ws.send_json(message)
            except (ConnectionResetError, RuntimeError) as exc:
                LOGGER.warning("Dropping push to a closing client: %s", exc)
                continue
            delivered += 1
        return delivered

    def announce_disconnect(self, device_id: str) -> None:
        """Disconnect sink for ``BridgeService``; schedules the broadcast."""
        LOGGER.info("Broadcasting disconnect of %s to %d clients", device_id, len(self._clients))
        task = asyncio.get_running_loop().create_task(
            self.broadcast({"type": "device_disconnected", "data": {"deviceId": device_id}})
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class Gateway:
    def __init__(
        self,
        service: BridgeService,
        *,
        clients: ClientRegistry | None = None,
        host: str = "127.0.0.1",
        port: int = 42123,
        bind_retries: int = 10,
    ) -> None:
        self.service = service
        self.clients = clients or ClientRegistry()
        self.host = host
        self.base_port = port
        self.bind_retries = bind_retries
        self.port: int | None = None
        self._runner: web.AppRunner | None = None
        self._handlers: dict[str, Handler] = {
            "discover": self._discover,
            "connect": self._connect,
            "disconnect": self._disconnect,
            "get_connected": self._get_connected,
            "send_data": self._send_data,
            "add_device": self._add_device,
            "clear_devices": self._clear_devices,
        }

    async def start(self) -> int:
        app = web.Application()
        app.router.add_get("/", self._handle_socket)
        runner = web.AppRunner(app, handle_signals=False)
        await runner.setup()

        for attempt in range(self.bind_retries + 1):
            port = self.base_port + attempt if self.base_port else 0
            site = web.TCPSite(runner, self.host, port)
            try:
                await site.start()
            except OSError as exc:
                await site.stop()
                if exc.errno != errno.EADDRINUSE:
                    await runner.cleanup()
                    raise
                LOGGER.warning("Port %d is in use, trying %d", port, port + 1)
                continue

            self._runner = runner
            self.port = runner.addresses[0][1]
            LOGGER.info("WebSocket server running on %s:%d", self.host, self.port)
            return self.port

        await runner.cleanup()
        last_port = self.base_port + self.bind_retries
        raise BindExhaustedError(
            f"Could not bind {self.host} on ports {self.base_port}-{last_port}: all in use"
        )

    async def stop(self) -> None:
        for ws in self.clients:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            LOGGER.info("WebSocket server stopped")

    async def handle_text(self, text: str) -> dict[str, Any]:
        try:
            request = parse_request(text)
        except MalformedEnvelopeError as exc:
            return error_envelope(str(exc))

        try:
            return await self.dispatch(request)
        except Exception as exc:
            LOGGER.exception("Unhandled error while handling %r", request.type)
            return error_envelope(str(exc), request.message_id)

    async def dispatch(self, request: Request) -> dict[str, Any]:
        handler = self._handlers.get(request.type)
        if handler is None:
            return error_envelope(f"Unknown message type: {request.type}", request.message_id)
        return response(request, await handler(request))

    async def _handle_socket(self, http_request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(http_request)
        self.clients.add(ws)
        LOGGER.info("Client connected (%d open)", len(self.clients))

        try:
            await ws.send_json({"type": "connected", "message": CONNECTED_MESSAGE})
            async for message in ws:
                if message.type == WSMsgType.TEXT:
                    await ws.send_json(await self.handle_text(message.data))
                elif message.type == WSMsgType.BINARY:
                    await ws.send_json(error_envelope("Binary frames are not supported"))
                elif message.type == WSMsgType.ERROR:
                    LOGGER.warning("WebSocket connection closed with exception %s", ws.exception())
        finally:
            self.clients.discard(ws)
            LOGGER.info("Client disconnected (%d open)", len(self.clients))

        return ws

    async def _discover(self, request: Request) -> dict[str, Any]:
        filters = request.payload.get("filters", request.payload)
        if not isinstance(filters, dict):
            filters = {}
        return await self.service.discover_devices(filters)

    async def _connect(self, request: Request) -> dict[str, Any]:
        device_id = request.payload.get("deviceId")
        if not device_id:
            return {"success": False, "error": "Missing deviceId"}
        return await self.service.connect_device(str(device_id))

    async def _disconnect(self, request: Request) -> dict[str, Any]:
        device_id = request.payload.get("deviceId")
        if not device_id:
            return {"success": False, "error": "Missing deviceId"}
        return await self.service.disconnect_device(str(device_id))

    async def _get_connected(self, request: Request) -> dict[str, Any]:
        return await self.service.get_connected_devices()

    async def _send_data(self, request: Request) -> dict[str, Any]:
        device_id = request.payload.get("deviceId")
        if not device_id:
            return {"success": False, "error": "Missing deviceId"}
        try:
            payload = decode_data(request.payload.get("data"))
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
        return await self.service.send_data(str(device_id), payload)

    async def _add_device(self, request: Request) -> dict[str, Any]:
        device = request.payload.get("device")
        if not isinstance(device, dict):
            return {"success": False, "error": "Missing device"}
        return {"success": True, "deviceId": self.service.add_discovered_device(device)}

    async def _clear_devices(self, request: Request) -> dict[str, Any]:
        self.service.clear_discovered_devices()
        return {"success": True}
