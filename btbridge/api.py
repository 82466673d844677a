"""Stable public API for building tooling on top of btbridge.

This module is the supported integration surface for third-party callers.
``Client`` talks to a running gateway over WebSocket; the re-exported models
and errors are the types it returns and raises. Avoid importing from
private/internal modules unless intentionally depending on non-stable
internals.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from btbridge.core.codec import encode
from btbridge.core.errors import (
    AdapterFailure,
    AlreadyConnectedError,
    BindExhaustedError,
    BridgeError,
    DeviceNotFoundError,
    NoWritableCharacteristicError,
    NotConnectedError,
    RadioUnavailableError,
    RequestFailedError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from btbridge.core.model import DataChunk, DelayChunk, Device
from btbridge.gateway.protocol import RESPONSE_SUFFIX, encode_data

__all__ = [
    "AdapterFailure",
    "AlreadyConnectedError",
    "BindExhaustedError",
    "BridgeError",
    "DeviceNotFoundError",
    "NoWritableCharacteristicError",
    "NotConnectedError",
    "RadioUnavailableError",
    "RequestFailedError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "DataChunk",
    "DelayChunk",
    "Device",
    "encode",
    "Client",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_URL = "ws://127.0.0.1:42123/"

PushHandler = Callable[[dict[str, Any]], None]


class Client:
    """Async client for a running btbridge gateway.

    Requests are correlated with responses through ``messageId``; each waits
    at most ``timeout_s`` for its reply. Push messages such as
    ``device_disconnected`` are delivered to handlers registered with ``on``.
    """

    def __init__(self, url: str = DEFAULT_URL, *, timeout_s: float = 10.0) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ids = itertools.count()
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._handlers: dict[str, list[PushHandler]] = {}
        self._welcome: asyncio.Future[dict[str, Any]] | None = None

    async def __aenter__(self) -> Client:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> str:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url)
        except aiohttp.ClientError as exc:
            await self._session.close()
            self._session = None
            raise TransportConnectError(f"Could not connect to gateway at {self.url}: {exc}") from exc

        self._welcome = asyncio.get_running_loop().create_future()
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        welcome = await self._wait(self._welcome)
        return str(welcome.get("message", ""))

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await self._reader
            self._reader = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._ws = None

    def on(self, message_type: str, handler: PushHandler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)

    def off(self, message_type: str, handler: PushHandler) -> None:
        handlers = self._handlers.get(message_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def request(self, message_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._ws is None or self._ws.closed:
            raise TransportConnectError("WebSocket not connected")

        message_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._ws.send_json({"type": message_type, "payload": payload or {}, "messageId": message_id})
            reply = await self._wait(future)
        finally:
            self._pending.pop(message_id, None)

        if reply.get("type") == "error":
            raise RequestFailedError(reply.get("error") or "Operation failed")
        data = reply.get("data") or {}
        if data.get("success") is False:
            raise RequestFailedError(data.get("error") or "Operation failed")
        return data

    async def discover_devices(self, *, ignore_unknown: bool = False) -> list[dict[str, Any]]:
        data = await self.request("discover", {"filters": {"ignoreUnknown": ignore_unknown}})
        return data["devices"]

    async def connect_device(self, device_id: str) -> dict[str, Any]:
        return await self.request("connect", {"deviceId": device_id})

    async def disconnect_device(self, device_id: str) -> dict[str, Any]:
        return await self.request("disconnect", {"deviceId": device_id})

    async def get_connected_devices(self) -> list[dict[str, Any]]:
        data = await self.request("get_connected")
        return data["devices"]

    async def send_data(self, device_id: str, payload: bytes | str) -> int:
        data = await self.request("send_data", {"deviceId": device_id, "data": encode_data(payload)})
        return int(data["bytesSent"])

    async def add_device(self, *, device_id: str | None = None, name: str | None = None, address: str | None = None) -> str:
        device = {"id": device_id, "name": name, "address": address}
        data = await self.request("add_device", {"device": {k: v for k, v in device.items() if v is not None}})
        return data["deviceId"]

    async def clear_devices(self) -> None:
        await self.request("clear_devices")

    async def _wait(self, future: asyncio.Future[dict[str, Any]]) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(asyncio.shield(future), self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError("Request timeout") from exc

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        async for message in ws:
            if message.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                envelope = message.json()
            except ValueError as exc:
                LOGGER.warning("Error parsing message: %s", exc)
                continue
            if not isinstance(envelope, dict):
                LOGGER.warning("Ignoring non-object message: %r", envelope)
                continue
            self._route(envelope)

        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportConnectError("WebSocket closed"))

    def _route(self, envelope: dict[str, Any]) -> None:
        message_type = envelope.get("type")
        if message_type == "connected" and self._welcome is not None and not self._welcome.done():
            self._welcome.set_result(envelope)

        future = self._pending.get(envelope.get("messageId"))  # type: ignore[arg-type]
        if future is not None and not future.done():
            future.set_result(envelope)
            return

        if isinstance(message_type, str) and message_type.endswith(RESPONSE_SUFFIX):
            return
        for handler in list(self._handlers.get(str(message_type), [])):
            handler(envelope.get("data") or {})
