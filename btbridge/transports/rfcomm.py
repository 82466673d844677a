"""RFCOMM byte channel using Python sockets."""

from __future__ import annotations

import socket

from btbridge.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)


class RFCOMMChannel:
    def __init__(self, bt_socket: socket.socket, address: str, channel: int) -> None:
        self._socket = bt_socket
        self.address = address
        self.channel = channel

    @classmethod
    def open(cls, address: str, *, channel: int, timeout_s: float = 3.0) -> RFCOMMChannel:
        try:
            af_bluetooth = socket.AF_BLUETOOTH
            btproto_rfcomm = socket.BTPROTO_RFCOMM
        except AttributeError as exc:
            raise TransportConnectError(
                "This Python build does not expose Bluetooth socket APIs (AF_BLUETOOTH/BTPROTO_RFCOMM)."
            ) from exc

        try:
            bt_socket = socket.socket(
                af_bluetooth,
                socket.SOCK_STREAM,
                btproto_rfcomm,
            )
        except OSError as exc:
            raise TransportConnectError(f"Could not create RFCOMM socket: {exc}") from exc
        bt_socket.settimeout(timeout_s)

        try:
            bt_socket.connect((address, channel))
        except TimeoutError as exc:
            bt_socket.close()
            raise TransportTimeoutError(
                f"RFCOMM connect timed out for {address} on channel {channel}"
            ) from exc
        except OSError as exc:
            bt_socket.close()
            raise TransportConnectError(
                f"RFCOMM connect failed for {address} on channel {channel}: {exc}"
            ) from exc

        return cls(bt_socket, address, channel)

    def write(self, data: bytes) -> None:
        try:
            self._socket.sendall(data)
        except TimeoutError as exc:
            raise TransportTimeoutError(f"RFCOMM send timed out for {self.address}") from exc
        except OSError as exc:
            raise TransportSendError(f"RFCOMM send failed: {exc}") from exc

    def close(self) -> None:
        self._socket.close()
