"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from btbridge.core.model import ClassicDeviceInfo

DisconnectCallback = Callable[[str], None]


class ClassicPlatform(Protocol):
    """OS-specific classic Bluetooth capability. Calls may block."""

    def discover(self) -> list[ClassicDeviceInfo]:
        """Enumerate paired or visible classic devices."""

    def connect(self, address: str) -> None:
        """Ask the OS to connect ``address``; best effort."""

    def disconnect(self, address: str) -> None:
        """Ask the OS to drop the link to ``address``."""

    def is_connected(self, address: str) -> bool:
        """Return whether the OS reports ``address`` as connected."""


class ByteChannel(Protocol):
    """A blocking byte stream to a single classic device."""

    def write(self, data: bytes) -> None:
        """Write all of ``data``."""

    def close(self) -> None:
        """Release the underlying socket."""
