"""OS command adapters for classic Bluetooth discovery and link control.

Each platform class satisfies ``ClassicPlatform``. Methods block on
subprocesses and are meant to be called through ``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import sys
from collections.abc import Sequence
from typing import Any

from btbridge.core.errors import DeviceDiscoveryError, TransportConnectError, TransportError
from btbridge.core.model import UNKNOWN_DEVICE_NAME, ClassicDeviceInfo
from btbridge.transports.base import ClassicPlatform

_DEVICE_LINE_RE = re.compile(r"^Device\s+([0-9A-F:]{17})\s+(.+)$", re.IGNORECASE)
_COMMAND_TIMEOUT_S = 15.0
LOGGER = logging.getLogger(__name__)


class BlueZPlatform:
    """Linux classic control through ``bluetoothctl``."""

    def discover(self) -> list[ClassicDeviceInfo]:
        listing_commands = [
            ["bluetoothctl", "devices"],
            ["bluetoothctl", "paired-devices"],
        ]

        seen: dict[str, str] = {}
        command_errors: list[str] = []

        for cmd in listing_commands:
            result = _run_command(cmd)
            if result is None:
                continue
            if result.returncode != 0:
                stderr = (result.stderr or "").strip()
                if stderr:
                    command_errors.append(f"{' '.join(cmd)} -> {stderr}")
                continue

            for line in result.stdout.splitlines():
                match = _DEVICE_LINE_RE.match(line.strip())
                if not match:
                    continue
                address, name = match.group(1).upper(), match.group(2).strip()
                seen.setdefault(address, name)

        if not seen and command_errors:
            joined = " | ".join(command_errors)
            raise DeviceDiscoveryError(
                f"Bluetooth discovery failed. Ensure a working D-Bus/BlueZ session. Details: {joined}"
            )

        devices: list[ClassicDeviceInfo] = []
        for address, name in seen.items():
            info = self._info(address)
            devices.append(
                ClassicDeviceInfo(
                    name=name,
                    address=address,
                    paired="Paired: yes" in info,
                    connected="Connected: yes" in info,
                )
            )
        return devices

    def connect(self, address: str) -> None:
        result = _run_command(["bluetoothctl", "connect", address])
        if result is None:
            raise TransportConnectError("bluetoothctl is not available on this system")
        if result.returncode != 0 or "Failed to connect" in result.stdout:
            detail = (result.stderr or result.stdout or "").strip()
            raise TransportConnectError(f"bluetoothctl connect {address} failed: {detail}")

    def disconnect(self, address: str) -> None:
        result = _run_command(["bluetoothctl", "disconnect", address])
        if result is None:
            raise TransportError("bluetoothctl is not available on this system")
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise TransportError(f"bluetoothctl disconnect {address} failed: {detail}")

    def is_connected(self, address: str) -> bool:
        return "Connected: yes" in self._info(address)

    def _info(self, address: str) -> str:
        result = _run_command(["bluetoothctl", "info", address])
        if result is None or result.returncode != 0:
            return ""
        return result.stdout


class MacOSPlatform:
    """macOS classic control through ``system_profiler`` and ``blueutil``.

    macOS offers no scriptable way to force a classic link down, so
    ``disconnect`` only logs; the OS keeps managing the link.
    """

    def discover(self) -> list[ClassicDeviceInfo]:
        inquiry = _run_command(["blueutil", "--inquiry", "5"], timeout_s=6.0)
        if inquiry is None:
            LOGGER.debug("blueutil not available, using system_profiler only")

        devices = self._profiled_devices()
        LOGGER.info("macOS discovery found %d devices", len(devices))
        return devices

    def _profiled_devices(self) -> list[ClassicDeviceInfo]:
        result = _run_command(["system_profiler", "SPBluetoothDataType", "-json"])
        if result is None or result.returncode != 0:
            detail = "" if result is None else (result.stderr or "").strip()
            raise DeviceDiscoveryError(f"macOS discovery failed: {detail or 'system_profiler unavailable'}")
        return parse_system_profiler(result.stdout)

    def connect(self, address: str) -> None:
        result = _run_command(["blueutil", "--connect", address])
        if result is None or result.returncode != 0:
            LOGGER.info(
                "Cannot force a classic connection to %s; assuming it is connected out-of-band",
                address,
            )

    def disconnect(self, address: str) -> None:
        LOGGER.info("Classic disconnect is not supported on macOS; leaving %s to the OS", address)

    def is_connected(self, address: str) -> bool:
        result = _run_command(["blueutil", "--is-connected", address])
        if result is not None and result.returncode == 0:
            return result.stdout.strip() == "1"
        return any(
            device.connected and device.address.upper() == address.upper()
            for device in self._profiled_devices()
        )


class WindowsPlatform:
    """Windows classic enumeration through PowerShell ``Get-PnpDevice``.

    Connect and disconnect are no-ops; pairing state is managed by Windows.
    """

    _SCRIPT = (
        'Get-PnpDevice -Class Bluetooth | Where-Object {$_.Status -eq "OK"} | '
        "Select-Object FriendlyName, InstanceId | ConvertTo-Json"
    )

    def discover(self) -> list[ClassicDeviceInfo]:
        result = _run_command(["powershell", "-NoProfile", "-Command", self._SCRIPT])
        if result is None or result.returncode != 0:
            detail = "" if result is None else (result.stderr or "").strip()
            raise DeviceDiscoveryError(f"Windows discovery failed: {detail or 'powershell unavailable'}")
        return parse_pnp_devices(result.stdout)

    def connect(self, address: str) -> None:
        LOGGER.info("Classic connect is managed by Windows; assuming %s is connected", address)

    def disconnect(self, address: str) -> None:
        LOGGER.info("Classic disconnect is not supported on Windows; leaving %s to the OS", address)

    def is_connected(self, address: str) -> bool:
        return any(device.address == address for device in self.discover())


def default_platform() -> ClassicPlatform:
    if sys.platform == "darwin":
        return MacOSPlatform()
    if sys.platform == "win32":
        return WindowsPlatform()
    return BlueZPlatform()


def parse_system_profiler(stdout: str) -> list[ClassicDeviceInfo]:
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Ignoring malformed system_profiler output: %s", exc)
        return []

    sections = data.get("SPBluetoothDataType") if isinstance(data, dict) else None
    if not sections or not isinstance(sections, list) or not isinstance(sections[0], dict):
        return []

    devices: list[ClassicDeviceInfo] = []
    for key, connected in (("device_connected", True), ("device_not_connected", False)):
        for entry in _as_list(sections[0].get(key)):
            if not isinstance(entry, dict):
                continue
            for name, info in entry.items():
                if isinstance(info, dict) and info.get("device_address"):
                    devices.append(
                        ClassicDeviceInfo(
                            name=name,
                            address=info["device_address"],
                            paired=True,
                            connected=connected,
                        )
                    )
    return devices


def parse_pnp_devices(stdout: str) -> list[ClassicDeviceInfo]:
    if not stdout.strip():
        return []
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Ignoring malformed Get-PnpDevice output: %s", exc)
        return []

    devices: list[ClassicDeviceInfo] = []
    for entry in _as_list(data):
        if not isinstance(entry, dict) or not entry.get("InstanceId"):
            continue
        devices.append(
            ClassicDeviceInfo(
                name=entry.get("FriendlyName") or UNKNOWN_DEVICE_NAME,
                address=entry["InstanceId"],
                paired=True,
                connected=False,
            )
        )
    return devices


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _run_command(
    cmd: Sequence[str],
    *,
    timeout_s: float = _COMMAND_TIMEOUT_S,
) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError:
        return None
    except subprocess.TimeoutExpired:
        LOGGER.warning("Command timed out after %.1fs: %s", timeout_s, " ".join(cmd))
        return None
