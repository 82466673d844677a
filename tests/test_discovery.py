from __future__ import annotations

import json
import subprocess

import pytest

from btbridge.core.errors import DeviceDiscoveryError, TransportConnectError
from btbridge.transports.platforms import (
    BlueZPlatform,
    MacOSPlatform,
    parse_pnp_devices,
    parse_system_profiler,
)


def _cp(cmd: list[str], rc: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr=stderr)


def test_bluez_discovery_reads_paired_and_connected_state(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        if cmd == ["bluetoothctl", "devices"]:
            return _cp(cmd, 0, stdout="Device 88:92:CC:11:22:33 OnePlus Buds 4\nnoise line\n")
        if cmd == ["bluetoothctl", "paired-devices"]:
            return _cp(cmd, 0, stdout="Device 88:92:CC:11:22:33 OnePlus Buds 4\nDevice AA:BB:CC:DD:EE:FF Speaker\n")
        if cmd[:2] == ["bluetoothctl", "info"]:
            if cmd[2] == "88:92:CC:11:22:33":
                return _cp(cmd, 0, stdout="\tPaired: yes\n\tConnected: yes\n")
            return _cp(cmd, 0, stdout="\tPaired: yes\n\tConnected: no\n")
        raise AssertionError(f"Unexpected cmd: {cmd}")

    monkeypatch.setattr(subprocess, "run", fake_run)

    devices = BlueZPlatform().discover()
    assert [d.address for d in devices] == ["88:92:CC:11:22:33", "AA:BB:CC:DD:EE:FF"]
    assert devices[0].name == "OnePlus Buds 4"
    assert devices[0].paired and devices[0].connected
    assert devices[1].paired and not devices[1].connected


def test_bluez_discovery_raises_when_all_commands_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        return _cp(cmd, -6, stderr="dbus crashed")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(DeviceDiscoveryError):
        BlueZPlatform().discover()


def test_bluez_discovery_without_bluetoothctl_is_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert BlueZPlatform().discover() == []


def test_bluez_connect_failure_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        return _cp(cmd, 0, stdout="Attempting to connect\nFailed to connect: org.bluez.Error.Failed\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(TransportConnectError):
        BlueZPlatform().connect("88:92:CC:11:22:33")


def test_bluez_is_connected_reads_info(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        return _cp(cmd, 0, stdout="\tConnected: no\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert BlueZPlatform().is_connected("88:92:CC:11:22:33") is False


def test_system_profiler_output_parsed() -> None:
    stdout = json.dumps(
        {
            "SPBluetoothDataType": [
                {
                    "device_connected": [{"Keyboard": {"device_address": "11:22:33:44:55:66"}}],
                    "device_not_connected": [
                        {"Headphones": {"device_address": "AA:BB:CC:DD:EE:FF"}},
                        {"NoAddress": {}},
                    ],
                }
            ]
        }
    )

    devices = parse_system_profiler(stdout)
    assert [(d.name, d.connected) for d in devices] == [("Keyboard", True), ("Headphones", False)]
    assert all(d.paired for d in devices)


def test_malformed_platform_output_is_empty() -> None:
    assert parse_system_profiler("not json") == []
    assert parse_system_profiler("{}") == []
    assert parse_pnp_devices("") == []
    assert parse_pnp_devices("{broken") == []


def test_pnp_single_object_output_parsed() -> None:
    devices = parse_pnp_devices(json.dumps({"FriendlyName": None, "InstanceId": "BTHENUM\\DEV_1"}))
    assert len(devices) == 1
    assert devices[0].name == "Unknown Device"
    assert devices[0].address == "BTHENUM\\DEV_1"


def test_macos_connect_without_blueutil_is_noop_success(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    MacOSPlatform().connect("AA:BB:CC:DD:EE:FF")
    MacOSPlatform().disconnect("AA:BB:CC:DD:EE:FF")


def test_macos_is_connected_fallback_skips_inquiry(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []
    profile = json.dumps(
        {"SPBluetoothDataType": [{"device_connected": [{"Keyboard": {"device_address": "11:22:33:44:55:66"}}]}]}
    )

    def fake_run(cmd, check, capture_output, text, timeout):
        calls.append(cmd)
        if cmd[0] == "blueutil":
            raise FileNotFoundError(cmd[0])
        return _cp(cmd, 0, stdout=profile)

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert MacOSPlatform().is_connected("11:22:33:44:55:66") is True
    assert ["blueutil", "--inquiry", "5"] not in calls
    assert calls[-1] == ["system_profiler", "SPBluetoothDataType", "-json"]
