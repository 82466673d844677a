from __future__ import annotations

import asyncio

import pytest
from bleak.exc import BleakError

from btbridge.core.errors import DeviceDiscoveryError
from btbridge.core.model import ClassicDeviceInfo
from btbridge.core.service import BridgeService
from fakes import CLASSIC_ADDRESS, PERIPHERAL, FakeAdvertisement, FakeBLEDevice, Harness, fast_config

CLASSIC_ID = f"classic_{CLASSIC_ADDRESS}"
BLE_ID = f"ble_{PERIPHERAL}"


def _service(harness: Harness, sink=None) -> BridgeService:
    return BridgeService(
        classic=harness.classic,
        ble=harness.ble,
        config=fast_config(),
        on_device_disconnected=sink,
    )


@pytest.mark.asyncio
async def test_discover_lists_ble_before_classic() -> None:
    service = _service(Harness())

    result = await service.discover_devices()

    assert result["success"] is True
    assert [d["id"] for d in result["devices"]] == [BLE_ID, CLASSIC_ID]
    ble, classic = result["devices"]
    assert ble == {
        "id": BLE_ID,
        "name": "Lamp",
        "address": PERIPHERAL,
        "type": "ble",
        "rssi": -50,
        "connected": False,
    }
    assert classic["type"] == "classic"
    assert classic["paired"] is True


@pytest.mark.asyncio
async def test_discover_ignore_unknown_filters_nameless_devices() -> None:
    adverts = [
        (FakeBLEDevice(PERIPHERAL, "Lamp"), FakeAdvertisement("Lamp", -50)),
        (FakeBLEDevice("AA:BB:CC:DD:EE:02"), FakeAdvertisement(None, -90)),
    ]
    service = _service(Harness(adverts=adverts, classic_devices=[]))

    everything = await service.discover_devices({"ignoreUnknown": False})
    named = await service.discover_devices({"ignoreUnknown": True})

    assert len(everything["devices"]) == 2
    assert [d["id"] for d in named["devices"]] == [BLE_ID]


@pytest.mark.asyncio
async def test_ble_scan_failure_still_returns_classic_results() -> None:
    harness = Harness()
    harness.scanner.fail = BleakError("Bluetooth device is turned off")
    service = _service(harness)

    result = await service.discover_devices()

    assert result["success"] is True
    assert [d["id"] for d in result["devices"]] == [CLASSIC_ID]


@pytest.mark.asyncio
async def test_unusable_ble_backend_still_returns_classic_results() -> None:
    harness = Harness()

    def unsupported(*, detection_callback):
        raise BleakError("Unsupported platform")

    harness.ble._scanner_factory = unsupported
    service = _service(harness)

    result = await service.discover_devices()

    assert result["success"] is True
    assert [d["id"] for d in result["devices"]] == [CLASSIC_ID]


@pytest.mark.asyncio
async def test_unexpected_scan_error_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    harness = Harness()
    service = _service(harness)

    async def crash(duration_ms: int):
        raise RuntimeError("backend bug")

    monkeypatch.setattr(harness.ble, "scan", crash)

    result = await service.discover_devices()

    assert [d["id"] for d in result["devices"]] == [CLASSIC_ID]


@pytest.mark.asyncio
async def test_classic_failure_still_returns_ble_results() -> None:
    harness = Harness()

    def broken() -> list[ClassicDeviceInfo]:
        raise DeviceDiscoveryError("dbus crashed")

    harness.platform.discover = broken  # type: ignore[method-assign]
    service = _service(harness)

    result = await service.discover_devices()

    assert [d["id"] for d in result["devices"]] == [BLE_ID]


@pytest.mark.asyncio
async def test_connect_then_disconnect_round_trip() -> None:
    service = _service(Harness())
    await service.discover_devices()

    connected = await service.connect_device(BLE_ID)
    assert connected == {"success": True, "deviceId": BLE_ID, "name": "Lamp", "type": "ble"}

    table = await service.get_connected_devices()
    assert [d["id"] for d in table["devices"]] == [BLE_ID]
    assert isinstance(table["devices"][0]["connectedAt"], int)

    listing = await service.discover_devices()
    assert next(d for d in listing["devices"] if d["id"] == BLE_ID)["connected"] is True

    assert await service.disconnect_device(BLE_ID) == {"success": True, "deviceId": BLE_ID}
    assert (await service.get_connected_devices())["devices"] == []
    assert service.connection(BLE_ID) is None


@pytest.mark.asyncio
async def test_connect_twice_reports_already_connected_without_adapter_call() -> None:
    harness = Harness()
    service = _service(harness)
    await service.discover_devices()
    await service.connect_device(CLASSIC_ID)
    calls_before = list(harness.platform.calls)

    result = await service.connect_device(CLASSIC_ID)

    assert result == {"success": False, "error": "Device already connected"}
    assert harness.platform.calls == calls_before
    await service.shutdown()


@pytest.mark.asyncio
async def test_concurrent_connects_yield_one_connection() -> None:
    harness = Harness()
    service = _service(harness)
    await service.discover_devices()

    results = await asyncio.gather(
        service.connect_device(CLASSIC_ID),
        service.connect_device(CLASSIC_ID),
    )

    assert sorted(r["success"] for r in results) == [False, True]
    assert harness.platform.calls.count(("connect", CLASSIC_ADDRESS)) == 1
    await service.shutdown()


@pytest.mark.asyncio
async def test_connect_unknown_id_is_not_found() -> None:
    service = _service(Harness())

    assert await service.connect_device("ble_nope") == {"success": False, "error": "Device not found"}


@pytest.mark.asyncio
async def test_injected_device_needs_discovery_before_connect() -> None:
    service = _service(Harness(adverts=[]))
    device_id = service.add_discovered_device({"id": "11:22:33:44:55:66", "name": "Tag"})

    result = await service.connect_device(device_id)

    assert result["success"] is False
    assert result["error"] == "Device not found. Please discover devices first."


@pytest.mark.asyncio
async def test_send_requires_connection_and_reports_bytes() -> None:
    harness = Harness()
    service = _service(harness)
    await service.discover_devices()

    assert await service.send_data(CLASSIC_ID, b"\x01") == {"success": False, "error": "Device not connected"}

    await service.connect_device(CLASSIC_ID)
    result = await service.send_data(CLASSIC_ID, bytes([0x01, 0x1B, 0x7E, 0x44, 0x01, 0x02]))

    assert result == {"success": True, "deviceId": CLASSIC_ID, "bytesSent": 2, "type": "classic"}
    assert harness.channels.channels[0].writes == [b"\x01", b"\x02"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_adapter_disconnect_reaches_sink_once() -> None:
    harness = Harness()
    lost: list[str] = []
    service = _service(harness, sink=lost.append)
    await service.discover_devices()
    await service.connect_device(BLE_ID)

    harness.clients.clients[0].drop()

    assert lost == [BLE_ID]
    assert (await service.get_connected_devices())["devices"] == []


@pytest.mark.asyncio
async def test_voluntary_disconnect_is_silent() -> None:
    harness = Harness()
    lost: list[str] = []
    service = _service(harness, sink=lost.append)
    await service.discover_devices()
    await service.connect_device(BLE_ID)
    await service.connect_device(CLASSIC_ID)

    await service.shutdown()

    assert lost == []
    assert (await service.get_connected_devices())["devices"] == []


@pytest.mark.asyncio
async def test_connection_survives_clear_and_rediscovery() -> None:
    harness = Harness()
    service = _service(harness)
    await service.discover_devices()
    await service.connect_device(CLASSIC_ID)

    service.clear_discovered_devices()
    harness.platform.devices = [ClassicDeviceInfo(name="Renamed", address=CLASSIC_ADDRESS)]
    await service.discover_devices()

    table = await service.get_connected_devices()
    assert table["devices"][0]["name"] == "Buds"
    assert await service.connect_device(CLASSIC_ID) == {"success": False, "error": "Device already connected"}
    await service.shutdown()


@pytest.mark.asyncio
async def test_add_discovered_device_namespaces_ids() -> None:
    service = _service(Harness(adverts=[], classic_devices=[]))

    given = service.add_discovered_device({"id": "abc", "name": "Tag", "address": "11:22"})
    prefixed = service.add_discovered_device({"id": "ble_def"})
    synthesized = service.add_discovered_device({})

    assert given == "ble_abc"
    assert prefixed == "ble_def"
    assert synthesized.startswith("ble_") and len(synthesized) == len("ble_") + 12

    listing = await service.discover_devices()
    by_id = {d["id"]: d for d in listing["devices"]}
    assert set(by_id) == {given, prefixed, synthesized}
    assert by_id[prefixed]["name"] == "Unknown Device"
    assert by_id[prefixed]["address"] == "N/A"

    service.clear_discovered_devices()
    assert (await service.discover_devices())["devices"] == []
