"""Tests for the Bleak-backed BLEAdapter, with the Bleak client and scanner replaced by fakes."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from bletether.interfaces.ble.adapter import (
    AdvertisementSeen,
    AuthorizationFailed,
    CharacteristicValue,
    LinkConnected,
    LinkDisconnected,
    OperationFailed,
    PowerState,
    PowerStateChanged,
    ScanFailed,
    ServiceDiscoveryComplete,
)
from bletether.interfaces.ble.bleak_adapter import (
    classify_error,
    convert_services,
    extract_status,
)
from bletether.interfaces.ble.constants import BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID
from bletether.interfaces.ble.errors import BLEAuthorizationError, BLEOperationIssueError
from bletether.interfaces.ble.models import SubscriptionMode

from test_ble_fixtures import make_characteristic

ADDRESS = "AA:BB:CC:DD:EE:01"


@pytest.fixture
def clients(bleak_fakes):
    return bleak_fakes.clients


@pytest.fixture
def scanners(bleak_fakes):
    return bleak_fakes.scanners


@pytest.fixture
def events():
    return []


@pytest.fixture
def adapter(bleak_fakes, events):
    bleak_adapter = bleak_fakes.make_adapter(scanner_kwargs={"scanning_mode": "active"})
    bleak_adapter.set_event_sink(events.append)
    yield bleak_adapter
    bleak_adapter.close()


def connected_client(adapter, clients):
    adapter.connect(ADDRESS)
    client = clients[-1]
    client.connected = True
    client.connect_future.set_result(True)
    return client


@pytest.mark.parametrize(
    "message,kind",
    [
        ("Bluetooth device is turned off", "power"),
        ("No Bluetooth adapters found.", "power"),
        ("[org.bluez.Error.NotReady] Resource Not Ready", "power"),
        ("[org.bluez.Error.NotPermitted] Not permitted", "permission"),
        ("Access denied by system policy", "permission"),
        ("Device with address AA:BB was not found", "link"),
    ],
)
def test_classify_error(message, kind):
    assert classify_error(Exception(message)) == kind


@pytest.mark.parametrize(
    "message,status",
    [
        ("Connection failed with status 133", 133),
        ("GATT status=8", 8),
        ("Status: 19 (remote user terminated)", 19),
        ("Device disconnected", 0),
    ],
)
def test_extract_status(message, status):
    assert extract_status(Exception(message)) == status


def test_convert_services():
    characteristic = MagicMock(uuid="2A19", handle=12, properties=["Read", "Notify"])
    service = MagicMock(uuid="180F", characteristics=[characteristic])

    (converted,) = convert_services([service])
    assert converted.uuid == BATTERY_SERVICE_UUID
    (battery,) = converted.characteristics
    assert battery.uuid == BATTERY_LEVEL_UUID
    assert battery.service_uuid == BATTERY_SERVICE_UUID
    assert battery.handle == 12
    assert battery.properties == frozenset({"read", "notify"})
    assert battery.subscription_mode == SubscriptionMode.NOTIFY


class TestScanning:
    def test_start_scan_reports_advertisements(self, adapter, clients, scanners, events):
        adapter.start_scan()

        assert clients[0].log_if_no_address is False
        (scanner,) = scanners
        assert scanner.started
        assert scanner.kwargs == {"scanning_mode": "active"}

        device = MagicMock(address=ADDRESS)
        device.name = "Fallback"
        scanner.detection_callback(device, MagicMock(local_name="Band", rssi=-61))
        assert events == [AdvertisementSeen(address=ADDRESS, name="Band", rssi=-61)]

    def test_stop_scan(self, adapter, scanners):
        adapter.start_scan()
        adapter.stop_scan()
        assert scanners[0].stopped

    def test_stop_without_scan_is_noop(self, adapter, clients):
        adapter.stop_scan()
        assert clients == []

    def test_power_error_disables_radio(self, adapter, bleak_fakes, events):
        bleak_fakes.scan_errors.append(OSError("Bluetooth device is turned off"))
        adapter.start_scan()

        assert events == [PowerStateChanged(PowerState.OFF)]
        assert adapter.power_state == PowerState.OFF
        with pytest.raises(BLEAuthorizationError):
            adapter.start_scan()

    def test_other_scan_error_is_reported(self, adapter, bleak_fakes, events):
        bleak_fakes.scan_errors.append(OSError("[org.bluez.Error.InProgress] Operation already in progress"))
        adapter.start_scan()

        (event,) = events
        assert isinstance(event, ScanFailed)
        assert event.error_code == -1


class TestConnection:
    def test_connect_success(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        (client,) = clients
        assert client.address == ADDRESS
        assert events == []

        client.connected = True
        client.connect_future.set_result(True)
        assert events == [LinkConnected(ADDRESS)]

    def test_connect_failure_reports_status(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        clients[0].connect_future.set_exception(OSError("Connection failed with status 133"))

        assert events == [
            LinkDisconnected(ADDRESS, reason="Connection failed with status 133", status=133)
        ]
        assert clients[0].closed

    def test_permission_error_is_an_authorization_failure(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        clients[0].connect_future.set_exception(OSError("Not authorized to use Bluetooth"))

        assert events == [AuthorizationFailed(reason="Not authorized to use Bluetooth")]
        assert not adapter.has_permissions()
        assert clients[0].closed

    def test_successful_connect_clears_permission_refusal(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        clients[0].connect_future.set_exception(OSError("Access denied by system policy"))
        assert not adapter.has_permissions()

        # The refusal is not remembered as a reason to skip the next attempt
        connected_client(adapter, clients)
        assert adapter.has_permissions()
        assert events[-1] == LinkConnected(ADDRESS)

    def test_link_lost(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        client.disconnected_callback(MagicMock())
        assert events[-1] == LinkDisconnected(ADDRESS, reason="link lost")
        assert client.closed

    def test_disconnect_drops_late_callbacks(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        client = clients[0]
        adapter.disconnect()
        assert client.closed

        client.connect_future.set_result(True)
        client.disconnected_callback(MagicMock())
        assert events == []

    def test_disconnect_closes_connected_client(self, adapter, clients):
        client = connected_client(adapter, clients)
        adapter.disconnect()
        assert client.disconnect_calls == 1
        assert client.closed

    def test_reconnect_replaces_client(self, adapter, clients, events):
        first = connected_client(adapter, clients)
        adapter.connect(ADDRESS)
        assert first.closed
        assert len(clients) == 2

        first.disconnected_callback(MagicMock())
        assert LinkDisconnected(ADDRESS, reason="link lost") not in events

    def test_discover_services(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        client.services = [
            MagicMock(
                uuid="180f",
                characteristics=[MagicMock(uuid="2a19", handle=3, properties=["read"])],
            )
        ]
        adapter.discover_services()

        event = events[-1]
        assert isinstance(event, ServiceDiscoveryComplete)
        assert event.address == ADDRESS
        assert event.services[0].characteristics[0].uuid == BATTERY_LEVEL_UUID

    def test_discover_services_requires_link(self, adapter):
        with pytest.raises(BLEOperationIssueError):
            adapter.discover_services()


class TestGattOperations:
    def test_read_emits_value(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        characteristic = make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "read")

        adapter.read_characteristic(characteristic)
        specifier, future = client.reads[0]
        assert specifier == BATTERY_LEVEL_UUID

        future.set_result(bytearray(b"\x40"))
        assert events[-1] == CharacteristicValue(BATTERY_LEVEL_UUID, b"\x40", from_read=True)

    def test_only_one_read_in_flight(self, adapter, clients):
        client = connected_client(adapter, clients)
        characteristic = make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "read")

        adapter.read_characteristic(characteristic)
        with pytest.raises(BLEOperationIssueError):
            adapter.read_characteristic(characteristic)

        client.reads[0][1].set_result(b"\x40")
        adapter.read_characteristic(characteristic)
        assert len(client.reads) == 2

    def test_read_failure(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        adapter.read_characteristic(make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "read"))
        client.reads[0][1].set_exception(OSError("Read Not Permitted"))
        assert events[-1] == OperationFailed(BATTERY_LEVEL_UUID, "read", "Read Not Permitted")

    def test_read_prefers_handle(self, adapter, clients):
        client = connected_client(adapter, clients)
        characteristic = make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "read")
        adapter.read_characteristic(replace(characteristic, handle=42))
        assert client.reads[0][0] == 42

    def test_read_requires_link(self, adapter):
        with pytest.raises(BLEOperationIssueError):
            adapter.read_characteristic(make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "read"))

    def test_subscribe_forwards_notifications(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        adapter.subscribe(
            make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "notify"),
            SubscriptionMode.NOTIFY,
        )
        specifier, callback = client.notifies[0]
        assert specifier == BATTERY_LEVEL_UUID

        callback(MagicMock(), bytearray(b"\x21"))
        assert events[-1] == CharacteristicValue(BATTERY_LEVEL_UUID, b"\x21")

    def test_notifications_from_old_link_are_dropped(self, adapter, clients, events):
        client = connected_client(adapter, clients)
        adapter.subscribe(
            make_characteristic(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, "notify"),
            SubscriptionMode.NOTIFY,
        )
        callback = client.notifies[0][1]
        adapter.disconnect()
        events.clear()

        callback(MagicMock(), b"\x21")
        assert events == []


class TestPower:
    def test_report_power_state(self, adapter, events):
        adapter.report_power_state(PowerState.ON)
        assert events == []

        adapter.report_power_state(PowerState.OFF)
        adapter.report_power_state(PowerState.OFF)
        adapter.report_power_state(PowerState.ON)
        assert events == [PowerStateChanged(PowerState.OFF), PowerStateChanged(PowerState.ON)]

    def test_close_stops_scanner_and_loop(self, adapter, clients, scanners, events):
        adapter.start_scan()
        adapter.close()
        assert scanners[0].stopped
        assert clients[0].closed

        # Detached from the sink after close
        adapter.report_power_state(PowerState.OFF)
        assert events == []


class TestRecheck:
    def test_recheck_turns_radio_back_on(self, adapter, bleak_fakes, scanners, events):
        bleak_fakes.scan_errors.append(OSError("Bluetooth device is turned off"))
        adapter.start_scan()
        assert adapter.power_state == PowerState.OFF

        adapter.recheck_availability()
        trial = scanners[-1]
        assert trial.started and trial.stopped
        assert trial.detection_callback is None
        assert adapter.power_state == PowerState.ON
        assert events == [PowerStateChanged(PowerState.OFF), PowerStateChanged(PowerState.ON)]

        adapter.start_scan()
        assert scanners[-1].started

    def test_recheck_while_still_off(self, adapter, bleak_fakes, events):
        bleak_fakes.scan_errors.extend(
            [OSError("Bluetooth device is turned off"), OSError("Bluetooth device is turned off")]
        )
        adapter.start_scan()
        adapter.recheck_availability()
        assert adapter.power_state == PowerState.OFF
        assert events == [PowerStateChanged(PowerState.OFF)]

    def test_recheck_clears_permission_refusal(self, adapter, clients, events):
        adapter.connect(ADDRESS)
        clients[0].connect_future.set_exception(OSError("Access denied by system policy"))

        adapter.recheck_availability()
        assert adapter.has_permissions()
        # The radio was never reported off
        assert not any(isinstance(event, PowerStateChanged) for event in events)

    def test_recheck_keeps_permission_refusal(self, adapter, bleak_fakes, clients):
        adapter.connect(ADDRESS)
        clients[0].connect_future.set_exception(OSError("Access denied by system policy"))
        bleak_fakes.scan_errors.append(OSError("[org.bluez.Error.NotPermitted] Not permitted"))

        adapter.recheck_availability()
        assert not adapter.has_permissions()

    def test_recheck_during_scan_does_not_start_another_scanner(self, adapter, scanners):
        adapter.start_scan()
        adapter.recheck_availability()
        assert len(scanners) == 1
