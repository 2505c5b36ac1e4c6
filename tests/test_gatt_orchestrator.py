"""Tests for the GATT operation orchestrator and its read queue."""

import pytest

from bletether.interfaces.ble.constants import (
    BATTERY_LEVEL_UUID,
    DEVICE_NAME_UUID,
    GENERIC_ACCESS_SERVICE_UUID,
    HEART_RATE_MEASUREMENT_UUID,
    TOPIC_CHARACTERISTIC_UPDATE,
)
from bletether.interfaces.ble.gatt import GattOrchestrator, PendingReadQueue
from bletether.interfaces.ble.models import (
    BatteryLevel,
    CustomData,
    GattService,
    HeartRate,
    SubscriptionMode,
)
from bletether.interfaces.ble.observable import UpdateStream
from bletether.interfaces.ble.reconnection import (
    READ_RETRY_TIMER,
    READ_TIMEOUT_TIMER,
    ReconnectScheduler,
)

from test_ble_fixtures import (
    VENDOR_NOTIFY_UUID,
    VENDOR_READ_UUID,
    VENDOR_SERVICE_UUID,
    battery_service,
    heart_rate_service,
    make_characteristic,
    vendor_service,
)

UNKNOWN_UUID = "0000abcd-0000-1000-8000-00805f9b34fb"
OTHER_UNKNOWN_UUID = "0000abce-0000-1000-8000-00805f9b34fb"


@pytest.fixture
def device_info():
    return []


@pytest.fixture
def stalls():
    return []


@pytest.fixture
def orchestrator(fake_adapter, timers, inline_executor, device_info, stalls):
    scheduler = ReconnectScheduler(inline_executor, timers)
    updates = UpdateStream(TOPIC_CHARACTERISTIC_UPDATE, maxlen=8, publisher=inline_executor)
    return GattOrchestrator(
        fake_adapter,
        scheduler,
        updates=updates,
        vendor_service_uuid=VENDOR_SERVICE_UUID,
        on_device_info=lambda **changes: device_info.append(changes),
        on_stalled=stalls.append,
        read_retry_delay=0.1,
        read_max_retries=3,
        read_timeout=10.0,
    )


class TestPendingReadQueue:
    def test_single_read_in_flight(self):
        queue = PendingReadQueue()
        first = make_characteristic("a", "s", "read")
        second = make_characteristic("b", "s", "read")
        assert queue.enqueue(first)
        assert queue.enqueue(second)
        assert queue.pop_next() == first
        assert queue.pop_next() is None
        assert queue.in_flight == first

        assert queue.complete("b") is None
        assert queue.complete("a") == first
        assert queue.pop_next() == second

    def test_duplicates_are_rejected(self):
        queue = PendingReadQueue()
        characteristic = make_characteristic("a", "s", "read")
        assert queue.enqueue(characteristic)
        assert not queue.enqueue(characteristic)
        queue.pop_next()
        assert not queue.enqueue(characteristic)

    def test_clear_resets_in_flight(self):
        queue = PendingReadQueue()
        queue.enqueue(make_characteristic("a", "s", "read"))
        queue.pop_next()
        queue.clear()
        assert queue.in_flight is None
        assert len(queue) == 0


class TestServiceDiscoveryPlan:
    """Which reads and subscriptions follow service discovery."""

    def test_standard_battery_wins(self, orchestrator, fake_adapter):
        orchestrator.on_services_discovered([vendor_service(), battery_service()])

        assert fake_adapter.args_of("subscribe") == [(BATTERY_LEVEL_UUID, SubscriptionMode.NOTIFY)]
        assert fake_adapter.args_of("read") == [BATTERY_LEVEL_UUID]
        # Subscriptions are issued before the first read
        assert fake_adapter.names().index("subscribe") < fake_adapter.names().index("read")

    def test_vendor_service_without_battery(self, orchestrator, fake_adapter):
        orchestrator.on_services_discovered([vendor_service()])

        assert fake_adapter.args_of("subscribe") == [(VENDOR_NOTIFY_UUID, SubscriptionMode.NOTIFY)]
        assert fake_adapter.args_of("read") == [VENDOR_READ_UUID]
        assert len(orchestrator.reads) == 1

    def test_fallback_reads_everything_readable(self, orchestrator, fake_adapter):
        generic = GattService(
            GENERIC_ACCESS_SERVICE_UUID,
            (make_characteristic(DEVICE_NAME_UUID, GENERIC_ACCESS_SERVICE_UUID, "read"),),
        )
        custom = GattService(
            "0000aaaa-0000-1000-8000-00805f9b34fb",
            (
                make_characteristic(UNKNOWN_UUID, "0000aaaa-0000-1000-8000-00805f9b34fb", "read"),
                make_characteristic(OTHER_UNKNOWN_UUID, "0000aaaa-0000-1000-8000-00805f9b34fb", "write"),
            ),
        )
        orchestrator.on_services_discovered([generic, custom])

        assert fake_adapter.args_of("subscribe") == []
        assert fake_adapter.args_of("read") == [DEVICE_NAME_UUID]
        orchestrator.on_characteristic_value(DEVICE_NAME_UUID, b"Sensor", from_read=True)
        assert fake_adapter.args_of("read") == [DEVICE_NAME_UUID, UNKNOWN_UUID]

    def test_heart_rate_is_subscribed_never_read(self, orchestrator, fake_adapter):
        orchestrator.on_services_discovered([battery_service(), heart_rate_service()])

        subscribed = [uuid for uuid, _mode in fake_adapter.args_of("subscribe")]
        assert HEART_RATE_MEASUREMENT_UUID in subscribed
        assert HEART_RATE_MEASUREMENT_UUID not in fake_adapter.args_of("read")

    def test_no_duplicate_subscriptions(self, orchestrator, fake_adapter):
        orchestrator.on_services_discovered([battery_service()])
        orchestrator.on_services_discovered([battery_service()])
        assert len(fake_adapter.args_of("subscribe")) == 1


class TestReadSerialization:
    """Exactly one read in flight at a time."""

    def test_reads_drain_one_at_a_time(self, orchestrator, fake_adapter):
        orchestrator.on_services_discovered([GattService(VENDOR_SERVICE_UUID, vendor_service().characteristics)])
        assert fake_adapter.args_of("read") == [VENDOR_READ_UUID]
        assert orchestrator.is_reading_characteristic

        orchestrator.on_characteristic_value(VENDOR_READ_UUID, b"\x10\x20", from_read=True)
        assert fake_adapter.args_of("read") == [VENDOR_READ_UUID, VENDOR_NOTIFY_UUID]

        orchestrator.on_characteristic_value(VENDOR_NOTIFY_UUID, b"\x30\x40", from_read=True)
        assert not orchestrator.is_reading_characteristic

    def test_request_read_while_busy_is_deferred(self, orchestrator, fake_adapter):
        first = make_characteristic(UNKNOWN_UUID, "s", "read")
        second = make_characteristic(OTHER_UNKNOWN_UUID, "s", "read")

        assert orchestrator.request_read(first) is True
        assert orchestrator.request_read(second) is False
        assert fake_adapter.args_of("read") == [UNKNOWN_UUID]

        orchestrator.on_characteristic_value(UNKNOWN_UUID, b"\x00\x00", from_read=True)
        assert fake_adapter.args_of("read") == [UNKNOWN_UUID, OTHER_UNKNOWN_UUID]

    def test_notification_does_not_complete_read(self, orchestrator, fake_adapter):
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))
        orchestrator.on_characteristic_value(UNKNOWN_UUID, b"\x00\x00", from_read=False)
        assert orchestrator.is_reading_characteristic

    def test_failed_read_advances_queue(self, orchestrator, fake_adapter):
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))
        orchestrator.request_read(make_characteristic(OTHER_UNKNOWN_UUID, "s", "read"))

        orchestrator.on_operation_failed(UNKNOWN_UUID, "read", "Read Not Permitted")
        assert fake_adapter.args_of("read") == [UNKNOWN_UUID, OTHER_UNKNOWN_UUID]

    def test_issue_failure_is_retried_after_fixed_delay(self, orchestrator, fake_adapter, timers):
        fake_adapter.read_issue_failures = 2
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))

        assert fake_adapter.args_of("read_rejected") == [UNKNOWN_UUID]
        assert orchestrator.scheduler.is_pending(READ_RETRY_TIMER)
        timers.fire_next(0.1)
        timers.fire_next(0.1)
        assert fake_adapter.args_of("read") == [UNKNOWN_UUID]
        assert orchestrator.scheduler.is_pending(READ_TIMEOUT_TIMER)

    def test_issue_failures_are_bounded(self, orchestrator, fake_adapter, timers, stalls):
        fake_adapter.read_issue_failures = 100
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))
        for _ in range(3):
            timers.fire_next(0.1)

        assert len(fake_adapter.args_of("read_rejected")) == 4
        assert len(stalls) == 1
        assert not orchestrator.is_reading_characteristic
        assert not orchestrator.scheduler.is_pending(READ_RETRY_TIMER)

    def test_read_timeout_reports_stall(self, orchestrator, timers, stalls):
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))
        timers.fire_next(10.0)
        assert stalls and "timed out" in stalls[0]
        assert not orchestrator.is_reading_characteristic

    def test_completed_read_cancels_timeout(self, orchestrator, timers):
        orchestrator.request_read(make_characteristic(UNKNOWN_UUID, "s", "read"))
        orchestrator.on_characteristic_value(UNKNOWN_UUID, b"\x00\x00", from_read=True)
        assert not orchestrator.scheduler.is_pending(READ_TIMEOUT_TIMER)
        assert timers.active == []


class TestValueRouting:
    """Decoding, emission and the vendor battery heuristic."""

    def test_standard_values_are_emitted_and_folded(self, orchestrator, device_info):
        orchestrator.on_characteristic_value(BATTERY_LEVEL_UUID, bytes([77]))
        orchestrator.on_characteristic_value(HEART_RATE_MEASUREMENT_UUID, bytes([0x00, 64]))

        assert orchestrator.updates.drain() == [BatteryLevel(77), HeartRate(64)]
        assert device_info == [{"battery_percent": 77}, {"heart_rate_bpm": 64}]

    def test_malformed_value_emits_nothing(self, orchestrator, device_info):
        orchestrator.on_characteristic_value(HEART_RATE_MEASUREMENT_UUID, bytes([0x01, 0x48]))
        assert orchestrator.updates.drain() == []
        assert device_info == []

    def test_device_name_is_reported(self, orchestrator, device_info):
        orchestrator.on_characteristic_value(DEVICE_NAME_UUID, b" Band ")
        assert device_info == [{"name": "Band"}]
        assert orchestrator.updates.drain() == []

    def test_vendor_battery_adopted_and_sticky(self, orchestrator, device_info):
        orchestrator.on_characteristic_value(UNKNOWN_UUID, bytes([55]))
        assert orchestrator.vendor_battery_uuid == UNKNOWN_UUID

        # Later values on the adopted UUID are batteries, other UUIDs are not adopted
        orchestrator.on_characteristic_value(UNKNOWN_UUID, bytes([54]))
        orchestrator.on_characteristic_value(OTHER_UNKNOWN_UUID, bytes([20]))

        assert orchestrator.updates.drain() == [
            BatteryLevel(55),
            BatteryLevel(54),
            CustomData(OTHER_UNKNOWN_UUID, bytes([20])),
        ]
        assert orchestrator.vendor_battery_uuid == UNKNOWN_UUID

    @pytest.mark.parametrize("payload", [bytes([0]), bytes([101]), bytes([50, 1]), b""])
    def test_heuristic_rejects_non_battery_payloads(self, orchestrator, payload):
        orchestrator.on_characteristic_value(UNKNOWN_UUID, payload)
        assert orchestrator.vendor_battery_uuid is None
        assert orchestrator.updates.drain() == [CustomData(UNKNOWN_UUID, payload)]

    def test_heuristic_skipped_with_standard_battery(self, orchestrator):
        orchestrator.on_services_discovered([battery_service()])
        orchestrator.on_characteristic_value(UNKNOWN_UUID, bytes([55]))
        assert orchestrator.vendor_battery_uuid is None

    def test_reset_clears_sticky_uuid_and_queue(self, orchestrator, timers):
        orchestrator.on_characteristic_value(UNKNOWN_UUID, bytes([55]))
        orchestrator.request_read(make_characteristic(OTHER_UNKNOWN_UUID, "s", "read"))
        orchestrator.reset()

        assert orchestrator.vendor_battery_uuid is None
        assert not orchestrator.is_reading_characteristic
        assert len(orchestrator.notifications) == 0
        assert timers.active == []


class TestUpdateStream:
    def test_bounded_buffer_drops_oldest(self, inline_executor):
        stream = UpdateStream("test.updates", maxlen=2, publisher=inline_executor)
        for percent in (1, 2, 3):
            stream.emit(BatteryLevel(percent))
        assert stream.dropped == 1
        assert stream.drain() == [BatteryLevel(2), BatteryLevel(3)]
        assert stream.value == BatteryLevel(3)

    def test_listeners_see_every_event(self, inline_executor):
        stream = UpdateStream("test.updates", maxlen=2, publisher=inline_executor)
        seen = []
        stream.add_listener(seen.append)
        stream.emit(BatteryLevel(5))
        stream.emit(BatteryLevel(5))
        assert seen == [BatteryLevel(5), BatteryLevel(5)]
