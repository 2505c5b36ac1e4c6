"""Command line monitor: scan for peripherals or keep a connection alive and log its values."""

import argparse
import logging
import threading
import time
from typing import List, Optional

from pubsub import pub
from tabulate import tabulate

from bletether.interfaces.ble.bleak_adapter import BleakAdapter
from bletether.interfaces.ble.constants import (
    TOPIC_CHARACTERISTIC_UPDATE,
    TOPIC_CONNECTION_STATE,
    BLEConfig,
)
from bletether.interfaces.ble.interface import BLEConnectionManager
from bletether.interfaces.ble.models import (
    BatteryLevel,
    CustomData,
    Device,
    FilterConfig,
    HeartRate,
)
from bletether.interfaces.ble.policies import ReconnectPolicy
from bletether.interfaces.ble.state import ConnectionState

logger = logging.getLogger("bletether")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bletether",
        description="Scan for BLE peripherals, or connect to one and keep the connection alive.",
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument(
        "--scan",
        nargs="?",
        type=float,
        const=10.0,
        metavar="SECONDS",
        help="Scan and print the devices found (default 10 seconds)",
    )
    action.add_argument("--connect", metavar="ADDRESS", help="Connect to ADDRESS and log its values")
    parser.add_argument("--name", default="", help="Only list devices whose name or address contains this")
    parser.add_argument("--min-rssi", type=int, default=-100, help="Only list devices at least this strong (dBm)")
    parser.add_argument("--named-only", action="store_true", help="Hide devices without an advertised name")
    parser.add_argument(
        "--supervised",
        action="store_true",
        help="Keep the target after reconnect attempts are exhausted and try again later",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help=f"Reconnect attempts before giving up (default {BLEConfig.RECONNECT_MAX_ATTEMPTS}, "
        f"{BLEConfig.SUPERVISED_RECONNECT_MAX_ATTEMPTS} when supervised)",
    )
    parser.add_argument(
        "--base-delay",
        type=float,
        default=BLEConfig.RECONNECT_BASE_DELAY,
        help="Seconds before the first reconnect; attempt n waits n times this",
    )
    parser.add_argument("--vendor-service", metavar="UUID", help="Vendor service to read when there is no battery service")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def build_policy(args: argparse.Namespace) -> ReconnectPolicy:
    max_attempts = args.max_attempts
    if max_attempts is None:
        max_attempts = (
            BLEConfig.SUPERVISED_RECONNECT_MAX_ATTEMPTS
            if args.supervised
            else BLEConfig.RECONNECT_MAX_ATTEMPTS
        )
    return ReconnectPolicy(
        base_delay=args.base_delay,
        max_attempts=max_attempts,
        supervised=args.supervised,
    )


def format_devices(devices: List[Device]) -> str:
    rows = [
        [device.display_name, device.address, device.rssi]
        for device in devices
    ]
    return tabulate(rows, headers=["Name", "Address", "RSSI (dBm)"])


def format_update(update) -> str:
    if isinstance(update, BatteryLevel):
        return f"battery {update.percent}%"
    if isinstance(update, HeartRate):
        return f"heart rate {update.bpm} bpm"
    if isinstance(update, CustomData):
        return f"{update.uuid}: {update.raw.hex()}"
    return repr(update)


def run_scan(manager: BLEConnectionManager, seconds: float, config: FilterConfig) -> List[Device]:
    """Scan for `seconds` and return the filtered devices."""
    finished = threading.Event()

    def _on_state(value, source):
        if source is manager and value.state != ConnectionState.SCANNING:
            finished.set()

    pub.subscribe(_on_state, TOPIC_CONNECTION_STATE)
    manager.scan_timeout = seconds
    manager.apply_filter(config)
    manager.start_scan()
    if not finished.wait(timeout=seconds + 1.0):
        manager.stop_scan()
    time.sleep(0.2)
    pub.unsubscribe(_on_state, TOPIC_CONNECTION_STATE)
    status = manager.status
    if status.state == ConnectionState.ERROR:
        logger.error("Scan failed: %s", status.message)
    return manager.devices.value


def retry_due(state: ConnectionState, seconds_since_retry: float) -> bool:
    """Whether the monitor should call connect() again for a target the manager still holds."""
    if state == ConnectionState.DISCONNECTED:
        return True
    # Bleak never announces the radio coming back, so keep asking now and then
    return (
        state == ConnectionState.ADAPTER_DISABLED
        and seconds_since_retry >= BLEConfig.ADAPTER_RECHECK_INTERVAL
    )


def run_monitor(manager: BLEConnectionManager, address: str) -> None:
    """Connect to `address` and log state changes and values until interrupted or given up."""
    stopped = threading.Event()

    def _on_state(value, source):
        if source is not manager:
            return
        logger.info("Connection state: %s", value)
        if value.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR) and (
            manager.target is None or value.state == ConnectionState.ERROR
        ):
            stopped.set()

    def _on_update(value, source):
        if source is manager:
            logger.info("Update: %s", format_update(value))

    pub.subscribe(_on_state, TOPIC_CONNECTION_STATE)
    pub.subscribe(_on_update, TOPIC_CHARACTERISTIC_UPDATE)
    manager.connect(address)
    last_retry = time.monotonic()
    try:
        while not stopped.wait(timeout=1.0):
            # Supervised policies and a disabled radio leave the target in place for us to retry
            target = manager.target
            if target is None:
                continue
            state = manager.state
            if retry_due(state, time.monotonic() - last_retry):
                logger.info("Retrying %s (%s)", target.address, state.value)
                last_retry = time.monotonic()
                manager.connect(target)
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        pub.unsubscribe(_on_state, TOPIC_CONNECTION_STATE)
        pub.unsubscribe(_on_update, TOPIC_CHARACTERISTIC_UPDATE)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        policy = build_policy(args)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    with BLEConnectionManager(
        BleakAdapter(),
        reconnect_policy=policy,
        vendor_service_uuid=args.vendor_service,
    ) as manager:
        if args.scan is not None:
            config = FilterConfig(
                name_query=args.name, min_rssi=args.min_rssi, named_only=args.named_only
            )
            devices = run_scan(manager, args.scan, config)
            print(format_devices(devices))
        else:
            run_monitor(manager, args.connect)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
