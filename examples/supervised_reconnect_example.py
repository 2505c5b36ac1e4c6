"""
Example of a long-running supervisor keeping one BLE peripheral connected.

The connection manager runs with a supervised reconnect policy: when its
reconnect attempts are exhausted it keeps the target and settles in
DISCONNECTED, and this script, playing the part of the supervisor, calls
connect() again after a pause. The same retry makes the manager check
whether a disabled radio has come back. Battery and heart-rate values are
logged as they arrive.
"""
import argparse
import logging
import threading
import time

from pubsub import pub

import bletether.ble_interface
from bletether.interfaces.ble.constants import (
    TOPIC_CHARACTERISTIC_UPDATE,
    TOPIC_CONNECTION_STATE,
    TOPIC_KEEPALIVE,
)

# Pause before the supervisor retries a target the manager gave up on
RETRY_DELAY_SECONDS = 30

logger = logging.getLogger(__name__)

# Set whenever the manager goes idle (or waits for the radio) while still holding its target
idle_event = threading.Event()


def on_state(value, source):
    """Log each connection state and wake the main loop when the manager goes idle."""
    logger.info("Connection state: %s", value)
    idle_states = (
        bletether.ble_interface.ConnectionState.DISCONNECTED,
        bletether.ble_interface.ConnectionState.ADAPTER_DISABLED,
    )
    if value.state in idle_states and source.target:
        idle_event.set()


def on_update(value, source):
    logger.info("Update from %s: %r", source.target.address if source.target else "?", value)


def on_keepalive(value, source):
    # A real service would acquire or release a wake lock here
    logger.info("Keep process alive: %s", value)


def main():
    """
    Connect to the address given on the command line and keep reconnecting until interrupted.
    """
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(
        description="bletether supervised reconnection example."
    )
    parser.add_argument("address", help="The BLE address of the peripheral.")
    args = parser.parse_args()

    pub.subscribe(on_state, TOPIC_CONNECTION_STATE)
    pub.subscribe(on_update, TOPIC_CHARACTERISTIC_UPDATE)
    pub.subscribe(on_keepalive, TOPIC_KEEPALIVE)

    manager = bletether.ble_interface.BLEConnectionManager(
        bletether.ble_interface.BleakAdapter(),
        reconnect_policy=bletether.ble_interface.RetryPolicy.SUPERVISED,
    )
    try:
        manager.connect(args.address)
        while True:
            idle_event.wait()
            idle_event.clear()
            logger.info("Not connected; retrying in %d seconds...", RETRY_DELAY_SECONDS)
            time.sleep(RETRY_DELAY_SECONDS)
            target = manager.target
            if target is not None:
                manager.connect(target)
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        manager.close()


if __name__ == "__main__":
    main()
