"""
# A library for keeping a resilient connection to a single BLE peripheral

Primary interfaces: BLEConnectionManager (the connection lifecycle state
machine) driving a BLEAdapter such as BleakAdapter.

Observers read the current value of each observable on the manager, or
subscribe with pypubsub to the published topics:

- bletether.connection.state - the ConnectionStatus changed
- bletether.devices - the filtered scan result list changed
- bletether.device.info - the connected device snapshot changed
- bletether.adapter.enabled - the radio was switched on or off
- bletether.characteristic.update - a decoded CharacteristicUpdate arrived
- bletether.keepalive - the process should (or no longer needs to) stay alive

Each message carries `value` and `source` (the publishing manager).
"""

from bletether.util import DeferredExecution

__version__ = "0.1.0"

# Pubsub messages are delivered from this thread so producers never block
publishingThread = DeferredExecution("publishing")
