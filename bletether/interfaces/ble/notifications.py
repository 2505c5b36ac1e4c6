"""BLE notification subscription tracking."""

from threading import RLock
from typing import Dict, Optional, Tuple

from bletether.interfaces.ble.constants import logger
from bletether.interfaces.ble.models import GattCharacteristic, SubscriptionMode


class NotificationManager:
    """
    Track the notify/indicate subscriptions made on the current link.

    The GATT orchestrator records each subscription here so that one
    characteristic is never subscribed twice per connection; everything is
    forgotten on disconnect because the peripheral drops its CCCD state with
    the link.
    """

    def __init__(self):
        self._active_subscriptions: Dict[int, Tuple[str, SubscriptionMode]] = {}
        self._characteristic_to_mode: Dict[str, SubscriptionMode] = {}
        self._subscription_counter = 0
        self._lock = RLock()

    def subscribe(
        self, characteristic: GattCharacteristic, mode: SubscriptionMode
    ) -> int:
        """
        Record a subscription on `characteristic`.

        Returns:
            int: Token of the new subscription record.
        """
        with self._lock:
            token = self._subscription_counter
            self._subscription_counter += 1
            self._active_subscriptions[token] = (characteristic.uuid, mode)
            self._characteristic_to_mode[characteristic.uuid] = mode
            return token

    def is_subscribed(self, uuid: str) -> bool:
        with self._lock:
            return uuid in self._characteristic_to_mode

    def get_mode(self, uuid: str) -> Optional[SubscriptionMode]:
        """
        Retrieve the delivery mode registered for a characteristic, `None` if it is not subscribed.
        """
        with self._lock:
            return self._characteristic_to_mode.get(uuid)

    def cleanup_all(self) -> None:
        """
        Clear all tracked subscriptions so the manager no longer remembers them.
        """
        with self._lock:
            if self._active_subscriptions:
                logger.debug(
                    "Forgetting %d notification subscriptions",
                    len(self._active_subscriptions),
                )
            self._active_subscriptions.clear()
            self._characteristic_to_mode.clear()

    def __len__(self) -> int:
        """
        Return the number of tracked subscriptions.
        """
        with self._lock:
            return len(self._active_subscriptions)
