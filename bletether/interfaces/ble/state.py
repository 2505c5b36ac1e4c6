"""Connection states of the lifecycle machine and the lock-guarded holder that validates moves between them."""

from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Dict, FrozenSet, Optional

from bletether.interfaces.ble.constants import logger


class ConnectionState(Enum):
    """Where the manager is in the scan / connect / reconnect lifecycle."""

    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ADAPTER_DISABLED = "adapter_disabled"
    ERROR = "error"


# States in which no further automatic progress happens without a new command
TERMINAL_STATES = frozenset(
    {
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
        ConnectionState.ADAPTER_DISABLED,
    }
)

_S = ConnectionState
_ALLOWED: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    _S.DISCONNECTED: frozenset({_S.SCANNING, _S.CONNECTING, _S.ADAPTER_DISABLED, _S.ERROR}),
    _S.SCANNING: frozenset({_S.DISCONNECTED, _S.CONNECTING, _S.ADAPTER_DISABLED, _S.ERROR}),
    _S.CONNECTING: frozenset(
        {_S.CONNECTED, _S.RECONNECTING, _S.DISCONNECTED, _S.ADAPTER_DISABLED, _S.ERROR}
    ),
    _S.CONNECTED: frozenset({_S.RECONNECTING, _S.DISCONNECTED, _S.ADAPTER_DISABLED, _S.ERROR}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.DISCONNECTED, _S.ADAPTER_DISABLED, _S.ERROR}),
    _S.ADAPTER_DISABLED: frozenset({_S.DISCONNECTED, _S.CONNECTING, _S.ERROR}),
    # ERROR -> ERROR replaces the reason with a newer failure
    _S.ERROR: frozenset(
        {_S.DISCONNECTED, _S.SCANNING, _S.CONNECTING, _S.ADAPTER_DISABLED, _S.ERROR}
    ),
}


@dataclass(frozen=True)
class ConnectionStatus:
    """Published snapshot of the connection state; `message` is only set for ERROR."""

    state: ConnectionState
    message: Optional[str] = None

    def __str__(self) -> str:
        if self.message:
            return f"{self.state.value}({self.message})"
        return self.state.value


class BLEStateManager:
    """
    Hold the current ConnectionState and the reason of the last ERROR.

    Every change goes through `transition_to`, which refuses moves the
    lifecycle does not allow (for example DISCONNECTED straight to
    CONNECTED) and leaves the state untouched when it does.
    """

    def __init__(self):
        self._state_lock = RLock()
        self._state = ConnectionState.DISCONNECTED
        self._error_message: Optional[str] = None

    @property
    def lock(self) -> RLock:
        """Reentrant lock the connection manager shares for its own bookkeeping."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def error_message(self) -> Optional[str]:
        """Reason attached to the ERROR state, `None` in every other state."""
        with self._state_lock:
            return self._error_message

    @property
    def status(self) -> ConnectionStatus:
        """Current state and error message as one consistent snapshot."""
        with self._state_lock:
            return ConnectionStatus(self._state, self._error_message)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_link_active(self) -> bool:
        """True while a link is being set up or is up."""
        return self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    @property
    def can_scan(self) -> bool:
        return self.state in (
            ConnectionState.DISCONNECTED,
            ConnectionState.SCANNING,
            ConnectionState.ERROR,
        )

    def transition_to(
        self, new_state: ConnectionState, error_message: Optional[str] = None
    ) -> bool:
        """
        Move to `new_state` if the lifecycle allows it.

        Parameters:
            new_state: State to enter.
            error_message: Failure reason; kept only when entering ERROR.

        Returns:
            bool: False (and nothing changes) when the move is not allowed.
        """
        with self._state_lock:
            old_state = self._state
            if new_state not in _ALLOWED.get(old_state, frozenset()):
                logger.warning(
                    "Rejected state change %s -> %s", old_state.value, new_state.value
                )
                return False
            self._state = new_state
            self._error_message = (
                error_message if new_state == ConnectionState.ERROR else None
            )
        logger.debug("State %s -> %s", old_state.value, new_state.value)
        return True
