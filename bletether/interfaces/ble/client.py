"""Synchronous facade over a Bleak client that owns its asyncio loop thread."""

import asyncio
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Thread, current_thread
from typing import Any, Awaitable, Optional

from bleak import BleakClient as BleakRootClient

from bletether.interfaces.ble.constants import (
    BLECLIENT_ERROR_ASYNC_TIMEOUT,
    ERROR_TIMEOUT,
    BLEConfig,
    logger,
)
from bletether.interfaces.ble.errors import BLEError, BLEErrorHandler, BLELinkError


class BLEClient:
    """
    Client wrapper running Bleak's coroutines on a dedicated event loop thread.

    Callers on ordinary threads either block on an operation (`async_await`)
    or schedule it and get a concurrent.futures.Future back (`async_run`).
    A client created without an address has no Bleak client and only serves
    as an event loop, e.g. for a BleakScanner.
    """

    @staticmethod
    async def _with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], label: str):
        """
        Await `awaitable`, giving up after `timeout` seconds (never when None).

        Raises:
            BLELinkError: On timeout; `label` names the operation in the message.
        """
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BLELinkError(ERROR_TIMEOUT.format(label, timeout)) from exc

    def __init__(self, address=None, *, log_if_no_address: bool = True, **kwargs) -> None:
        """
        Start the event loop thread and, when `address` is given, create the Bleak client for it.

        Parameters:
            address (Optional[str]): Device address; None creates a loop-only instance.
            log_if_no_address (bool): Emit a debug message for loop-only instances.
            **kwargs: Forwarded to the Bleak client constructor (e.g. `disconnected_callback`).
        """
        self.error_handler = BLEErrorHandler()
        self.address = address
        self.bleak_client: Optional[BleakRootClient] = None
        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(target=self._run_event_loop, name="BLEClient", daemon=True)
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

        if not address:
            if log_if_no_address:
                logger.debug("No address provided - client only runs an event loop.")
            return

        self.bleak_client = BleakRootClient(address, **kwargs)

    def _require_client(self, action: str) -> BleakRootClient:
        if self.bleak_client is None:
            raise BLEError(f"Cannot {action}: BLE client not initialized")
        return self.bleak_client

    def start_connect(self, *, timeout: Optional[float] = None, **kwargs) -> Future:
        """Schedule the connection attempt and return its future without waiting."""
        client = self._require_client("connect")
        return self.async_run(self._with_timeout(client.connect(**kwargs), timeout, "Connect"))

    def is_connected(self) -> bool:
        """Connection state as Bleak reports it; False for loop-only clients or unreadable state."""
        bleak_client = getattr(self, "bleak_client", None)
        if bleak_client is None:
            return False

        def _check_connection():
            connected = getattr(bleak_client, "is_connected", False)
            if callable(connected):
                connected = connected()
            return bool(connected)

        return self.error_handler.safe_execute(
            _check_connection,
            default_return=False,
            error_msg="Could not query link state",
        )

    def disconnect(self, *, await_timeout: Optional[float] = None, **kwargs) -> None:
        """
        Disconnect from the remote device and wait for completion.

        Parameters:
            await_timeout (float | None): Maximum seconds to wait; None waits indefinitely.
        """
        client = self._require_client("disconnect")
        self.async_await(client.disconnect(**kwargs), timeout=await_timeout)

    def start_read(self, specifier, *, timeout: Optional[float] = None) -> Future:
        """Schedule a characteristic read; the future resolves to the raw value."""
        client = self._require_client("read")
        return self.async_run(self._with_timeout(client.read_gatt_char(specifier), timeout, "Read"))

    def start_notify(self, specifier, callback, *, timeout: Optional[float] = None) -> Future:
        """Schedule enabling notify/indicate delivery of `specifier` to `callback(sender, data)`."""
        client = self._require_client("start notify")
        return self.async_run(
            self._with_timeout(client.start_notify(specifier, callback), timeout, "Subscribe")
        )

    def get_services(self):
        """
        Return the service collection Bleak discovered while connecting.

        Raises:
            BLELinkError: If discovery produced nothing.
        """
        client = self._require_client("get services")
        services = getattr(client, "services", None)
        if not services:
            raise BLELinkError("No services discovered")
        return services

    def close(self):
        """
        Stop the event loop and wait for its thread to exit.

        When called from the loop thread itself (e.g. from a Bleak callback)
        the loop is stopped but not joined.
        """
        if self._eventLoop.is_closed():
            return
        self.error_handler.safe_execute(
            lambda: self.async_run(self._stop_event_loop()),
            error_msg="Unable to stop BLE event loop",
        )
        if current_thread() is self._eventThread:
            return
        self._eventThread.join(timeout=BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "BLEClient loop thread still alive %.1fs after close",
                BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT,
            )

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def async_await(self, coro, timeout=None):
        """
        Block until `coro` has run on the loop thread and return its result.

        A coroutine still running after `timeout` seconds is cancelled and
        BLEError is raised; Bleak's own exceptions reach the caller unchanged
        so they can be classified.
        """
        future = self.async_run(coro)
        try:
            return future.result(timeout)
        except (FutureTimeoutError, RuntimeError) as e:
            BLEErrorHandler.safe_cleanup(future.cancel, "BLE future cancel")
            # Consume any late exception to avoid "Task exception was never retrieved"
            future.add_done_callback(lambda f: f.exception() if not f.cancelled() else None)
            raise BLEError(BLECLIENT_ERROR_ASYNC_TIMEOUT) from e

    def async_run(self, coro) -> Future:
        """Schedule a coroutine on the client's event loop and return a concurrent Future."""
        return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    def _run_event_loop(self):
        self.error_handler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop"
        )
        self._eventLoop.close()

    async def _stop_event_loop(self):
        self._eventLoop.stop()
