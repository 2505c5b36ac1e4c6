"""
Shared pytest fixtures for the BLE connection manager tests.
"""

from typing import List

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from bletether.interfaces.ble.interface import BLEConnectionManager
from bletether.interfaces.ble.policies import ReconnectPolicy
from test_ble_fixtures import BleakFakes, FakeAdapter, InlineExecution, ManualTimers


@pytest.fixture
def inline_executor():
    return InlineExecution()


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def bleak_fakes():
    return BleakFakes()


@pytest.fixture
def make_manager(fake_adapter, timers, inline_executor):
    """
    Factory building a BLEConnectionManager wired to the fake adapter, manual timers and inline execution.

    Keyword arguments override the manager's constructor arguments.
    """
    managers: List[BLEConnectionManager] = []

    def _make(**kwargs) -> BLEConnectionManager:
        kwargs.setdefault(
            "reconnect_policy", ReconnectPolicy(base_delay=2.0, max_attempts=5)
        )
        manager = BLEConnectionManager(
            fake_adapter,
            timer_factory=timers,
            executor=inline_executor,
            publisher=inline_executor,
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()
