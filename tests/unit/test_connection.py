"""Unit tests for venusbridge._connection — connection lifecycle and throttling.

Test Techniques Used:
    - State Transition Testing: DISCONNECTED → CONNECTING → CONNECTED / FAILED
    - Boundary Value Analysis: attempts at the edge of the cool-down window
    - Error Guessing: factory failures of different exception types
    - Concurrency Testing: simultaneous callers share one attempt
"""

from __future__ import annotations

import asyncio

import pytest

from venusbridge._bus import MockBusFactory
from venusbridge._connection import ConnectionController, ConnectionState
from venusbridge._errors import BusConnectionError, NotConnectedError
from venusbridge._settings import BusSettings
from venusbridge.testing import FakeClock


def _controller(
    bus_factory: object,
    clock: FakeClock,
    **bus_overrides: object,
) -> ConnectionController:
    return ConnectionController(
        "battery",
        settings=BusSettings(host="venus.local", **bus_overrides),
        bus_factory=bus_factory,  # type: ignore[arg-type]
        clock=clock,
    )


class TestConnect:
    """Successful connection.

    Technique: State Transition Testing.
    """

    async def test_initial_state(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        controller = _controller(bus_factory, fake_clock)
        assert controller.state is ConnectionState.DISCONNECTED
        with pytest.raises(NotConnectedError):
            _ = controller.bus

    async def test_connects_once(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        controller = _controller(bus_factory, fake_clock)

        assert await controller.ensure_connected()
        assert await controller.ensure_connected()

        assert controller.state is ConnectionState.CONNECTED
        assert bus_factory.connect_count == 1
        assert controller.bus is bus_factory.buses[0]

    async def test_concurrent_callers_share_attempt(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        controller = _controller(bus_factory, fake_clock)
        results = await asyncio.gather(*(controller.ensure_connected() for _ in range(5)))
        assert results == [True] * 5
        assert bus_factory.attempts == 1


class TestFailureAndCooldown:
    """Throttled reconnects.

    Technique: Boundary Value Analysis on the 30 s cool-down.
    """

    async def test_failed_attempt_raises_and_sets_failed(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock)

        with pytest.raises(BusConnectionError, match="venus.local:78"):
            await controller.ensure_connected()

        assert controller.state is ConnectionState.FAILED

    async def test_inside_cooldown_returns_false_without_attempt(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock)
        with pytest.raises(BusConnectionError):
            await controller.ensure_connected()

        fake_clock.advance(29.9)
        assert not await controller.ensure_connected()
        assert bus_factory.attempts == 1

    async def test_retry_after_cooldown(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock)
        with pytest.raises(BusConnectionError):
            await controller.ensure_connected()

        fake_clock.advance(30.0)
        assert await controller.ensure_connected()
        assert controller.state is ConnectionState.CONNECTED
        assert bus_factory.attempts == 2

    async def test_custom_cooldown(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock, reconnect_cooldown=5.0)
        with pytest.raises(BusConnectionError):
            await controller.ensure_connected()

        fake_clock.advance(5.0)
        assert await controller.ensure_connected()

    async def test_propagate_not_connected(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock, propagate_not_connected=True)
        with pytest.raises(BusConnectionError):
            await controller.ensure_connected()

        with pytest.raises(NotConnectedError, match="cool-down"):
            await controller.ensure_connected()

    async def test_os_error_reworded(self, fake_clock: FakeClock) -> None:
        async def refuse(settings: BusSettings) -> object:  # noqa: ARG001
            msg = "[Errno 111] Connection refused"
            raise ConnectionRefusedError(msg)

        controller = _controller(refuse, fake_clock)
        with pytest.raises(BusConnectionError, match="D-Bus over TCP") as info:
            await controller.ensure_connected()
        assert isinstance(info.value.__cause__, ConnectionRefusedError)

    async def test_timeout_reworded(self, fake_clock: FakeClock) -> None:
        async def slow(settings: BusSettings) -> object:  # noqa: ARG001
            raise TimeoutError

        controller = _controller(slow, fake_clock)
        with pytest.raises(BusConnectionError, match="timed out"):
            await controller.ensure_connected()

    async def test_unexpected_error_sets_failed(self, fake_clock: FakeClock) -> None:
        async def broken(settings: BusSettings) -> object:  # noqa: ARG001
            msg = "dbus-next is not installed"
            raise RuntimeError(msg)

        controller = _controller(broken, fake_clock)
        with pytest.raises(RuntimeError):
            await controller.ensure_connected()
        assert controller.state is ConnectionState.FAILED


class TestDeviceBuses:
    """Per-device connections.

    Technique: State-based Testing.
    """

    async def test_open_device_bus(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        controller = _controller(bus_factory, fake_clock)
        await controller.ensure_connected()

        device_bus = await controller.open_device_bus()

        assert device_bus is bus_factory.buses[1]
        assert device_bus is not controller.bus

    async def test_device_bus_failure_fails_controller(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        controller = _controller(bus_factory, fake_clock)
        await controller.ensure_connected()
        class_bus = bus_factory.buses[0]
        bus_factory.fail_next()

        with pytest.raises(BusConnectionError):
            await controller.open_device_bus()

        assert controller.state is ConnectionState.FAILED
        assert class_bus.closed
        assert not await controller.ensure_connected()

    async def test_device_bus_refused_during_cooldown(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        controller = _controller(bus_factory, fake_clock)
        await controller.ensure_connected()
        bus_factory.fail_next()
        with pytest.raises(BusConnectionError):
            await controller.open_device_bus()

        fake_clock.advance(29)
        with pytest.raises(NotConnectedError):
            await controller.open_device_bus()
        assert bus_factory.attempts == 2

        fake_clock.advance(1)
        device_bus = await controller.open_device_bus()
        assert device_bus is bus_factory.buses[-1]
        assert bus_factory.attempts == 3

    async def test_release_closes(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        controller = _controller(bus_factory, fake_clock)
        await controller.ensure_connected()
        device_bus = await controller.open_device_bus()

        await controller.release(device_bus)

        assert device_bus.closed


class TestTeardown:
    """Closing everything.

    Technique: State Transition Testing.
    """

    async def test_teardown_closes_all(self, bus_factory: MockBusFactory, fake_clock: FakeClock) -> None:
        controller = _controller(bus_factory, fake_clock)
        await controller.ensure_connected()
        await controller.open_device_bus()
        await controller.open_device_bus()

        await controller.teardown()

        assert all(bus.closed for bus in bus_factory.buses)
        assert controller.state is ConnectionState.DISCONNECTED

    async def test_teardown_resets_cooldown(
        self,
        bus_factory: MockBusFactory,
        fake_clock: FakeClock,
    ) -> None:
        bus_factory.fail_next()
        controller = _controller(bus_factory, fake_clock)
        with pytest.raises(BusConnectionError):
            await controller.ensure_connected()

        await controller.teardown()

        assert await controller.ensure_connected()
