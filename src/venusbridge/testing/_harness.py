"""Test harness wrapping Bridge with pre-configured test doubles.

Provides :class:`BridgeHarness`, a one-liner setup for integration-style
tests that replaces creating Bridge, MockBusFactory, FakeClock,
Settings, an update source and an ``asyncio.Event`` individually.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, Self

from venusbridge._app import Bridge
from venusbridge._bus import MockBusFactory
from venusbridge._client import DeviceClassClient
from venusbridge._errors import ErrorEvent
from venusbridge._settings import Settings
from venusbridge._source import QueueSource
from venusbridge.testing._clock import FakeClock
from venusbridge.testing._settings import make_settings


@dataclass
class BridgeHarness:
    """Bridge plus recording doubles for end-to-end tests.

    Usage::

        harness = BridgeHarness.create(devices=["battery"])
        await harness.start()
        await harness.feed("electrical.batteries.house.voltage", 12.8)
        ...
        await harness.stop()

    Remote writes, status notifications and error events are collected
    in ``value_changes``, ``data_updates`` and ``errors``.
    """

    bridge: Bridge
    bus_factory: MockBusFactory
    clock: FakeClock
    settings: Settings
    source: QueueSource
    shutdown_event: asyncio.Event
    value_changes: list[tuple[str, object]] = field(default_factory=list)
    data_updates: list[tuple[str, str]] = field(default_factory=list)
    errors: list[ErrorEvent] = field(default_factory=list)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(
        cls,
        *,
        name: str = "testbridge",
        version: str = "1.0.0",
        start_time: float = 1000.0,
        **settings_overrides: Any,
    ) -> Self:
        """Create a harness with fresh test doubles.

        Args:
            name: Bridge process name.
            version: Bridge process version.
            start_time: Initial FakeClock time in seconds.
            **settings_overrides: Forwarded to :func:`make_settings`.
        """
        harness = cls(
            bridge=Bridge(name=name, version=version),
            bus_factory=MockBusFactory(),
            clock=FakeClock(start_time),
            settings=make_settings(**settings_overrides),
            source=QueueSource(),
            shutdown_event=asyncio.Event(),
        )
        harness.bridge.on_value_changed(
            lambda path, value: harness.value_changes.append((path, value)),
        )
        harness.bridge.on_data_updated(
            lambda category, text: harness.data_updates.append((category, text)),
        )
        harness.bridge.on_error(harness.errors.append)
        return harness

    async def run(self) -> None:
        """Run ``_run_async`` with the harness's test doubles until shutdown."""
        await self.bridge._run_async(
            settings=self.settings,
            bus_factory=self.bus_factory,
            source=self.source,
            shutdown_event=self.shutdown_event,
            clock=self.clock,
        )

    async def start(self) -> None:
        """Run the bridge in a background task."""
        self._task = asyncio.create_task(self.run())
        await asyncio.sleep(0)

    async def feed(self, path: str, value: object, unit: str | None = None) -> None:
        """Queue one update and wait until the bridge has applied it.

        Only the lane of *path*'s device is awaited, so a feed for one
        device returns even while another device is still registering.
        """
        self.source.put(path, value, unit)
        await asyncio.wait_for(self._applied(path), timeout=5.0)

    async def _applied(self, path: str) -> None:
        await self.source.join()
        await self.bridge.settle(path)

    async def stop(self) -> None:
        """Signal shutdown and wait for teardown to finish."""
        self.trigger_shutdown()
        if self._task is not None:
            task, self._task = self._task, None
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait_for(task, timeout=5.0)

    def trigger_shutdown(self) -> None:
        """Signal the shutdown event."""
        self.shutdown_event.set()

    def client(self, key: str) -> DeviceClassClient:
        """The running :class:`DeviceClassClient` for device class *key*."""
        return self.bridge.clients[key]
