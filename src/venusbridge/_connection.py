"""Connection lifecycle of one device class.

State machine::

    DISCONNECTED ──attempt──▶ CONNECTING ──ok──▶ CONNECTED
          ▲                       │                  │
          │                     fails            teardown
          │                       ▼                  │
          └──── teardown ───── FAILED ◀──────────────┘
                                  │
                     cool-down elapsed ──▶ CONNECTING

At most one attempt is made per ``reconnect_cooldown`` window.  While
throttled, :meth:`ConnectionController.ensure_connected` returns
``False`` (or raises :class:`NotConnectedError` when configured to),
and the caller drops the update.

The controller owns the class-level connection, which carries the
settings calls, and every per-device connection it opened, so teardown
releases all of them.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from venusbridge._errors import (
    BusConnectionError,
    NotConnectedError,
    describe_connection_failure,
)

if TYPE_CHECKING:
    from venusbridge._bus import BusFactory, BusPort
    from venusbridge._clock import ClockPort
    from venusbridge._settings import BusSettings

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionController:
    """Opens, throttles and tears down bus connections for one device class."""

    def __init__(
        self,
        device_class: str,
        *,
        settings: BusSettings,
        bus_factory: BusFactory,
        clock: ClockPort,
    ) -> None:
        self._device_class = device_class
        self._settings = settings
        self._bus_factory = bus_factory
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._last_attempt: float | None = None
        self._bus: BusPort | None = None
        self._device_buses: list[BusPort] = []
        self._connect_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def bus(self) -> BusPort:
        """The class-level connection.

        Raises:
            NotConnectedError: If the controller is not connected.
        """
        if self._bus is None:
            msg = f"{self._device_class}: bus is not connected"
            raise NotConnectedError(msg)
        return self._bus

    def _throttled(self) -> bool:
        if self._last_attempt is None:
            return False
        return self._clock.now() - self._last_attempt < self._settings.reconnect_cooldown

    async def ensure_connected(self) -> bool:
        """Connect if needed and allowed; report whether the bus is usable.

        Raises:
            BusConnectionError: When this call made an attempt and it failed.
            NotConnectedError: When throttled and ``propagate_not_connected``
                is set.
        """
        if self._state is ConnectionState.CONNECTED:
            return True
        async with self._connect_lock:
            # another caller may have connected while we waited
            if self._state is ConnectionState.CONNECTED:
                return True
            if self._throttled():
                if self._settings.propagate_not_connected:
                    msg = f"{self._device_class}: not connected, retry after cool-down"
                    raise NotConnectedError(msg)
                return False

            self._state = ConnectionState.CONNECTING
            self._last_attempt = self._clock.now()
            try:
                self._bus = await self._open()
            except BaseException:
                self._state = ConnectionState.FAILED
                raise
            self._state = ConnectionState.CONNECTED
        logger.info(
            "Connected %s to D-Bus at %s",
            self._device_class,
            self._settings.display_target,
            extra={"device_class": self._device_class},
        )
        return True

    async def open_device_bus(self) -> BusPort:
        """Open an extra connection for one device service.

        Venus OS maps one bus name to one connection, so each virtual
        device gets its own.  A failure here moves the controller to
        FAILED and starts the cool-down; callers arriving during that
        cool-down get :class:`NotConnectedError` without a new attempt.

        Raises:
            BusConnectionError: When this call made an attempt and it failed.
            NotConnectedError: When the controller is FAILED and throttled.
        """
        if self._state is ConnectionState.FAILED and self._throttled():
            msg = f"{self._device_class}: not connected, retry after cool-down"
            raise NotConnectedError(msg)
        self._last_attempt = self._clock.now()
        try:
            bus = await self._open()
        except BusConnectionError:
            await self._drop_class_bus()
            self._state = ConnectionState.FAILED
            raise
        self._device_buses.append(bus)
        return bus

    async def release(self, bus: BusPort) -> None:
        """Close a device connection that is no longer needed."""
        if bus in self._device_buses:
            self._device_buses.remove(bus)
        try:
            await bus.close()
        except Exception:
            logger.debug("Closing device bus failed", exc_info=True)

    async def teardown(self) -> None:
        """Close every connection and return to DISCONNECTED."""
        for bus in self._device_buses[:]:
            await self.release(bus)
        await self._drop_class_bus()
        self._state = ConnectionState.DISCONNECTED
        self._last_attempt = None

    async def _drop_class_bus(self) -> None:
        bus, self._bus = self._bus, None
        if bus is not None:
            try:
                await bus.close()
            except Exception:
                logger.debug("Closing class bus failed", exc_info=True)

    async def _open(self) -> BusPort:
        try:
            return await self._bus_factory(self._settings)
        except BusConnectionError as exc:
            logger.error(
                "%s: %s",
                self._device_class,
                exc,
                extra={"device_class": self._device_class},
            )
            raise
        except (OSError, TimeoutError) as exc:
            msg = describe_connection_failure(self._settings.display_target, exc)
            logger.error(
                "%s: %s",
                self._device_class,
                msg,
                extra={"device_class": self._device_class},
            )
            raise BusConnectionError(msg) from exc
