"""Per-device-class client: the entry point for telemetry updates.

One :class:`DeviceClassClient` exists per enabled device class.  Its
single entry point :meth:`~DeviceClassClient.apply_update` runs the
pipeline::

    path, value
      → descriptor rule + normaliser      (drop on mismatch / bad value)
      → connection controller             (drop while throttled)
      → registry.ensure_instance          (first update creates the device)
      → BusService.export                 (write + PropertiesChanged)
      → derived values, energy accumulator (battery only)
      → dataUpdated listeners

Remote writes travel the other way: ``BusService.set_value`` →
value-changed listeners with the telemetry path and value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING

from venusbridge._connection import ConnectionController, ConnectionState
from venusbridge._errors import InvalidValueError, NotConnectedError
from venusbridge._registrar import SettingsRegistrar
from venusbridge._registry import DeviceInstance, DeviceRegistry
from venusbridge._service import BusService, settings_key_for

if TYPE_CHECKING:
    from venusbridge._bus import BusFactory
    from venusbridge._clock import ClockPort
    from venusbridge._devices import DeviceClass, UpdateRule
    from venusbridge._energy import EnergyAccumulator
    from venusbridge._normalize import Value
    from venusbridge._settings import Settings

logger = logging.getLogger(__name__)

type ValueChangedListener = Callable[[str, object], None]
"""Receives (telemetry path, value) after a remote write."""

type DataUpdatedListener = Callable[[str, str], None]
"""Receives (category, formatted text) after every applied update."""

_VOLTAGE = "/Dc/0/Voltage"
_CURRENT = "/Dc/0/Current"


class DeviceClassClient:
    """Bridges telemetry of one device class onto the bus.

    Args:
        device_class: Descriptor of the emulated device kind.
        settings: Bridge settings.
        bus_factory: Opens bus connections.
        clock: Time source for throttling and energy integration.
        accumulator: Energy accumulator, used when the class tracks energy.
        process_name: Published as ``/Mgmt/ProcessName``.
        process_version: Published as ``/Mgmt/ProcessVersion``.
    """

    def __init__(
        self,
        device_class: DeviceClass,
        *,
        settings: Settings,
        bus_factory: BusFactory,
        clock: ClockPort,
        accumulator: EnergyAccumulator | None = None,
        process_name: str = "venusbridge",
        process_version: str = "0.0.0",
    ) -> None:
        self._device_class = device_class
        self._settings = settings
        self._accumulator = accumulator if device_class.tracks_energy else None
        self._process_name = process_name
        self._process_version = process_version
        self._connection = ConnectionController(
            device_class.key,
            settings=settings.bus,
            bus_factory=bus_factory,
            clock=clock,
        )
        self._registry: DeviceRegistry[BusService] = DeviceRegistry(self._create_service)
        self._specs = {spec.path: spec for spec in device_class.properties}
        self._sourced: dict[str, set[str]] = {}
        self._value_listeners: list[ValueChangedListener] = []
        self._data_listeners: list[DataUpdatedListener] = []

    # -- introspection -------------------------------------------------------

    @property
    def device_class(self) -> DeviceClass:
        return self._device_class

    @property
    def registry(self) -> DeviceRegistry[BusService]:
        return self._registry

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    def service(self, base_path: str) -> BusService:
        return self._registry.service_for(base_path)

    # -- listeners -----------------------------------------------------------

    def on_value_changed(self, listener: ValueChangedListener) -> None:
        """Register a listener for remote writes."""
        self._value_listeners.append(listener)

    def on_data_updated(self, listener: DataUpdatedListener) -> None:
        """Register a listener for status-display notifications."""
        self._data_listeners.append(listener)

    # -- updates -------------------------------------------------------------

    async def apply_update(
        self,
        path: str,
        value: object,
        *,
        unit: str | None = None,
    ) -> bool:
        """Apply one telemetry update; return whether it reached the bus.

        Bad values are dropped and logged at DEBUG, never raised.

        Raises:
            BusConnectionError: When this update triggered a connection
                attempt and it failed.
            NotConnectedError: When throttled and configured to report it.
            ProtocolError: When the device's bus service could not be
                registered.
        """
        match = self._device_class.match(path)
        if match is None:
            logger.debug("No %s rule for %s", self._device_class.key, path)
            return False

        rule = match.rule
        normalized = rule.normalize(value, unit)
        if normalized is None:
            logger.debug("Ignoring %r for %s", value, path, extra={"bus_path": rule.target})
            return False
        spec = self._specs.get(rule.target)
        if spec is not None and not isinstance(normalized, str):
            if (spec.min is not None and normalized < spec.min) or (
                spec.max is not None and normalized > spec.max
            ):
                logger.debug("Ignoring out-of-range %r for %s", normalized, path)
                return False

        instance = self._registry.get(match.base_path)
        if instance is None:
            if not await self._connection.ensure_connected():
                logger.debug("Dropping %s while %s is not connected", path, self._device_class.key)
                return False
            try:
                instance = await self._registry.ensure_instance(
                    match.base_path,
                    self._device_class.name_for(match.base_path, match.suffix),
                )
            except NotConnectedError:
                # another update for this class failed to connect meanwhile
                if self._settings.bus.propagate_not_connected:
                    raise
                logger.debug("Dropping %s while %s is not connected", path, self._device_class.key)
                return False

        service = self._registry.service_for(match.base_path)
        try:
            self._write(service, instance, rule, normalized)
        except InvalidValueError as exc:
            logger.debug("Dropping update for %s: %s", path, exc)
            return False
        return True

    def _write(
        self,
        service: BusService,
        instance: DeviceInstance,
        rule: UpdateRule,
        value: Value,
    ) -> None:
        base_path = instance.base_path
        sourced = self._sourced.setdefault(base_path, set())
        sourced.add(rule.target)
        service.export(rule.target, value)

        if self._device_class.derive is not None:
            derived = self._device_class.derive(rule.target, service.values(), self._settings)
            for path, derived_value in derived.items():
                if path not in sourced:
                    service.export(path, derived_value)

        if self._accumulator is not None and rule.target in (_VOLTAGE, _CURRENT):
            voltage = value if rule.target == _VOLTAGE else None
            current = value if rule.target == _CURRENT else None
            self._accumulator.accumulate(base_path, voltage, current)

        self._emit_data_updated(rule.category, f"{instance.name}: {rule.format(value)}")

    # -- service creation ----------------------------------------------------

    async def _create_service(self, instance: DeviceInstance) -> BusService:
        bus = await self._connection.open_device_bus()
        try:
            registrar = SettingsRegistrar(
                self._connection.bus,
                timeout=self._settings.bus.call_timeout,
            )
            instance.assigned_instance_id = await registrar.try_register(
                self._device_class.service_type,
                instance.index,
                instance.name,
                settings_key=settings_key_for(instance.index, self._settings.bus.service_prefix),
            )
            initial = (
                self._device_class.initial_values(instance.base_path, self._settings)
                if self._device_class.initial_values is not None
                else {}
            )
            service = BusService.for_device(
                bus,
                self._device_class,
                instance,
                service_prefix=self._settings.bus.service_prefix,
                process_name=self._process_name,
                process_version=self._process_version,
                connection=f"SignalK via {self._settings.bus.display_target}",
                initial_values=initial,
                name_timeout=self._settings.bus.call_timeout,
            )
            service.on_value_changed(partial(self._forward_remote_write, instance))
            await service.start()
        except BaseException:
            await self._connection.release(bus)
            raise
        return service

    # -- notifications -------------------------------------------------------

    def _forward_remote_write(
        self,
        instance: DeviceInstance,
        bus_path: str,
        value: Value | None,
    ) -> None:
        rule = self._device_class.rule_for_target(bus_path)
        if rule is None or value is None:
            logger.info(
                "Remote write to %s on %s has no telemetry counterpart",
                bus_path,
                instance.name,
                extra={"device": instance.base_path, "bus_path": bus_path},
            )
            return
        telemetry_path = f"{instance.base_path}.{rule.telemetry_key}"
        outgoing = rule.denormalize(value) if rule.denormalize is not None else value
        for listener in self._value_listeners:
            try:
                listener(telemetry_path, outgoing)
            except Exception:
                logger.exception("Value-changed listener failed for %s", telemetry_path)

    def _emit_data_updated(self, category: str, text: str) -> None:
        for listener in self._data_listeners:
            try:
                listener(category, text)
            except Exception:
                logger.exception("Data-updated listener failed for %s", category)

    # -- teardown ------------------------------------------------------------

    async def disconnect(self) -> None:
        """Dispose every device service and close all connections."""
        await self._registry.dispose()
        await self._connection.teardown()
        self._sourced.clear()
        logger.info("Disconnected %s", self._device_class.key)
