"""Property export engine: one bus service per virtual device.

Every bus-visible path of a device implements the
``com.victronenergy.BusItem`` contract:

- ``GetValue() -> v``: the stored value, or the invalid marker
- ``SetValue(v) -> i``: ``0`` on success, negative when rejected
- ``GetText() -> s``: a fixed label
- ``GetItems() -> a{sa{sv}}`` (root only): every path with its
  ``Value`` and ``Text``

Registration of an object path on the bus is a one-time side effect
tracked in ``_registered``; exporting the same path again only updates
the stored value.  Every successful mutation, local or remote, emits
``PropertiesChanged`` for the path and ``ItemsChanged`` on the root.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from venusbridge._bus import BusPort, BusVariant
from venusbridge._devices import DeviceClass, PropertySpec, PropertyType
from venusbridge._errors import InvalidValueError, ProtocolError
from venusbridge._normalize import Value

if TYPE_CHECKING:
    from venusbridge._registry import DeviceInstance

logger = logging.getLogger(__name__)

SET_OK = 0
SET_READ_ONLY = -1
SET_OUT_OF_RANGE = -2
SET_INVALID = -3

type ValueChangedCallback = Callable[[str, Value | None], None]
"""Callback receiving (bus path, new value) after a remote write."""

# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def service_name_for(device_class: DeviceClass, index: int, prefix: str) -> str:
    """Bus name of a device, e.g. ``com.victronenergy.battery.signalk_123``."""
    return f"com.victronenergy.{device_class.service_type}.{settings_key_for(index, prefix)}"


def settings_key_for(index: int, prefix: str) -> str:
    return f"{prefix}_{index}"


def management_specs(
    device_class: DeviceClass,
    instance: DeviceInstance,
    *,
    process_name: str,
    process_version: str,
    connection: str,
) -> list[tuple[PropertySpec, Value]]:
    """Identification properties every Venus OS service carries."""
    return [
        (PropertySpec("/Mgmt/ProcessName", PropertyType.STRING, "Process name"), process_name),
        (
            PropertySpec("/Mgmt/ProcessVersion", PropertyType.STRING, "Process version"),
            process_version,
        ),
        (PropertySpec("/Mgmt/Connection", PropertyType.STRING, "Connection"), connection),
        (
            PropertySpec("/DeviceInstance", PropertyType.INT32, "Device instance"),
            instance.device_instance,
        ),
        (PropertySpec("/ProductId", PropertyType.INT32, "Product ID"), 0),
        (
            PropertySpec("/ProductName", PropertyType.STRING, "Product name"),
            device_class.product_name,
        ),
        (PropertySpec("/FirmwareVersion", PropertyType.INT32, "Firmware version"), 0),
        (PropertySpec("/HardwareVersion", PropertyType.INT32, "Hardware version"), 0),
        (PropertySpec("/Connected", PropertyType.INT32, "Connected"), 1),
        (
            PropertySpec("/CustomName", PropertyType.STRING, "Custom name", writable=True),
            instance.name,
        ),
    ]


# ---------------------------------------------------------------------------
# Property value object
# ---------------------------------------------------------------------------


def _type_for(value: Value | None) -> PropertyType:
    if isinstance(value, str):
        return PropertyType.STRING
    if isinstance(value, int) and not isinstance(value, bool):
        return PropertyType.INT32
    return PropertyType.DOUBLE


@dataclass
class ServiceProperty:
    """One bus-visible property and its current value.

    ``remote_written`` marks a property whose current value was set by
    a bus client rather than by telemetry.
    """

    path: str
    type: PropertyType
    value: Value | None
    text: str
    writable: bool = False
    min: float | None = None
    max: float | None = None
    remote_written: bool = False

    @classmethod
    def from_spec(cls, spec: PropertySpec, value: Value | None = None) -> ServiceProperty:
        prop = cls(
            path=spec.path,
            type=spec.type,
            value=None,
            text=spec.text,
            writable=spec.writable,
            min=spec.min,
            max=spec.max,
        )
        initial = spec.default if value is None else value
        prop.value = None if initial is None else prop.coerce(initial)
        return prop

    def coerce(self, value: object) -> Value:
        """Convert *value* to this property's bus type.

        Raises:
            InvalidValueError: If *value* cannot represent this type.
        """
        match self.type:
            case PropertyType.STRING:
                if isinstance(value, str):
                    return value
            case PropertyType.BOOLEAN:
                if isinstance(value, bool):
                    return value
                if isinstance(value, int | float) and value in (0, 1):
                    return bool(value)
            case PropertyType.INT32 | PropertyType.UINT32:
                if isinstance(value, bool):
                    return int(value)
                if isinstance(value, int) or (
                    isinstance(value, float) and math.isfinite(value) and value.is_integer()
                ):
                    number = int(value)
                    if self.type is PropertyType.UINT32 and number < 0:
                        msg = f"{self.path}: negative value {number} for uint32"
                        raise InvalidValueError(msg)
                    return number
            case PropertyType.DOUBLE:
                if (
                    isinstance(value, int | float)
                    and not isinstance(value, bool)
                    and math.isfinite(value)
                ):
                    return float(value)
        msg = f"{self.path}: {value!r} is not a valid {self.type.name.lower()}"
        raise InvalidValueError(msg)

    def in_range(self, value: Value) -> bool:
        if isinstance(value, str):
            return True
        if self.min is not None and value < self.min:
            return False
        return not (self.max is not None and value > self.max)

    def variant(self) -> BusVariant:
        if self.value is None:
            return BusVariant.invalid()
        return BusVariant(self.type.value, self.value)

    def item(self) -> dict[str, BusVariant]:
        return {"Value": self.variant(), "Text": BusVariant("s", self.text)}


# ---------------------------------------------------------------------------
# Bus-facing handlers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _PropertyItem:
    service: BusService
    path: str

    def get_value(self) -> BusVariant:
        return self.service.get_value(self.path)

    def set_value(self, value: object) -> int:
        return self.service.set_value(self.path, value)

    def get_text(self) -> str:
        return self.service.get_text(self.path)


@dataclass(frozen=True, slots=True)
class _RootItem:
    service: BusService

    def get_value(self) -> BusVariant:
        return self.service.get_value("/")

    def set_value(self, value: object) -> int:
        return self.service.set_value("/", value)

    def get_text(self) -> str:
        return self.service.get_text("/")

    def get_items(self) -> dict[str, dict[str, BusVariant]]:
        return self.service.get_items()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class BusService:
    """Bus service of one :class:`DeviceInstance`.

    Construct, add properties with :meth:`export`, then :meth:`start`
    to register the paths and claim the bus name.  Paths exported after
    start are registered immediately.
    """

    bus: BusPort
    device_class: DeviceClass
    instance: DeviceInstance
    service_name: str
    name_timeout: float | None = None
    _properties: dict[str, ServiceProperty] = field(default_factory=dict, init=False, repr=False)
    _registered: set[str] = field(default_factory=set, init=False, repr=False)
    _listeners: list[ValueChangedCallback] = field(default_factory=list, init=False, repr=False)
    _started: bool = field(default=False, init=False, repr=False)

    @classmethod
    def for_device(
        cls,
        bus: BusPort,
        device_class: DeviceClass,
        instance: DeviceInstance,
        *,
        service_prefix: str,
        process_name: str,
        process_version: str,
        connection: str,
        initial_values: Mapping[str, Value | None] | None = None,
        name_timeout: float | None = None,
    ) -> BusService:
        """Build a service with the management and device-class properties."""
        service = cls(
            bus=bus,
            device_class=device_class,
            instance=instance,
            service_name=service_name_for(device_class, instance.index, service_prefix),
            name_timeout=name_timeout,
        )
        for spec, value in management_specs(
            device_class,
            instance,
            process_name=process_name,
            process_version=process_version,
            connection=connection,
        ):
            service.add(spec, value)
        initial = initial_values or {}
        for spec in device_class.properties:
            service.add(spec, initial.get(spec.path))
        return service

    # -- state -------------------------------------------------------------

    @property
    def properties(self) -> Mapping[str, ServiceProperty]:
        return MappingProxyType(self._properties)

    @property
    def registered_paths(self) -> frozenset[str]:
        return frozenset(self._registered)

    @property
    def started(self) -> bool:
        return self._started

    def value(self, path: str) -> Value | None:
        return self._properties[path].value

    def values(self) -> dict[str, Value | None]:
        return {path: prop.value for path, prop in self._properties.items()}

    def on_value_changed(self, callback: ValueChangedCallback) -> None:
        """Register a callback for remote writes."""
        self._listeners.append(callback)

    # -- export ------------------------------------------------------------

    def add(self, spec: PropertySpec, value: Value | None = None) -> ServiceProperty:
        """Declare a property from *spec* unless it already exists."""
        prop = self._properties.get(spec.path)
        if prop is None:
            prop = ServiceProperty.from_spec(spec, value)
            self._properties[spec.path] = prop
            if self._started:
                self._register(spec.path)
                self._notify(prop)
        return prop

    def export(self, path: str, value: Value | None, *, text: str | None = None) -> bool:
        """Create or update the property at *path*.

        Unknown paths are created with a type inferred from *value*.
        The path is registered on the bus at most once.  Returns
        ``True`` when the stored value changed.

        Raises:
            InvalidValueError: If *value* does not fit the property type.
            ProtocolError: If the bus refuses the object path.
        """
        prop = self._properties.get(path)
        if prop is None:
            prop = ServiceProperty(
                path=path,
                type=_type_for(value),
                value=None,
                text=text or path,
            )
            self._properties[path] = prop
        if self._started:
            self._register(path)

        coerced = None if value is None else prop.coerce(value)
        if coerced == prop.value:
            return False
        prop.value = coerced
        prop.remote_written = False
        self._notify(prop)
        return True

    async def start(self) -> None:
        """Register every path and request the bus name.

        Raises:
            ProtocolError: If an object path or the name cannot be claimed.
        """
        if self._started:
            return
        self._export_object("/", _RootItem(self))
        for path in self._properties:
            self._register(path)
        try:
            await asyncio.wait_for(self.bus.request_name(self.service_name), self.name_timeout)
        except ProtocolError:
            raise
        except TimeoutError as exc:
            msg = f"Timed out claiming bus name {self.service_name} after {self.name_timeout}s"
            raise ProtocolError(msg) from exc
        except Exception as exc:
            msg = f"Cannot claim bus name {self.service_name}: {exc}"
            raise ProtocolError(msg) from exc
        self._started = True
        logger.info(
            "Registered %s with %d paths",
            self.service_name,
            len(self._registered),
            extra={"device": self.instance.base_path},
        )

    def _register(self, path: str) -> None:
        if path in self._registered:
            return
        self._export_object(path, _PropertyItem(self, path))

    def _export_object(self, path: str, item: _PropertyItem | _RootItem) -> None:
        try:
            self.bus.export(path, item)
        except ProtocolError:
            raise
        except Exception as exc:
            msg = f"Cannot export {path} for {self.service_name}: {exc}"
            raise ProtocolError(msg) from exc
        self._registered.add(path)

    # -- BusItem protocol ----------------------------------------------------

    def get_value(self, path: str) -> BusVariant:
        if path == "/":
            return BusVariant(
                "a{sv}",
                {p.lstrip("/"): prop.variant() for p, prop in self._properties.items()},
            )
        prop = self._properties.get(path)
        return BusVariant.invalid() if prop is None else prop.variant()

    def get_text(self, path: str) -> str:
        if path == "/":
            return self.device_class.product_name
        prop = self._properties.get(path)
        return "---" if prop is None else prop.text

    def get_items(self) -> dict[str, dict[str, BusVariant]]:
        return {path: prop.item() for path, prop in self._properties.items()}

    def set_value(self, path: str, value: object) -> int:
        """Handle a remote ``SetValue``.

        Read-only, unknown and out-of-range writes are rejected with a
        negative code and leave the stored value untouched.
        """
        prop = self._properties.get(path)
        if prop is None or not prop.writable:
            logger.debug("Rejected write to read-only %s", path)
            return SET_READ_ONLY
        try:
            coerced = prop.coerce(value)
        except InvalidValueError as exc:
            logger.debug("Rejected write: %s", exc)
            return SET_INVALID
        if not prop.in_range(coerced):
            logger.debug(
                "Rejected write of %r to %s outside [%s, %s]",
                coerced,
                path,
                prop.min,
                prop.max,
            )
            return SET_OUT_OF_RANGE
        if coerced == prop.value:
            return SET_OK

        prop.value = coerced
        prop.remote_written = True
        self._notify(prop)
        logger.info(
            "Remote write %s = %r",
            path,
            coerced,
            extra={"device": self.instance.base_path, "bus_path": path},
        )
        for listener in self._listeners:
            try:
                listener(path, coerced)
            except Exception:
                logger.exception("Value-changed listener failed for %s", path)
        return SET_OK

    def _notify(self, prop: ServiceProperty) -> None:
        if not self._started:
            return
        item = prop.item()
        self.bus.emit_properties_changed(prop.path, item)
        self.bus.emit_items_changed({prop.path: item})

    # -- teardown ------------------------------------------------------------

    async def dispose(self) -> None:
        """Unexport every path.

        The connection itself belongs to the connection controller,
        which closes it on teardown.
        """
        for path in [*self._registered]:
            try:
                self.bus.unexport(path)
            except Exception:
                logger.debug("Unexport of %s failed", path, exc_info=True)
        self._registered.clear()
        self._started = False
