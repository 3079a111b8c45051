"""venusbridge.

Publishes Signal K telemetry as Victron Venus OS virtual devices on D-Bus.
"""

from importlib.metadata import PackageNotFoundError, version

from venusbridge._app import Bridge
from venusbridge._bus import (
    BusFactory,
    BusItemHandler,
    BusPort,
    BusVariant,
    MockBus,
    MockBusFactory,
    NullBus,
    RootItemHandler,
    null_bus_factory,
)
from venusbridge._client import DeviceClassClient
from venusbridge._clock import ClockPort, SystemClock
from venusbridge._connection import ConnectionController, ConnectionState
from venusbridge._devices import (
    BATTERY,
    DEVICE_CLASSES,
    ENVIRONMENT,
    SWITCH,
    TANK,
    DeviceClass,
    PropertySpec,
    PropertyType,
    UpdateRule,
)
from venusbridge._energy import EnergyAccumulator, HistoryRecord, TelemetryCache
from venusbridge._errors import (
    BridgeError,
    BusConnectionError,
    ErrorEvent,
    ErrorReporter,
    InvalidValueError,
    NotConnectedError,
    ProtocolError,
    RegistrationError,
    build_error_event,
)
from venusbridge._history import HistoryStore
from venusbridge._logging import JsonFormatter, configure_logging
from venusbridge._registrar import SettingsRegistrar
from venusbridge._registry import DeviceInstance, DeviceRegistry, stable_index
from venusbridge._service import BusService, ServiceProperty
from venusbridge._settings import (
    BatterySettings,
    BusSettings,
    HistorySettings,
    LoggingSettings,
    Settings,
)
from venusbridge._source import JsonLinesSource, QueueSource, Update, UpdateSource

try:
    __version__ = version("venusbridge")
except PackageNotFoundError:
    # Editable checkouts without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Bridge
    "Bridge",
    "DeviceClassClient",
    # Bus
    "BusFactory",
    "BusItemHandler",
    "BusPort",
    "BusService",
    "BusVariant",
    "MockBus",
    "MockBusFactory",
    "NullBus",
    "RootItemHandler",
    "ServiceProperty",
    "null_bus_factory",
    # Clock
    "ClockPort",
    "SystemClock",
    # Connection
    "ConnectionController",
    "ConnectionState",
    # Devices
    "BATTERY",
    "DEVICE_CLASSES",
    "ENVIRONMENT",
    "SWITCH",
    "TANK",
    "DeviceClass",
    "DeviceInstance",
    "DeviceRegistry",
    "PropertySpec",
    "PropertyType",
    "SettingsRegistrar",
    "UpdateRule",
    "stable_index",
    # Energy
    "EnergyAccumulator",
    "HistoryRecord",
    "HistoryStore",
    "TelemetryCache",
    # Errors
    "BridgeError",
    "BusConnectionError",
    "ErrorEvent",
    "ErrorReporter",
    "InvalidValueError",
    "NotConnectedError",
    "ProtocolError",
    "RegistrationError",
    "build_error_event",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Settings
    "BatterySettings",
    "BusSettings",
    "HistorySettings",
    "LoggingSettings",
    "Settings",
    # Sources
    "JsonLinesSource",
    "QueueSource",
    "Update",
    "UpdateSource",
]
