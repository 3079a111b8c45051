"""Device-class descriptor table.

A device class is data, not a subclass: the bus service type, the
property table, the telemetry update rules, the naming rule and the
derived-value hooks of each class live in a :class:`DeviceClass`
record.  One engine (:mod:`venusbridge._client`) drives all of them.

Telemetry paths look like ``<prefix><id...>.<suffix>``::

    electrical.batteries.house.capacity.stateOfCharge
    └──── base path ─────────┘└──── rule suffix ─────┘

The base path identifies one logical device; the suffix selects the
update rule and thereby the bus property.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from venusbridge._normalize import (
    Normalizer,
    Value,
    cubic_meters_to_liters,
    finite_number,
    integer,
    kelvin_to_celsius,
    pascal_to_hectopascal,
    quantity,
    ratio_to_percent,
    switch_state,
    text,
)

if TYPE_CHECKING:
    from venusbridge._settings import Settings

PRODUCT_PREFIX = "SignalK Virtual"

GENERIC_IDS = frozenset({"main", "primary", "default"})

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class PropertyType(StrEnum):
    """D-Bus signature of a property value."""

    INT32 = "i"
    UINT32 = "u"
    DOUBLE = "d"
    STRING = "s"
    BOOLEAN = "b"


@dataclass(frozen=True, slots=True)
class PropertySpec:
    """Declaration of one bus property of a device class."""

    path: str
    type: PropertyType
    text: str
    default: Value | None = None
    writable: bool = False
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True, slots=True)
class UpdateRule:
    """Maps a telemetry suffix to a bus property.

    ``suffixes`` are dotted path tails (``"capacity.stateOfCharge"``);
    ``denormalize`` converts a remotely written bus value back into the
    telemetry representation.
    """

    suffixes: tuple[str, ...]
    target: str
    normalize: Normalizer
    category: str
    formatter: Callable[[Value], str]
    denormalize: Callable[[Value], object] | None = None

    @property
    def telemetry_key(self) -> str:
        return self.suffixes[0]

    def format(self, value: Value) -> str:
        return self.formatter(value)


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """Result of matching a telemetry path against a device class."""

    rule: UpdateRule
    base_path: str
    suffix: str


type NameRule = Callable[[str, str], str]
"""(base_path, matched suffix) -> display name hint."""

type InitialValues = Callable[[str, "Settings"], dict[str, Value | None]]
"""(base_path, settings) -> property values set when a device is created."""

type Derivation = Callable[[str, Mapping[str, Value | None], "Settings"], dict[str, Value | None]]
"""(changed bus path, current values, settings) -> derived property values."""


@dataclass(frozen=True)
class DeviceClass:
    """Everything the engine needs to emulate one kind of device."""

    key: str
    service_type: str
    product_name: str
    category: str
    prefix: str
    properties: tuple[PropertySpec, ...]
    rules: tuple[UpdateRule, ...]
    name_for: NameRule
    initial_values: InitialValues | None = None
    derive: Derivation | None = None
    tracks_energy: bool = False
    _pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _by_suffix: dict[str, UpdateRule] = field(init=False, repr=False, compare=False)
    _by_target: dict[str, UpdateRule] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        suffixes = sorted(
            {s for rule in self.rules for s in rule.suffixes},
            key=len,
            reverse=True,
        )
        pattern = re.compile(r"\.(" + "|".join(re.escape(s) for s in suffixes) + r")$")
        by_suffix = {s: rule for rule in self.rules for s in rule.suffixes}
        by_target = {rule.target: rule for rule in self.rules}
        # frozen dataclass: lookup tables are set once here
        object.__setattr__(self, "_pattern", pattern)
        object.__setattr__(self, "_by_suffix", by_suffix)
        object.__setattr__(self, "_by_target", by_target)

    def is_relevant(self, path: str) -> bool:
        """Whether *path* belongs to this device class at all."""
        return path.startswith(self.prefix)

    def match(self, path: str) -> RuleMatch | None:
        """Find the update rule and base path for a telemetry *path*."""
        if not self.is_relevant(path):
            return None
        found = self._pattern.search(path)
        if found is None:
            return None
        base_path = path[: found.start()]
        if len(base_path) < len(self.prefix):
            return None
        suffix = found.group(1)
        return RuleMatch(self._by_suffix[suffix], base_path, suffix)

    def rule_for_target(self, bus_path: str) -> UpdateRule | None:
        return self._by_target.get(bus_path)


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def title_case(identifier: str) -> str:
    """Expand ``cabinLights`` / ``mast_head`` into ``Cabin Lights`` / ``Mast Head``."""
    spaced = _CAMEL_BOUNDARY.sub(" ", identifier).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def is_generic_id(segment: str) -> bool:
    """Ids that carry no naming information (``0``, ``main``, ...)."""
    return segment.isdigit() or segment.lower() in GENERIC_IDS


def _last_segment(base_path: str) -> str:
    return base_path.rsplit(".", 1)[-1]


def _battery_name(base_path: str, suffix: str) -> str:  # noqa: ARG001
    segment = _last_segment(base_path)
    if is_generic_id(segment):
        return "Battery"
    return f"Battery {title_case(segment)}"


def _switch_name(base_path: str, suffix: str) -> str:  # noqa: ARG001
    segment = _last_segment(base_path)
    if is_generic_id(segment):
        return "Switch"
    return title_case(segment)


def _environment_name(base_path: str, suffix: str) -> str:
    location = _last_segment(base_path)
    kind = "Humidity" if suffix == "relativeHumidity" else title_case(suffix)
    if is_generic_id(location):
        return f"Environment {kind}"
    return f"{title_case(location)} {kind}"


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _fixed(precision: int, unit: str) -> Callable[[Value], str]:
    def fmt(value: Value) -> str:
        if isinstance(value, int | float):
            return f"{value:.{precision}f}{unit}"
        return f"{value}{unit}"

    return fmt


def _on_off(value: Value) -> str:
    return "ON" if value else "OFF"


def _duration(value: Value) -> str:
    seconds = int(value) if isinstance(value, int | float) else 0
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60:02d}m"


def _plain(value: Value) -> str:
    return str(value)


# ---------------------------------------------------------------------------
# Battery
# ---------------------------------------------------------------------------


def _battery_initial(base_path: str, settings: Settings) -> dict[str, Value | None]:  # noqa: ARG001
    capacity = settings.battery.capacity_ah
    return {"/Capacity": capacity} if capacity is not None else {}


def _battery_derive(
    changed: str,
    values: Mapping[str, Value | None],
    settings: Settings,
) -> dict[str, Value | None]:
    derived: dict[str, Value | None] = {}
    voltage = finite_number(values.get("/Dc/0/Voltage"))
    current = finite_number(values.get("/Dc/0/Current"))
    soc = finite_number(values.get("/Soc"))

    if changed in ("/Dc/0/Voltage", "/Dc/0/Current") and voltage is not None and current is not None:
        derived["/Dc/0/Power"] = voltage * current

    capacity = settings.battery.capacity_ah
    if capacity is None or soc is None:
        return derived

    if changed == "/Soc":
        derived["/ConsumedAmphours"] = capacity * (100.0 - soc) / 100.0
    if changed in ("/Soc", "/Dc/0/Current") and current is not None:
        if current < 0:
            remaining_ah = capacity * soc / 100.0
            derived["/TimeToGo"] = round(remaining_ah / abs(current) * 3600)
        else:
            derived["/TimeToGo"] = None
    return derived


BATTERY = DeviceClass(
    key="battery",
    service_type="battery",
    product_name=f"{PRODUCT_PREFIX} Battery",
    category="Battery",
    prefix="electrical.batteries.",
    properties=(
        PropertySpec("/Dc/0/Voltage", PropertyType.DOUBLE, "Battery voltage"),
        PropertySpec("/Dc/0/Current", PropertyType.DOUBLE, "Battery current"),
        PropertySpec("/Dc/0/Power", PropertyType.DOUBLE, "Battery power"),
        PropertySpec("/Dc/0/Temperature", PropertyType.DOUBLE, "Battery temperature"),
        PropertySpec("/Soc", PropertyType.DOUBLE, "State of charge", min=0, max=100),
        PropertySpec("/TimeToGo", PropertyType.INT32, "Time to go"),
        PropertySpec("/ConsumedAmphours", PropertyType.DOUBLE, "Consumed amphours"),
        PropertySpec("/Capacity", PropertyType.DOUBLE, "Battery capacity"),
        PropertySpec(
            "/System/HasBatteryMonitor",
            PropertyType.INT32,
            "Has battery monitor",
            default=1,
        ),
        PropertySpec("/Relay/0/State", PropertyType.INT32, "Relay state", min=0, max=1),
    ),
    rules=(
        UpdateRule(
            ("voltage",),
            "/Dc/0/Voltage",
            quantity(finite_number, "V"),
            "Battery Voltage",
            _fixed(2, "V"),
        ),
        UpdateRule(
            ("current",),
            "/Dc/0/Current",
            quantity(finite_number, "A"),
            "Battery Current",
            _fixed(1, "A"),
        ),
        UpdateRule(
            ("power",),
            "/Dc/0/Power",
            quantity(finite_number, "W"),
            "Battery Power",
            _fixed(0, "W"),
        ),
        UpdateRule(
            ("stateOfCharge", "capacity.stateOfCharge"),
            "/Soc",
            quantity(ratio_to_percent, "%"),
            "Battery SoC",
            _fixed(1, "%"),
        ),
        UpdateRule(
            ("timeRemaining", "capacity.timeRemaining"),
            "/TimeToGo",
            quantity(finite_number, "s", round),
            "Battery Time to Go",
            _duration,
        ),
        UpdateRule(
            ("consumed", "capacity.consumed", "capacity.consumedCharge"),
            "/ConsumedAmphours",
            quantity(finite_number, "Ah"),
            "Battery Consumed",
            _fixed(1, "Ah"),
        ),
        UpdateRule(
            ("temperature",),
            "/Dc/0/Temperature",
            quantity(kelvin_to_celsius, "C"),
            "Battery Temperature",
            _fixed(1, "°C"),
        ),
        UpdateRule(
            ("relay",),
            "/Relay/0/State",
            switch_state,
            "Battery Relay",
            _on_off,
            denormalize=bool,
        ),
        UpdateRule(("name",), "/CustomName", text, "Battery Name", _plain),
    ),
    name_for=_battery_name,
    initial_values=_battery_initial,
    derive=_battery_derive,
    tracks_energy=True,
)

# ---------------------------------------------------------------------------
# Tank
# ---------------------------------------------------------------------------

FLUID_TYPES: dict[str, int] = {
    "fuel": 0,
    "freshWater": 1,
    "wasteWater": 2,
    "liveWell": 3,
    "livewell": 3,
    "oil": 4,
    "lubrication": 4,
    "blackWater": 5,
    "gasoline": 6,
    "diesel": 7,
    "lpg": 8,
    "lng": 9,
    "hydraulicOil": 10,
    "rawWater": 11,
}

_FLUID_LABELS: dict[str, str] = {
    "freshWater": "Freshwater",
    "wasteWater": "Wastewater",
    "blackWater": "Blackwater",
    "lpg": "LPG",
    "lng": "LNG",
}


def _tank_segments(base_path: str) -> tuple[str, str | None]:
    parts = base_path.split(".")[1:]
    fluid = parts[0] if parts else "unknown"
    ident = parts[-1] if len(parts) > 1 else None
    return fluid, ident


def fluid_type(base_path: str) -> int:
    """Victron fluid type for a ``tanks.<fluid>.<id>`` base path (fuel if unknown)."""
    fluid, _ = _tank_segments(base_path)
    return FLUID_TYPES.get(fluid, 0)


def _tank_name(base_path: str, suffix: str) -> str:  # noqa: ARG001
    fluid, ident = _tank_segments(base_path)
    label = _FLUID_LABELS.get(fluid) or title_case(fluid)
    if ident is None or is_generic_id(ident):
        return label
    return f"{label} {title_case(ident)}"


def _tank_initial(base_path: str, settings: Settings) -> dict[str, Value | None]:  # noqa: ARG001
    return {"/FluidType": fluid_type(base_path)}


def _tank_derive(
    changed: str,
    values: Mapping[str, Value | None],
    settings: Settings,  # noqa: ARG001
) -> dict[str, Value | None]:
    if changed not in ("/Level", "/Capacity"):
        return {}
    level = finite_number(values.get("/Level"))
    capacity = finite_number(values.get("/Capacity"))
    if level is None or capacity is None:
        return {}
    return {"/Remaining": level / 100.0 * capacity}


TANK = DeviceClass(
    key="tank",
    service_type="tank",
    product_name=f"{PRODUCT_PREFIX} Tank",
    category="Tank",
    prefix="tanks.",
    properties=(
        PropertySpec("/Status", PropertyType.INT32, "Sensor status", default=0),
        PropertySpec("/FluidType", PropertyType.INT32, "Fluid type", default=0),
        PropertySpec("/Level", PropertyType.DOUBLE, "Tank level", min=0, max=100),
        PropertySpec("/Volume", PropertyType.DOUBLE, "Tank volume"),
        PropertySpec("/Capacity", PropertyType.DOUBLE, "Tank capacity"),
        PropertySpec("/Remaining", PropertyType.DOUBLE, "Remaining volume"),
        PropertySpec("/Name", PropertyType.STRING, "Tank name"),
    ),
    rules=(
        UpdateRule(
            ("currentLevel",),
            "/Level",
            quantity(ratio_to_percent, "%"),
            "Tank Level",
            _fixed(1, "%"),
        ),
        UpdateRule(
            ("capacity",),
            "/Capacity",
            quantity(cubic_meters_to_liters, "L"),
            "Tank Capacity",
            _fixed(0, "L"),
        ),
        UpdateRule(
            ("currentVolume",),
            "/Volume",
            quantity(cubic_meters_to_liters, "L"),
            "Tank Volume",
            _fixed(1, "L"),
        ),
        UpdateRule(("name",), "/Name", text, "Tank Name", _plain),
    ),
    name_for=_tank_name,
    initial_values=_tank_initial,
    derive=_tank_derive,
)

# ---------------------------------------------------------------------------
# Switch
# ---------------------------------------------------------------------------

SWITCH = DeviceClass(
    key="switch",
    service_type="switch",
    product_name=f"{PRODUCT_PREFIX} Switch",
    category="Switch",
    prefix="electrical.switches.",
    properties=(
        PropertySpec(
            "/State",
            PropertyType.INT32,
            "Switch state",
            writable=True,
            min=0,
            max=1,
        ),
        PropertySpec(
            "/DimmingLevel",
            PropertyType.INT32,
            "Dimming level",
            writable=True,
            min=0,
            max=100,
        ),
        PropertySpec("/Position", PropertyType.INT32, "Switch position"),
        PropertySpec("/Name", PropertyType.STRING, "Switch name"),
    ),
    rules=(
        UpdateRule(
            ("state",),
            "/State",
            switch_state,
            "Switch State",
            _on_off,
            denormalize=bool,
        ),
        UpdateRule(
            ("dimmingLevel",),
            "/DimmingLevel",
            quantity(ratio_to_percent, "%", round),
            "Switch Dimming",
            _fixed(0, "%"),
            denormalize=lambda value: float(value) / 100.0,
        ),
        UpdateRule(("position",), "/Position", integer, "Switch Position", _plain),
        UpdateRule(("name",), "/Name", text, "Switch Name", _plain),
    ),
    name_for=_switch_name,
)

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

ENVIRONMENT = DeviceClass(
    key="environment",
    service_type="temperature",
    product_name=f"{PRODUCT_PREFIX} Environment Sensor",
    category="Environment",
    prefix="environment.",
    properties=(
        PropertySpec("/Temperature", PropertyType.DOUBLE, "Temperature"),
        PropertySpec("/Humidity", PropertyType.DOUBLE, "Humidity", min=0, max=100),
        PropertySpec("/Pressure", PropertyType.DOUBLE, "Pressure"),
        PropertySpec("/Status", PropertyType.INT32, "Sensor status", default=0),
    ),
    rules=(
        UpdateRule(
            ("temperature",),
            "/Temperature",
            quantity(kelvin_to_celsius, "C"),
            "Environment Temperature",
            _fixed(1, "°C"),
        ),
        UpdateRule(
            ("humidity", "relativeHumidity"),
            "/Humidity",
            quantity(ratio_to_percent, "%"),
            "Environment Humidity",
            _fixed(1, "%"),
        ),
        UpdateRule(
            ("pressure",),
            "/Pressure",
            quantity(pascal_to_hectopascal, "hPa"),
            "Environment Pressure",
            _fixed(1, "hPa"),
        ),
    ),
    name_for=_environment_name,
)

DEVICE_CLASSES: dict[str, DeviceClass] = {
    cls.key: cls for cls in (BATTERY, TANK, SWITCH, ENVIRONMENT)
}
