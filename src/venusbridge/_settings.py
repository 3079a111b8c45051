"""Bridge configuration via pydantic-settings.

Configuration is loaded from environment variables and/or a ``.env``
file.  Every variable carries the ``VENUSBRIDGE_`` prefix and nested
models use ``__`` as the delimiter, e.g.
``VENUSBRIDGE_BUS__HOST=venus.local``.

The schema groups four concerns:

* **Bus** — where the Venus OS D-Bus lives and how we talk to it.
* **Battery** — guard band, capacity and integration limits used by
  the energy accumulator.
* **History** — optional persistence of battery history records.
* **Logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DeviceClassKey = Literal["battery", "tank", "switch", "environment"]

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings; nested via composition)
# -------------------------------------------------------------------


class BusSettings(BaseModel):
    """D-Bus connection configuration.

    Venus OS exposes its system bus over TCP on port 78 once
    "D-Bus over TCP" is enabled in the GX settings.  When ``address``
    is set it is used verbatim and ``host``/``port`` are ignored.

    Environment variables (with ``__`` nesting)::

        VENUSBRIDGE_BUS__HOST=venus.local
        VENUSBRIDGE_BUS__PORT=78
        VENUSBRIDGE_BUS__RECONNECT_COOLDOWN=30
    """

    host: str = Field(
        default="localhost",
        description="Venus OS hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=78,
        description="TCP port of the Venus OS D-Bus.",
    )
    address: str | None = Field(
        default=None,
        description=(
            "Explicit D-Bus address (e.g. 'unix:path=/var/run/dbus/"
            "system_bus_socket').  Overrides host and port."
        ),
    )
    system_bus: bool = Field(
        default=False,
        description=(
            "Connect to the local system bus instead of TCP.  Only "
            "used when ``address`` is unset."
        ),
    )
    reconnect_cooldown: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description=(
            "Minimum seconds between two connection attempts for the "
            "same device class.  Updates arriving inside the window "
            "while disconnected are dropped."
        ),
    )
    call_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Timeout for remote calls such as AddSettings.",
    )
    propagate_not_connected: bool = Field(
        default=False,
        description=(
            "Raise NotConnectedError for updates dropped while the "
            "connection is throttled instead of dropping silently."
        ),
    )
    service_prefix: str = Field(
        default="signalk",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description=(
            "Prefix of the bus service name suffix: "
            "com.victronenergy.<type>.<prefix>_<index>."
        ),
    )

    @property
    def display_target(self) -> str:
        """Human-readable connection target for log and error messages."""
        if self.address:
            return self.address
        if self.system_bus:
            return "system bus"
        return f"{self.host}:{self.port}"


class BatterySettings(BaseModel):
    """Battery accounting configuration.

    Voltage samples outside ``[min_voltage, max_voltage]`` never reach
    the history extremes.  ``capacity_ah`` enables the derived
    ``/TimeToGo`` and ``/ConsumedAmphours`` values when the telemetry
    source does not provide them.
    """

    capacity_ah: Annotated[float, Field(gt=0)] | None = Field(
        default=None,
        description="Nominal battery bank capacity in amp-hours.",
    )
    min_voltage: Annotated[float, Field(ge=0)] = Field(
        default=5.0,
        description="Lower bound of the plausible battery voltage band.",
    )
    max_voltage: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Upper bound of the plausible battery voltage band.",
    )
    max_gap_hours: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description=(
            "Longest gap between two samples that is still integrated. "
            "Longer gaps (process pauses, outages) yield no delta."
        ),
    )
    solar_current_path: str = Field(
        default="electrical.solar.current",
        description="Telemetry path of the aggregate solar charge current.",
    )
    alternator_current_path: str = Field(
        default="electrical.alternators.current",
        description="Telemetry path of the aggregate alternator current.",
    )

    @model_validator(mode="after")
    def _check_band(self) -> BatterySettings:
        if self.min_voltage >= self.max_voltage:
            msg = (
                f"min_voltage ({self.min_voltage}) must be below "
                f"max_voltage ({self.max_voltage})"
            )
            raise ValueError(msg)
        return self


class HistorySettings(BaseModel):
    """Battery history persistence."""

    file: str | None = Field(
        default=None,
        description="JSON file for history records. ``None`` disables saving.",
    )
    save_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds between periodic history saves.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format="json"`` (default) emits one JSON object per line for
    journald / container log collection; ``"text"`` is meant for a
    terminal.  When ``file`` is set, logs are also written to a
    size-rotated file.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' lines or human-readable 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the bridge.

    Example ``.env``::

        VENUSBRIDGE_BUS__HOST=192.168.1.40
        VENUSBRIDGE_BATTERY__CAPACITY_AH=280
        VENUSBRIDGE_HISTORY__FILE=/data/venusbridge-history.json
        VENUSBRIDGE_DEVICES=["battery","tank"]
        VENUSBRIDGE_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="VENUSBRIDGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bus: BusSettings = Field(
        default_factory=BusSettings,
        description="D-Bus connection settings.",
    )
    battery: BatterySettings = Field(
        default_factory=BatterySettings,
        description="Battery accounting settings.",
    )
    history: HistorySettings = Field(
        default_factory=HistorySettings,
        description="History persistence settings.",
    )
    devices: list[DeviceClassKey] = Field(
        default_factory=lambda: ["battery", "tank", "switch", "environment"],
        description="Device classes to bridge.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
