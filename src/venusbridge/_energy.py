"""Battery energy and charge accounting.

For every battery base path the accumulator integrates voltage and
current over elapsed time into four running totals and tracks the
voltage extremes:

- ``charged_energy_kwh`` / ``discharged_energy_kwh``
- ``total_ah_drawn`` = ∫ (solar + alternator − battery current) dt
- ``minimum_voltage`` / ``maximum_voltage``

Timestamps come from a monotonic :class:`~venusbridge._clock.ClockPort`
in seconds.  The first sample of a base path only sets the reference
time.  Gaps longer than ``max_gap_hours`` are not integrated.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from venusbridge._normalize import finite_number

if TYPE_CHECKING:
    from venusbridge._clock import ClockPort

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class HistoryRecord:
    """Accumulated history of one battery."""

    minimum_voltage: float | None = None
    maximum_voltage: float | None = None
    charged_energy_kwh: float = 0.0
    discharged_energy_kwh: float = 0.0
    total_ah_drawn: float = 0.0

    def sanitize(self) -> None:
        """Reset NaN/inf totals to 0 and NaN/inf extremes to unset."""
        for name in ("charged_energy_kwh", "discharged_energy_kwh", "total_ah_drawn"):
            if not math.isfinite(getattr(self, name)):
                setattr(self, name, 0.0)
        for name in ("minimum_voltage", "maximum_voltage"):
            value = getattr(self, name)
            if value is not None and not math.isfinite(value):
                setattr(self, name, None)

    @property
    def is_empty(self) -> bool:
        """Whether the record still holds nothing but defaults."""
        return all(getattr(self, f.name) == f.default for f in fields(self))


@dataclass
class AccumulatorState:
    """Last accepted sample of one battery."""

    last_voltage: float | None = None
    last_current: float | None = None
    last_timestamp: float | None = None


# ---------------------------------------------------------------------------
# Current lookup
# ---------------------------------------------------------------------------


@runtime_checkable
class CurrentSource(Protocol):
    """Looks up the latest value of an arbitrary telemetry path."""

    def lookup(self, path: str) -> object: ...


class TelemetryCache:
    """Latest value per telemetry path, fed by the bridge for every update."""

    def __init__(self) -> None:
        self._values: dict[str, object] = {}

    def record(self, path: str, value: object) -> None:
        self._values[path] = value

    def lookup(self, path: str) -> object:
        return self._values.get(path)

    def __len__(self) -> int:
        return len(self._values)


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class EnergyAccumulator:
    """Integrates battery samples into :class:`HistoryRecord` totals.

    Args:
        clock: Time source used when ``accumulate`` gets no ``now``.
        current_source: Lookup for the solar and alternator currents.
            Missing or non-numeric currents count as 0 A.
        min_voltage: Lower bound of the voltage guard band.
        max_voltage: Upper bound of the voltage guard band.
        max_gap_hours: Longest integrated gap between two samples.
        solar_path: Telemetry path of the solar current.
        alternator_path: Telemetry path of the alternator current.
    """

    def __init__(
        self,
        *,
        clock: ClockPort,
        current_source: CurrentSource | None = None,
        min_voltage: float = 5.0,
        max_voltage: float = 60.0,
        max_gap_hours: float = 1.0,
        solar_path: str = "electrical.solar.current",
        alternator_path: str = "electrical.alternators.current",
    ) -> None:
        self._clock = clock
        self._current_source = current_source
        self._min_voltage = min_voltage
        self._max_voltage = max_voltage
        self._max_gap_hours = max_gap_hours
        self._solar_path = solar_path
        self._alternator_path = alternator_path
        self._states: dict[str, AccumulatorState] = {}
        self._records: dict[str, HistoryRecord] = {}

    # -- access ------------------------------------------------------------

    def record(self, base_path: str) -> HistoryRecord | None:
        return self._records.get(base_path)

    def state(self, base_path: str) -> AccumulatorState | None:
        return self._states.get(base_path)

    @property
    def records(self) -> Mapping[str, HistoryRecord]:
        return dict(self._records)

    def restore(self, records: Mapping[str, HistoryRecord]) -> None:
        """Seed records loaded from persistence.

        Reference timestamps are not restored; the first sample after a
        restart yields no delta.
        """
        for base_path, record in records.items():
            record.sanitize()
            self._records[base_path] = record

    # -- integration -------------------------------------------------------

    def accumulate(
        self,
        base_path: str,
        voltage: object,
        current: object,
        now: float | None = None,
    ) -> HistoryRecord | None:
        """Add one voltage/current sample for *base_path*.

        Either reading may be ``None``; the last accepted value is then
        used for the energy terms.  A voltage outside the guard band is
        treated as missing: it is left out of the extremes and of the
        energy terms.  Returns the updated record, or ``None`` while no
        valid sample has been seen yet.

        Args:
            base_path: Battery the sample belongs to.
            voltage: Battery voltage in volts, or ``None``.
            current: Battery current in amperes, or ``None``.
            now: Sample time in seconds on the clock's monotonic scale,
                not milliseconds.  Defaults to the clock's current time.
        """
        timestamp = self._clock.now() if now is None else now
        volts = finite_number(voltage)
        amps = finite_number(current)

        state = self._states.setdefault(base_path, AccumulatorState())
        record = self._records.get(base_path)
        if record is None:
            if volts is None and amps is None:
                return None
            record = self._records[base_path] = HistoryRecord()
        record.sanitize()

        if volts is not None and not self._min_voltage <= volts <= self._max_voltage:
            logger.debug(
                "Voltage %.2f V outside guard band for %s",
                volts,
                base_path,
                extra={"device": base_path},
            )
            volts = None

        if volts is not None:
            if record.minimum_voltage is None or volts < record.minimum_voltage:
                record.minimum_voltage = volts
            if record.maximum_voltage is None or volts > record.maximum_voltage:
                record.maximum_voltage = volts

        effective_volts = volts if volts is not None else state.last_voltage
        effective_amps = amps if amps is not None else state.last_current

        if state.last_timestamp is not None and effective_amps is not None:
            dt_hours = (timestamp - state.last_timestamp) / SECONDS_PER_HOUR
            if 0 < dt_hours <= self._max_gap_hours:
                self._integrate(record, effective_volts, effective_amps, dt_hours)
            elif dt_hours > self._max_gap_hours:
                logger.debug(
                    "Skipping %.2f h gap for %s",
                    dt_hours,
                    base_path,
                    extra={"device": base_path},
                )

        if volts is not None:
            state.last_voltage = volts
        if amps is not None:
            state.last_current = amps
        state.last_timestamp = timestamp
        record.sanitize()
        return record

    def _integrate(
        self,
        record: HistoryRecord,
        volts: float | None,
        amps: float,
        dt_hours: float,
    ) -> None:
        if volts is not None:
            energy_kwh = volts * amps * dt_hours / 1000.0
            if amps < 0:
                record.discharged_energy_kwh += abs(energy_kwh)
            elif amps > 0:
                record.charged_energy_kwh += energy_kwh

        sources = self._source_current(self._solar_path) + self._source_current(
            self._alternator_path,
        )
        drawn = (sources - amps) * dt_hours
        if drawn > 0:
            record.total_ah_drawn += drawn

    def _source_current(self, path: str) -> float:
        if self._current_source is None:
            return 0.0
        value = finite_number(self._current_source.lookup(path))
        return 0.0 if value is None else value
