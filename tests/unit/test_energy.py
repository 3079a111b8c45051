"""Unit tests for venusbridge._energy — battery energy accounting.

Test Techniques Used:
    - Specification-based Testing: kWh and Ah integration scenarios
    - Boundary Value Analysis: zero elapsed time, the one-hour gap
    - Error Guessing: NaN, inf and out-of-band voltages
    - State-based Testing: reference sample and restored records
"""

from __future__ import annotations

import math

import pytest

from venusbridge._energy import EnergyAccumulator, HistoryRecord, TelemetryCache
from venusbridge.testing import FakeClock

BATTERY = "electrical.batteries.house"
HALF_HOUR = 1800.0
HOUR = 3600.0


@pytest.fixture
def cache() -> TelemetryCache:
    return TelemetryCache()


@pytest.fixture
def accumulator(fake_clock: FakeClock, cache: TelemetryCache) -> EnergyAccumulator:
    return EnergyAccumulator(clock=fake_clock, current_source=cache)


class TestHistoryRecord:
    """Record sanitisation.

    Technique: Error Guessing.
    """

    def test_sanitize_resets_totals_and_extremes(self) -> None:
        record = HistoryRecord(
            minimum_voltage=math.nan,
            maximum_voltage=math.inf,
            charged_energy_kwh=math.nan,
            discharged_energy_kwh=-math.inf,
            total_ah_drawn=4.0,
        )
        record.sanitize()
        assert record == HistoryRecord(total_ah_drawn=4.0)

    def test_is_empty(self) -> None:
        assert HistoryRecord().is_empty
        assert not HistoryRecord(total_ah_drawn=0.1).is_empty


class TestEnergyIntegration:
    """kWh totals.

    Technique: Specification-based Testing.
    """

    def test_first_sample_only_sets_reference(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert record is not None
        assert record.charged_energy_kwh == 0.0
        assert accumulator.state(BATTERY).last_timestamp == fake_clock.now()

    def test_charging_half_hour(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        """12 V at 10 A for 30 minutes is 0.06 kWh charged."""
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)

        assert record.charged_energy_kwh == pytest.approx(0.06)
        assert record.discharged_energy_kwh == 0.0

    def test_discharging_half_hour(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        """12.8 V at -15 A for 30 minutes is 0.096 kWh discharged."""
        accumulator.accumulate(BATTERY, 12.8, -15.0)
        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, 12.8, -15.0)

        assert record.discharged_energy_kwh == pytest.approx(0.096)
        assert record.charged_energy_kwh == 0.0

    def test_zero_elapsed_time_adds_nothing(self, accumulator: EnergyAccumulator) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert record.charged_energy_kwh == 0.0

    def test_exactly_max_gap_is_integrated(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert record.charged_energy_kwh == pytest.approx(0.12)

    def test_longer_gap_skipped(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        fake_clock.advance(HOUR + 1)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert record.charged_energy_kwh == 0.0
        # the late sample becomes the new reference
        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert record.charged_energy_kwh == pytest.approx(0.06)

    def test_missing_voltage_uses_last_voltage(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, None, 10.0)
        assert record.charged_energy_kwh == pytest.approx(0.06)

    def test_explicit_timestamp(self, accumulator: EnergyAccumulator) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0, now=0.0)
        record = accumulator.accumulate(BATTERY, 12.0, 10.0, now=HALF_HOUR)
        assert record.charged_energy_kwh == pytest.approx(0.06)

    def test_batteries_are_independent(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        fake_clock.advance(HALF_HOUR)
        accumulator.accumulate("electrical.batteries.start", 12.0, 10.0)
        assert accumulator.record("electrical.batteries.start").charged_energy_kwh == 0.0


class TestAmpHours:
    """Ah drawn from sources minus battery current.

    Technique: Specification-based Testing.
    """

    def test_solar_and_alternator_feed_consumption(
        self,
        accumulator: EnergyAccumulator,
        cache: TelemetryCache,
        fake_clock: FakeClock,
    ) -> None:
        """10 A solar + 2 A alternator while charging at 5 A draws 7 Ah per hour."""
        cache.record("electrical.solar.current", 10.0)
        cache.record("electrical.alternators.current", 2.0)
        accumulator.accumulate(BATTERY, 13.2, 5.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 13.2, 5.0)
        assert record.total_ah_drawn == pytest.approx(7.0)

    def test_discharge_without_sources(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        """-20 A for one hour with no charge sources draws 20 Ah."""
        accumulator.accumulate(BATTERY, 12.5, -20.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 12.5, -20.0)
        assert record.total_ah_drawn == pytest.approx(20.0)

    def test_negative_draw_not_added(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 13.5, 10.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 13.5, 10.0)
        assert record.total_ah_drawn == 0.0

    def test_non_numeric_source_counts_as_zero(
        self,
        accumulator: EnergyAccumulator,
        cache: TelemetryCache,
        fake_clock: FakeClock,
    ) -> None:
        cache.record("electrical.solar.current", "sunny")
        accumulator.accumulate(BATTERY, 12.5, -4.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 12.5, -4.0)
        assert record.total_ah_drawn == pytest.approx(4.0)

    def test_without_current_source(self, fake_clock: FakeClock) -> None:
        accumulator = EnergyAccumulator(clock=fake_clock)
        accumulator.accumulate(BATTERY, 12.5, -4.0)
        fake_clock.advance(HOUR)
        assert accumulator.accumulate(BATTERY, 12.5, -4.0).total_ah_drawn == pytest.approx(4.0)

    def test_sources_while_discharging(
        self,
        accumulator: EnergyAccumulator,
        cache: TelemetryCache,
        fake_clock: FakeClock,
    ) -> None:
        """5 A solar + 10 A alternator with the battery at -5 A draws 20 Ah per hour."""
        cache.record("electrical.solar.current", 5.0)
        cache.record("electrical.alternators.current", 10.0)
        accumulator.accumulate(BATTERY, 12.5, -5.0)
        fake_clock.advance(HOUR)
        record = accumulator.accumulate(BATTERY, 12.5, -5.0)
        assert record.total_ah_drawn == pytest.approx(20.0)


class TestVoltageExtremes:
    """Min/max tracking with guard band.

    Technique: Boundary Value Analysis + Error Guessing.
    """

    def test_extremes_tracked(self, accumulator: EnergyAccumulator) -> None:
        for volts in (12.4, 14.2, 11.9, 13.0):
            accumulator.accumulate(BATTERY, volts, None)
        record = accumulator.record(BATTERY)
        assert (record.minimum_voltage, record.maximum_voltage) == (11.9, 14.2)

    @pytest.mark.parametrize("volts", [0.0, 4.9, 60.1, 400.0])
    def test_outside_guard_band_ignored(
        self,
        accumulator: EnergyAccumulator,
        volts: float,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.5, None)
        accumulator.accumulate(BATTERY, volts, None)
        record = accumulator.record(BATTERY)
        assert (record.minimum_voltage, record.maximum_voltage) == (12.5, 12.5)

    @pytest.mark.parametrize("volts", [0.0, 400.0])
    def test_outside_guard_band_leaves_totals_intact(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
        volts: float,
    ) -> None:
        """12 V at -10 A; the rejected sample is integrated at the last good voltage."""
        accumulator.accumulate(BATTERY, 12.0, -10.0)
        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, volts, -10.0)

        assert record.discharged_energy_kwh == pytest.approx(0.06)
        assert record.charged_energy_kwh == 0.0
        assert record.total_ah_drawn == pytest.approx(5.0)

        fake_clock.advance(HALF_HOUR)
        record = accumulator.accumulate(BATTERY, None, -10.0)

        assert record.discharged_energy_kwh == pytest.approx(0.12)
        assert record.total_ah_drawn == pytest.approx(10.0)
        assert (record.minimum_voltage, record.maximum_voltage) == (12.0, 12.0)
        assert accumulator.state(BATTERY).last_voltage == 12.0

    def test_band_edges_accepted(self, accumulator: EnergyAccumulator) -> None:
        accumulator.accumulate(BATTERY, 5.0, None)
        accumulator.accumulate(BATTERY, 60.0, None)
        record = accumulator.record(BATTERY)
        assert (record.minimum_voltage, record.maximum_voltage) == (5.0, 60.0)

    def test_nan_extremes_reset_before_update(self, accumulator: EnergyAccumulator) -> None:
        accumulator.restore({BATTERY: HistoryRecord()})
        record = accumulator.record(BATTERY)
        record.minimum_voltage = math.nan
        record.maximum_voltage = math.nan

        accumulator.accumulate(BATTERY, 12.7, None)

        assert (record.minimum_voltage, record.maximum_voltage) == (12.7, 12.7)

    def test_nan_totals_reset_on_next_sample(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.accumulate(BATTERY, 12.0, -10.0)
        record = accumulator.record(BATTERY)
        record.charged_energy_kwh = math.nan
        record.discharged_energy_kwh = math.nan
        record.total_ah_drawn = math.nan

        fake_clock.advance(HALF_HOUR)
        accumulator.accumulate(BATTERY, 12.0, -10.0)

        assert record.charged_energy_kwh == 0.0
        assert record.discharged_energy_kwh == pytest.approx(0.06)
        assert record.total_ah_drawn == pytest.approx(5.0)

    def test_all_invalid_first_sample_creates_nothing(
        self,
        accumulator: EnergyAccumulator,
    ) -> None:
        assert accumulator.accumulate(BATTERY, math.nan, "x") is None
        assert accumulator.record(BATTERY) is None


class TestRestore:
    """Seeding from persistence.

    Technique: State-based Testing.
    """

    def test_restored_totals_continue(
        self,
        accumulator: EnergyAccumulator,
        fake_clock: FakeClock,
    ) -> None:
        accumulator.restore({BATTERY: HistoryRecord(charged_energy_kwh=1.0)})

        # first sample after restore has no reference timestamp
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert accumulator.record(BATTERY).charged_energy_kwh == pytest.approx(1.0)

        fake_clock.advance(HALF_HOUR)
        accumulator.accumulate(BATTERY, 12.0, 10.0)
        assert accumulator.record(BATTERY).charged_energy_kwh == pytest.approx(1.06)

    def test_restore_sanitizes(self, accumulator: EnergyAccumulator) -> None:
        accumulator.restore({BATTERY: HistoryRecord(total_ah_drawn=math.nan)})
        assert accumulator.record(BATTERY).total_ah_drawn == 0.0

    def test_records_snapshot(self, accumulator: EnergyAccumulator) -> None:
        accumulator.accumulate(BATTERY, 12.0, 1.0)
        snapshot = accumulator.records
        assert list(snapshot) == [BATTERY]


class TestTelemetryCache:
    """Latest value per path.

    Technique: State-based Testing.
    """

    def test_record_and_lookup(self, cache: TelemetryCache) -> None:
        cache.record("electrical.solar.current", 4.2)
        cache.record("electrical.solar.current", 5.0)
        assert cache.lookup("electrical.solar.current") == 5.0
        assert cache.lookup("unknown") is None
        assert len(cache) == 1
