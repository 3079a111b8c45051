"""Value normalisation for incoming telemetry.

Every function here is pure.  A normaliser returns the canonical value
for a bus property or ``None``, meaning "ignore this update": ``None``
inputs, non-finite numbers and wrongly typed values are all ignored and
nothing in this module raises for bad telemetry.

Two ways to get to canonical units:

* **Magnitude heuristics** (no unit tag).  Numbers in ``[0, 1]`` are
  ratios and become percentages, larger numbers are taken as
  percentages already.  Temperatures above 200 are Kelvin.  These
  rules are lossy: a state of charge above 100 % or a 250 °C exhaust
  temperature is misread.  They match what upstream sources send in
  practice.
* **Explicit unit tags** (``unit="K"``, ``unit="ratio"``, ...) via
  :func:`convert`, which never guesses.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable

logger = logging.getLogger(__name__)

type Value = int | float | str
type Normalizer = Callable[[object, str | None], Value | None]

KELVIN_OFFSET = 273.15
KELVIN_THRESHOLD = 200.0
MPS_TO_KNOTS = 1.943844
PASCAL_PER_BAR = 100_000.0
PASCAL_PER_HECTOPASCAL = 100.0
LITERS_PER_CUBIC_METER = 1000.0

# ---------------------------------------------------------------------------
# Primitive validation
# ---------------------------------------------------------------------------


def finite_number(value: object) -> float | None:
    """Return *value* as a float if it is a finite real number.

    Booleans are rejected even though ``bool`` subclasses ``int``.
    """
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return number


# ---------------------------------------------------------------------------
# Heuristic conversions
# ---------------------------------------------------------------------------


def ratio_to_percent(value: object) -> float | None:
    """Scale a ``[0, 1]`` ratio to percent; pass larger values through."""
    number = finite_number(value)
    if number is None:
        return None
    return number if number > 1 else number * 100


def kelvin_to_celsius(value: object) -> float | None:
    """Convert Kelvin to Celsius when the reading is above 200."""
    number = finite_number(value)
    if number is None:
        return None
    return number - KELVIN_OFFSET if number > KELVIN_THRESHOLD else number


def radians_to_degrees(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else math.degrees(number)


def mps_to_knots(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else number * MPS_TO_KNOTS


def millimeters_to_meters(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else number / 1000.0


def pascal_to_bar(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else number / PASCAL_PER_BAR


def pascal_to_hectopascal(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else number / PASCAL_PER_HECTOPASCAL


def cubic_meters_to_liters(value: object) -> float | None:
    number = finite_number(value)
    return None if number is None else number * LITERS_PER_CUBIC_METER


# ---------------------------------------------------------------------------
# Explicit unit conversions
# ---------------------------------------------------------------------------


def _same(number: float) -> float:
    return number


UNIT_CONVERSIONS: dict[tuple[str, str], Callable[[float], float]] = {
    ("ratio", "%"): lambda n: n * 100,
    ("%", "%"): _same,
    ("K", "C"): lambda n: n - KELVIN_OFFSET,
    ("C", "C"): _same,
    ("rad", "deg"): math.degrees,
    ("deg", "deg"): _same,
    ("m/s", "kn"): lambda n: n * MPS_TO_KNOTS,
    ("kn", "kn"): _same,
    ("mm", "m"): lambda n: n / 1000.0,
    ("m", "m"): _same,
    ("Pa", "bar"): lambda n: n / PASCAL_PER_BAR,
    ("bar", "bar"): _same,
    ("Pa", "hPa"): lambda n: n / PASCAL_PER_HECTOPASCAL,
    ("hPa", "hPa"): _same,
    ("m3", "L"): lambda n: n * LITERS_PER_CUBIC_METER,
    ("L", "L"): _same,
    ("V", "V"): _same,
    ("A", "A"): _same,
    ("W", "W"): _same,
    ("Ah", "Ah"): _same,
    ("s", "s"): _same,
}


def convert(value: object, source_unit: str, target_unit: str) -> float | None:
    """Convert *value* from *source_unit* to *target_unit*.

    Returns ``None`` for non-numeric input or an unknown unit pair.
    """
    number = finite_number(value)
    if number is None:
        return None
    conversion = UNIT_CONVERSIONS.get((source_unit, target_unit))
    if conversion is None:
        logger.debug("No conversion from %r to %r", source_unit, target_unit)
        return None
    return conversion(number)


# ---------------------------------------------------------------------------
# Normaliser builders
# ---------------------------------------------------------------------------


def quantity(
    heuristic: Callable[[object], float | None],
    target_unit: str,
    cast: Callable[[float], Value] = float,
) -> Normalizer:
    """Build a normaliser for a physical quantity.

    Without a unit tag the *heuristic* is applied, with one the exact
    :func:`convert` path is used.  *cast* shapes the final value, e.g.
    :func:`round` for integer bus properties.
    """

    def normalize(value: object, unit: str | None = None) -> Value | None:
        if unit is None:
            result = heuristic(value)
        else:
            result = convert(value, unit, target_unit)
        return None if result is None else cast(result)

    return normalize


def switch_state(value: object, unit: str | None = None) -> int | None:  # noqa: ARG001
    """Map booleans and 0/1 numbers to the integer switch state."""
    if isinstance(value, bool):
        return int(value)
    number = finite_number(value)
    if number in (0.0, 1.0):
        return int(number)
    return None


def text(value: object, unit: str | None = None) -> str | None:  # noqa: ARG001
    """Accept non-empty strings, stripped."""
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def integer(value: object, unit: str | None = None) -> int | None:  # noqa: ARG001
    """Accept finite numbers with no fractional part."""
    number = finite_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)
