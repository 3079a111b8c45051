"""Monotonic clock port and system adapter.

The energy accumulator integrates power over elapsed time and the
connection controller throttles reconnect attempts; both only need
*differences* between two readings, so the clock is monotonic and
immune to NTP steps on the GX device.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Source of monotonic time in seconds.

    Tests inject :class:`venusbridge.testing.FakeClock` to simulate an
    hour of battery discharge without waiting for it.
    """

    def now(self) -> float:
        """Return seconds from an arbitrary epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        return time.monotonic()
