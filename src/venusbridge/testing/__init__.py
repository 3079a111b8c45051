"""Public test-support utilities for venusbridge.

Re-exports test doubles and factories so that test suites can import
everything from a single ``venusbridge.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`BridgeHarness` — Bridge wired to pre-configured test doubles.
- :class:`MockBus` / :class:`MockBusFactory` — in-memory bus doubles.
- :class:`NullBus` — silent no-op bus adapter.
- :class:`FakeClock` — deterministic clock for timing tests.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
"""

from venusbridge._bus import MockBus, MockBusFactory, NullBus
from venusbridge.testing._clock import FakeClock
from venusbridge.testing._harness import BridgeHarness
from venusbridge.testing._settings import make_settings

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "MockBus",
    "MockBusFactory",
    "NullBus",
    "make_settings",
]
