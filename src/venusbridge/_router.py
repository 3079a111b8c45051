"""Telemetry path routing.

Classifies telemetry paths by device-class prefix and dispatches each
update to the handler registered for that class::

    electrical.batteries.<id>.<suffix>  → battery
    tanks.<type>.<id>.<suffix>          → tank
    electrical.switches.<id>.<suffix>   → switch
    environment.<location>.<suffix>     → environment

Paths matching no registered prefix are ignored.  The router is an
internal component; the bridge wires one handler per enabled class.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

type UpdateHandler = Callable[[str, object, str | None], Awaitable[bool]]
"""Receives (path, value, unit) and reports whether the update was applied."""


class PathRouter:
    """Routes telemetry updates to per-device-class handlers.

    The longest matching prefix wins, so a more specific class can be
    registered below a broader one.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[str, UpdateHandler]] = {}

    def register(self, key: str, prefix: str, handler: UpdateHandler) -> None:
        """Register *handler* for paths starting with *prefix*.

        Raises:
            ValueError: If *key* or *prefix* is already registered.
        """
        if key in self._handlers:
            msg = f"Handler already registered for device class '{key}'"
            raise ValueError(msg)
        if any(p == prefix for p, _ in self._handlers.values()):
            msg = f"Prefix '{prefix}' is already routed"
            raise ValueError(msg)
        self._handlers[key] = (prefix, handler)

    def classify(self, path: str) -> str | None:
        """Return the device-class key for *path*, or ``None``."""
        best: str | None = None
        best_length = -1
        for key, (prefix, _) in self._handlers.items():
            if path.startswith(prefix) and len(prefix) > best_length:
                best, best_length = key, len(prefix)
        return best

    async def route(self, path: str, value: object, unit: str | None = None) -> bool:
        """Dispatch one update; return whether a handler applied it."""
        key = self.classify(path)
        if key is None:
            logger.debug("No device class for %s", path)
            return False
        _, handler = self._handlers[key]
        return await handler(path, value, unit)

    @property
    def keys(self) -> list[str]:
        """Registered device-class keys, in registration order."""
        return list(self._handlers)
