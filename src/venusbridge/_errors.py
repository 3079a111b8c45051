"""Exception hierarchy and structured error events.

Failure classes of the bridge:

- :class:`InvalidValueError` — malformed telemetry.  Raised by the
  normalizers but always caught inside ``apply_update``; the update is
  dropped and logged at DEBUG.
- :class:`BusConnectionError` — the bus could not be reached.  Raised
  once per failed attempt; attempts inside the cool-down window are
  dropped silently.
- :class:`RegistrationError` — the settings service call failed or
  returned garbage.  Logged, and the device keeps its hash index.
- :class:`ProtocolError` — name registration or export failed.  Fatal
  for that one device service.

Errors that reach the bridge are turned into :class:`ErrorEvent`
objects and fanned out by :class:`ErrorReporter`::

    {
        "error_type": "connection",
        "message": "Cannot connect to Venus OS at venus.local:78",
        "device_class": "battery",
        "base_path": "electrical.batteries.house",
        "timestamp": "2026-02-14T12:34:56+00:00"
    }
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class InvalidValueError(BridgeError, ValueError):
    """A telemetry value is missing, non-finite or of the wrong type."""


class BusConnectionError(BridgeError, ConnectionError):
    """The D-Bus endpoint could not be reached."""


class NotConnectedError(BridgeError):
    """An update arrived while the connection is throttled."""


class RegistrationError(BridgeError):
    """The settings service rejected or garbled an instance request."""


class ProtocolError(BridgeError):
    """A bus name or object path could not be claimed."""


def describe_connection_failure(target: str, error: BaseException) -> str:
    """Reword low-level socket errors into an operator-facing message."""
    text = str(error)
    if isinstance(error, ConnectionRefusedError) or "ECONNREFUSED" in text:
        return (
            f"Cannot connect to Venus OS at {target}. "
            "Is 'D-Bus over TCP' enabled on the GX device?"
        )
    if "Name or service not known" in text or "ENOTFOUND" in text:
        return f"Venus OS host not found: {target}"
    if isinstance(error, TimeoutError) or "ETIMEDOUT" in text:
        return f"Connection to Venus OS at {target} timed out"
    return f"Cannot connect to Venus OS at {target}: {text or type(error).__name__}"


ERROR_TYPES: dict[type[Exception], str] = {
    InvalidValueError: "validation",
    BusConnectionError: "connection",
    NotConnectedError: "not_connected",
    RegistrationError: "registration",
    ProtocolError: "protocol",
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    """Immutable structured error event."""

    error_type: str
    message: str
    device_class: str | None
    base_path: str | None
    timestamp: str

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


ErrorListener = Callable[[ErrorEvent], None]


def build_error_event(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device_class: str | None = None,
    base_path: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorEvent:
    """Convert an exception into an :class:`ErrorEvent`.

    The type lookup walks the exception's MRO, so subclasses of a
    mapped class share its ``error_type``.  Unmapped exceptions are
    reported as ``"error"``.
    """
    resolved_map = ERROR_TYPES if error_type_map is None else error_type_map
    error_type = next(
        (resolved_map[cls] for cls in type(error).__mro__ if cls in resolved_map),
        "error",
    )
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorEvent(
        error_type=error_type,
        message=str(error),
        device_class=device_class,
        base_path=base_path,
        timestamp=now.isoformat(),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorReporter:
    """Logs error events and fans them out to listeners.

    Fire-and-forget: a failing listener is logged and skipped, it never
    breaks the update loop that reported the error.
    """

    error_type_map: dict[type[Exception], str] = field(
        default_factory=lambda: dict(ERROR_TYPES),
    )
    clock: Callable[[], datetime] | None = field(default=None, repr=False)
    _listeners: list[ErrorListener] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    def subscribe(self, listener: ErrorListener) -> None:
        """Register a listener for future error events."""
        self._listeners.append(listener)

    def report(
        self,
        error: Exception,
        *,
        device_class: str | None = None,
        base_path: str | None = None,
    ) -> ErrorEvent | None:
        """Build, log and dispatch an event for *error*.

        Returns ``None`` when the event could not even be built.
        """
        try:
            event = build_error_event(
                error,
                error_type_map=self.error_type_map,
                device_class=device_class,
                base_path=base_path,
                clock=self.clock,
            )
        except Exception:
            logger.exception("Failed to build error event for %r", error)
            return None

        logger.warning(
            "Bridge error: %s (type=%s, class=%s)",
            event.message,
            event.error_type,
            device_class,
            extra={"device_class": device_class, "device": base_path},
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Error listener failed for %s", event.error_type)
        return event
