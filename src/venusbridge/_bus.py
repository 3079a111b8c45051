"""Bus port and in-process adapters.

Provides BusPort (Protocol) and the adapters that need no bus library:

- MockBus — test double recording names, exports, calls and signals
- MockBusFactory — hands out MockBus instances and can simulate outages
- NullBus — silent no-op adapter

The real adapter lives in :mod:`venusbridge._dbus_next`.

Values cross the port as :class:`BusVariant` so nothing outside the
adapter depends on ``dbus_next.Variant``.  An invalid (unknown) value
is the Victron convention of an empty ``ai`` array.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from venusbridge._errors import BusConnectionError, ProtocolError

if TYPE_CHECKING:
    from venusbridge._settings import BusSettings

logger = logging.getLogger(__name__)

BUSITEM_INTERFACE = "com.victronenergy.BusItem"
SETTINGS_SERVICE = "com.victronenergy.settings"
SETTINGS_INTERFACE = "com.victronenergy.Settings"

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BusVariant:
    """A D-Bus variant: signature plus Python value."""

    signature: str
    value: Any

    @classmethod
    def invalid(cls) -> BusVariant:
        """The 'no value' marker understood by Venus OS clients."""
        return cls("ai", [])

    @property
    def is_invalid(self) -> bool:
        return self.signature == "ai" and self.value == []


@dataclass(frozen=True, slots=True)
class BusCall:
    """A recorded remote method call."""

    destination: str
    path: str
    interface: str
    member: str
    signature: str
    body: list[Any]


# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class BusItemHandler(Protocol):
    """Server side of one exported BusItem object path."""

    def get_value(self) -> BusVariant: ...

    def set_value(self, value: object) -> int: ...

    def get_text(self) -> str: ...


@runtime_checkable
class RootItemHandler(BusItemHandler, Protocol):
    """BusItem handler for ``/``, which can enumerate the whole tree."""

    def get_items(self) -> dict[str, dict[str, BusVariant]]: ...


@runtime_checkable
class BusPort(Protocol):
    """Port contract for one bus connection.

    ``export`` must raise :class:`ProtocolError` for an object path that
    is already exported; ``request_name`` must raise it when the name is
    owned by someone else.
    """

    async def request_name(self, name: str) -> None: ...

    def export(self, path: str, item: BusItemHandler) -> None: ...

    def unexport(self, path: str) -> None: ...

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str,
        body: list[Any],
    ) -> list[Any]: ...

    def emit_properties_changed(
        self,
        path: str,
        changes: dict[str, BusVariant],
    ) -> None: ...

    def emit_items_changed(
        self,
        changes: dict[str, dict[str, BusVariant]],
    ) -> None: ...

    async def close(self) -> None: ...


BusFactory = Callable[["BusSettings"], Awaitable[BusPort]]
"""Async callable opening a new bus connection from settings."""

# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullBus:
    """Silent no-op bus adapter.

    Every method logs at DEBUG.  Useful for running the bridge without
    a GX device, e.g. to check normalisation output in the logs.
    """

    async def request_name(self, name: str) -> None:
        logger.debug("NullBus.request_name(%s) — discarded", name)

    def export(self, path: str, item: BusItemHandler) -> None:  # noqa: ARG002
        logger.debug("NullBus.export(%s) — discarded", path)

    def unexport(self, path: str) -> None:
        logger.debug("NullBus.unexport(%s) — discarded", path)

    async def call(
        self,
        destination: str,
        path: str,  # noqa: ARG002
        interface: str,  # noqa: ARG002
        member: str,
        signature: str,  # noqa: ARG002
        body: list[Any],  # noqa: ARG002
    ) -> list[Any]:
        logger.debug("NullBus.call(%s.%s) — discarded", destination, member)
        return []

    def emit_properties_changed(
        self,
        path: str,
        changes: dict[str, BusVariant],  # noqa: ARG002
    ) -> None:
        logger.debug("NullBus.PropertiesChanged(%s) — discarded", path)

    def emit_items_changed(
        self,
        changes: dict[str, dict[str, BusVariant]],
    ) -> None:
        logger.debug("NullBus.ItemsChanged(%d paths) — discarded", len(changes))

    async def close(self) -> None:
        logger.debug("NullBus.close() — discarded")


async def null_bus_factory(settings: BusSettings) -> BusPort:  # noqa: ARG001
    """BusFactory that always returns a fresh :class:`NullBus`."""
    return NullBus()


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------

type CallReply = list[Any] | BaseException | Callable[[BusCall], list[Any]]


@dataclass
class MockBus:
    """In-memory test double that records bus interactions.

    ``replies`` maps a method member name (``"AddSettings"``) to the
    reply body, an exception to raise, or a callable computing the reply
    from the :class:`BusCall`.  Every ``call`` yields to the event loop
    at least once, and waits on ``call_gate`` when one is set, so tests
    can hold a registration in flight.
    """

    names: list[str] = field(default_factory=list)
    exports: dict[str, BusItemHandler] = field(default_factory=dict)
    export_calls: list[str] = field(default_factory=list)
    calls: list[BusCall] = field(default_factory=list)
    signals: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    replies: dict[str, CallReply] = field(default_factory=dict)
    taken_names: set[str] = field(default_factory=set)
    call_gate: asyncio.Event | None = None
    closed: bool = False

    # -- BusPort methods ---------------------------------------------------

    async def request_name(self, name: str) -> None:
        """Record a name request, failing for names in ``taken_names``."""
        await asyncio.sleep(0)
        if name in self.taken_names:
            msg = f"Bus name {name} is already owned"
            raise ProtocolError(msg)
        self.names.append(name)

    def export(self, path: str, item: BusItemHandler) -> None:
        """Record an export; a second export of *path* is a protocol error."""
        if path in self.exports:
            msg = f"Object path {path} is already exported"
            raise ProtocolError(msg)
        self.exports[path] = item
        self.export_calls.append(path)

    def unexport(self, path: str) -> None:
        self.exports.pop(path, None)

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str,
        body: list[Any],
    ) -> list[Any]:
        """Record a remote call and answer it from ``replies``."""
        recorded = BusCall(destination, path, interface, member, signature, body)
        self.calls.append(recorded)
        await asyncio.sleep(0)
        if self.call_gate is not None:
            await self.call_gate.wait()
        reply = self.replies.get(member, [])
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(recorded)
        return reply

    def emit_properties_changed(
        self,
        path: str,
        changes: dict[str, BusVariant],
    ) -> None:
        self.signals.append(("PropertiesChanged", path, dict(changes)))

    def emit_items_changed(
        self,
        changes: dict[str, dict[str, BusVariant]],
    ) -> None:
        self.signals.append(("ItemsChanged", "/", dict(changes)))

    async def close(self) -> None:
        self.closed = True
        self.exports.clear()

    # -- Test helpers -------------------------------------------------------

    def remote_get(self, path: str) -> BusVariant:
        """Simulate a client calling GetValue on *path*."""
        return self.exports[path].get_value()

    def remote_set(self, path: str, value: object) -> int:
        """Simulate a client calling SetValue on *path*."""
        return self.exports[path].set_value(value)

    def remote_text(self, path: str) -> str:
        """Simulate a client calling GetText on *path*."""
        return self.exports[path].get_text()

    def remote_items(self) -> dict[str, dict[str, BusVariant]]:
        """Simulate a client calling GetItems on the root object."""
        root = self.exports["/"]
        if not isinstance(root, RootItemHandler):
            msg = "Root object does not implement GetItems"
            raise TypeError(msg)
        return root.get_items()

    def signals_for(self, path: str) -> list[dict[str, Any]]:
        """Return PropertiesChanged payloads emitted for *path*."""
        return [
            payload
            for kind, p, payload in self.signals
            if kind == "PropertiesChanged" and p == path
        ]

    def calls_to(self, member: str) -> list[BusCall]:
        """Return recorded calls of *member*."""
        return [c for c in self.calls if c.member == member]

    @property
    def export_count(self) -> int:
        """Number of export registrations performed."""
        return len(self.export_calls)

    def reset(self) -> None:
        """Clear all recorded data."""
        self.names.clear()
        self.exports.clear()
        self.export_calls.clear()
        self.calls.clear()
        self.signals.clear()


@dataclass
class MockBusFactory:
    """BusFactory test double handing out :class:`MockBus` instances.

    Queue failures with :meth:`fail_next`; each queued exception makes
    one connection attempt raise :class:`BusConnectionError`.
    """

    buses: list[MockBus] = field(default_factory=list)
    replies: dict[str, CallReply] = field(default_factory=dict)
    attempts: int = 0
    _failures: list[BaseException] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    async def __call__(self, settings: BusSettings) -> MockBus:
        self.attempts += 1
        await asyncio.sleep(0)
        if self._failures:
            cause = self._failures.pop(0)
            msg = f"Cannot connect to Venus OS at {settings.display_target}"
            raise BusConnectionError(msg) from cause
        bus = MockBus(replies=dict(self.replies))
        self.buses.append(bus)
        return bus

    def fail_next(self, error: BaseException | None = None, *, times: int = 1) -> None:
        """Make the next *times* connection attempts fail."""
        for _ in range(times):
            self._failures.append(error or ConnectionRefusedError("ECONNREFUSED"))

    @property
    def connect_count(self) -> int:
        """Number of successful connections."""
        return len(self.buses)

    def exported_paths(self) -> set[str]:
        """Union of object paths currently exported on any bus."""
        return {path for bus in self.buses for path in bus.exports}
