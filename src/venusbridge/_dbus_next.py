"""Production bus adapter backed by *dbus-next*.

``dbus_next`` is imported lazily so the mock and null adapters work
without the dependency installed.

This module deliberately does not use postponed annotations:
dbus-next reads the D-Bus signatures (``"v"``, ``"a{sv}"``) straight
from the method annotations, so they must stay plain strings.

Every exported object path gets its own ``com.victronenergy.BusItem``
interface instance wrapping a :class:`~venusbridge._bus.BusItemHandler`.
The root path additionally answers ``GetItems`` and emits
``ItemsChanged``.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from venusbridge._bus import (
    BUSITEM_INTERFACE,
    BusItemHandler,
    BusPort,
    BusVariant,
    RootItemHandler,
)
from venusbridge._errors import (
    BusConnectionError,
    ProtocolError,
    describe_connection_failure,
)

if TYPE_CHECKING:
    from venusbridge._settings import BusSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Variant conversion
# ---------------------------------------------------------------------------


def _to_dbus(value: Any) -> Any:
    """Replace :class:`BusVariant` values by ``dbus_next.Variant``, recursively."""
    from dbus_next import Variant

    if isinstance(value, BusVariant):
        return Variant(value.signature, _to_dbus(value.value))
    if isinstance(value, dict):
        return {key: _to_dbus(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_to_dbus(item) for item in value]
    return value


def _from_dbus(value: Any) -> Any:
    """Unwrap ``dbus_next.Variant`` values into plain Python, recursively."""
    from dbus_next import Variant

    if isinstance(value, Variant):
        return _from_dbus(value.value)
    if isinstance(value, dict):
        return {key: _from_dbus(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_from_dbus(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Service interfaces
# ---------------------------------------------------------------------------


@functools.cache
def _interface_classes() -> tuple[type, type]:
    """Build the BusItem interface classes once dbus_next is importable."""
    from dbus_next.service import ServiceInterface, method, signal

    class BusItemInterface(ServiceInterface):
        def __init__(self, handler: BusItemHandler) -> None:
            super().__init__(BUSITEM_INTERFACE)
            self.handler = handler

        @method()
        def GetValue(self) -> "v":
            return _to_dbus(self.handler.get_value())

        @method()
        def SetValue(self, value: "v") -> "i":
            return self.handler.set_value(_from_dbus(value))

        @method()
        def GetText(self) -> "s":
            return self.handler.get_text()

        @signal()
        def PropertiesChanged(self, changes) -> "a{sv}":
            return changes

    class RootItemInterface(BusItemInterface):
        @method()
        def GetItems(self) -> "a{sa{sv}}":
            return _to_dbus(self.handler.get_items())

        @signal()
        def ItemsChanged(self, changes) -> "a{sa{sv}}":
            return changes

    return BusItemInterface, RootItemInterface


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


@dataclass
class DbusNextBus:
    """:class:`~venusbridge._bus.BusPort` over one ``dbus_next`` connection.

    Owns the ``MessageBus``; :meth:`close` disconnects it and is
    idempotent.
    """

    bus: Any
    _interfaces: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    async def request_name(self, name: str) -> None:
        from dbus_next.constants import NameFlag, RequestNameReply

        reply = await self.bus.request_name(name, NameFlag.DO_NOT_QUEUE)
        if reply not in (RequestNameReply.PRIMARY_OWNER, RequestNameReply.ALREADY_OWNER):
            msg = f"Bus name {name} is already owned ({reply.name.lower()})"
            raise ProtocolError(msg)
        logger.debug("Acquired bus name %s", name)

    def export(self, path: str, item: BusItemHandler) -> None:
        if path in self._interfaces:
            msg = f"Object path {path} is already exported"
            raise ProtocolError(msg)
        item_class, root_class = _interface_classes()
        interface_class = root_class if isinstance(item, RootItemHandler) else item_class
        interface = interface_class(item)
        try:
            self.bus.export(path, interface)
        except ValueError as exc:
            msg = f"Cannot export {path}: {exc}"
            raise ProtocolError(msg) from exc
        self._interfaces[path] = interface

    def unexport(self, path: str) -> None:
        interface = self._interfaces.pop(path, None)
        if interface is not None and not self._closed:
            self.bus.unexport(path, interface)

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        signature: str,
        body: list[Any],
    ) -> list[Any]:
        from dbus_next import Message
        from dbus_next.constants import MessageType

        reply = await self.bus.call(
            Message(
                destination=destination,
                path=path,
                interface=interface,
                member=member,
                signature=signature,
                body=_to_dbus(body),
            ),
        )
        if reply is None:
            return []
        if reply.message_type == MessageType.ERROR:
            detail = reply.body[0] if reply.body else ""
            msg = f"{destination} {member} failed: {reply.error_name} {detail}".rstrip()
            raise ProtocolError(msg)
        return _from_dbus(reply.body)

    def emit_properties_changed(
        self,
        path: str,
        changes: dict[str, BusVariant],
    ) -> None:
        interface = self._interfaces.get(path)
        if interface is None or self._closed:
            logger.debug("PropertiesChanged for unexported %s skipped", path)
            return
        interface.PropertiesChanged(_to_dbus(changes))

    def emit_items_changed(
        self,
        changes: dict[str, dict[str, BusVariant]],
    ) -> None:
        root = self._interfaces.get("/")
        if root is None or self._closed:
            return
        root.ItemsChanged(_to_dbus(changes))

    async def close(self) -> None:
        """Disconnect from the bus.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._interfaces.clear()
        self.bus.disconnect()
        try:
            await asyncio.wait_for(self.bus.wait_for_disconnect(), timeout=2.0)
        except TimeoutError:
            logger.debug("Bus did not confirm disconnect in time")
        except Exception:
            # wait_for_disconnect re-raises the error that ended the connection
            logger.debug("Bus disconnected with error", exc_info=True)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def bus_address_for(settings: "BusSettings") -> str | None:
    """D-Bus address for *settings*; ``None`` selects the local system bus."""
    if settings.address:
        return settings.address
    if settings.system_bus:
        return None
    return f"tcp:host={settings.host},port={settings.port}"


def require_dbus_next() -> None:
    """Fail early when the real adapter cannot work.

    Raises:
        RuntimeError: If dbus-next is not installed.
    """
    try:
        import dbus_next  # noqa: F401
    except ImportError as exc:
        msg = (
            "dbus-next is required for the D-Bus adapter. "
            "Install it with: pip install dbus-next"
        )
        raise RuntimeError(msg) from exc


async def connect_dbus_next(settings: "BusSettings") -> BusPort:
    """:data:`~venusbridge._bus.BusFactory` opening a real D-Bus connection.

    TCP connections authenticate anonymously, which is what Venus OS
    accepts for "D-Bus over TCP".

    Raises:
        RuntimeError: If dbus-next is not installed.
        BusConnectionError: If the bus rejects the connection.
        OSError: If the endpoint cannot be reached.
    """
    require_dbus_next()
    from dbus_next.aio import MessageBus
    from dbus_next.auth import AuthAnnonymous
    from dbus_next.constants import BusType

    address = bus_address_for(settings)
    if address is None:
        message_bus = MessageBus(bus_type=BusType.SYSTEM)
    elif address.startswith("tcp:"):
        message_bus = MessageBus(bus_address=address, auth=AuthAnnonymous())
    else:
        message_bus = MessageBus(bus_address=address)

    try:
        connected = await asyncio.wait_for(
            message_bus.connect(),
            timeout=settings.call_timeout,
        )
    except (OSError, TimeoutError):
        raise
    except Exception as exc:
        msg = describe_connection_failure(settings.display_target, exc)
        raise BusConnectionError(msg) from exc
    logger.debug("Opened D-Bus connection to %s", settings.display_target)
    return DbusNextBus(connected)
