"""Persistent instance numbers from the Venus OS settings service.

Venus OS keeps a ``ClassAndVrmInstance`` setting per device so that a
device keeps its VRM instance across reboots.  The registrar proposes
``"<serviceType>:<index>"`` through ``AddSettings`` and reads back
whatever ``localsettings`` decided.  Every failure degrades to the
proposed index; the device still works, it just has no persistent
instance number.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from typing import Any

from venusbridge._bus import SETTINGS_INTERFACE, SETTINGS_SERVICE, BusPort, BusVariant
from venusbridge._errors import RegistrationError

logger = logging.getLogger(__name__)

_INSTANCE_SUFFIX = re.compile(r":(\d+)$")


def settings_entries(
    service_type: str,
    settings_key: str,
    proposed_index: int,
    display_name: str,
) -> list[dict[str, BusVariant]]:
    """Build the ``aa{sv}`` payload of an ``AddSettings`` call."""
    base = f"/Settings/Devices/{settings_key}"
    return [
        {
            "path": BusVariant("s", f"{base}/ClassAndVrmInstance"),
            "default": BusVariant("s", f"{service_type}:{proposed_index}"),
            "type": BusVariant("s", "s"),
            "description": BusVariant("s", "Class and VRM instance"),
        },
        {
            "path": BusVariant("s", f"{base}/CustomName"),
            "default": BusVariant("s", display_name),
            "type": BusVariant("s", "s"),
            "description": BusVariant("s", "Custom name"),
        },
    ]


def parse_assigned_instance(reply: list[Any]) -> int:
    """Extract the instance number from an ``AddSettings`` reply.

    The reply body is one array of per-setting dicts carrying at least
    ``path`` and ``value``.  Entries may also arrive as lists of
    ``(key, value)`` pairs.

    Raises:
        RegistrationError: If no ``ClassAndVrmInstance`` entry with a
            ``class:instance`` value is present.
    """
    entries = reply[0] if reply and isinstance(reply[0], list) else reply
    for entry in entries:
        fields = _as_mapping(entry)
        if fields is None:
            continue
        path = fields.get("path")
        value = fields.get("value")
        if not isinstance(path, str) or not path.endswith("/ClassAndVrmInstance"):
            continue
        if fields.get("error", 0) not in (0, None):
            msg = f"Settings service reported error {fields['error']} for {path}"
            raise RegistrationError(msg)
        match = _INSTANCE_SUFFIX.search(value) if isinstance(value, str) else None
        if match is None:
            msg = f"Malformed ClassAndVrmInstance value: {value!r}"
            raise RegistrationError(msg)
        return int(match.group(1))
    msg = "AddSettings reply carries no ClassAndVrmInstance entry"
    raise RegistrationError(msg)


def _as_mapping(entry: object) -> Mapping[str, Any] | None:
    if isinstance(entry, Mapping):
        return entry
    if isinstance(entry, list | tuple):
        try:
            return dict(entry)
        except (TypeError, ValueError):
            return None
    return None


class SettingsRegistrar:
    """Requests instance numbers over one bus connection.

    Args:
        bus: Connection used for the ``AddSettings`` call.
        timeout: Seconds to wait for the settings service.
    """

    def __init__(self, bus: BusPort, *, timeout: float = 5.0) -> None:
        self._bus = bus
        self._timeout = timeout

    async def try_register(
        self,
        service_type: str,
        proposed_index: int,
        display_name: str,
        *,
        settings_key: str,
    ) -> int | None:
        """Return the assigned instance number, or ``None`` on any failure."""
        entries = settings_entries(service_type, settings_key, proposed_index, display_name)
        try:
            reply = await asyncio.wait_for(
                self._bus.call(
                    SETTINGS_SERVICE,
                    "/",
                    SETTINGS_INTERFACE,
                    "AddSettings",
                    "aa{sv}",
                    [entries],
                ),
                timeout=self._timeout,
            )
            assigned = parse_assigned_instance(reply)
        except TimeoutError:
            logger.warning(
                "Settings registration for %s timed out after %.1fs, using index %d",
                settings_key,
                self._timeout,
                proposed_index,
            )
            return None
        except RegistrationError as exc:
            logger.warning(
                "Settings registration for %s failed: %s, using index %d",
                settings_key,
                exc,
                proposed_index,
            )
            return None
        except Exception as exc:
            logger.warning(
                "Settings call for %s failed: %s, using index %d",
                settings_key,
                exc,
                proposed_index,
            )
            return None

        logger.info("Settings service assigned %s:%d to %s", service_type, assigned, settings_key)
        return assigned

    async def register_instance(
        self,
        service_type: str,
        proposed_index: int,
        display_name: str,
        *,
        settings_key: str,
    ) -> int:
        """Return the assigned instance number, falling back to *proposed_index*."""
        assigned = await self.try_register(
            service_type,
            proposed_index,
            display_name,
            settings_key=settings_key,
        )
        return proposed_index if assigned is None else assigned
