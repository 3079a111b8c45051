"""Device instance registry.

Maps a base path to exactly one :class:`DeviceInstance` and its
service object for the lifetime of the process.  Creating the service
suspends (connection, settings call, name request), so creation is
guarded by a per-base-path :class:`asyncio.Lock` taken before the
first ``await``: a second caller for the same base path waits for the
first to finish and then gets the same instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

INDEX_MODULUS = 1000


def stable_index(base_path: str) -> int:
    """Deterministic device index in ``[0, 1000)`` for *base_path*.

    A 32-bit ``h * 31 + c`` string hash over UTF-16 code units, so
    indices match installations that were set up by earlier releases
    of the bridge and stay the same across restarts.
    """
    encoded = base_path.encode("utf-16-le")
    value = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 1 << 32
    return abs(value) % INDEX_MODULUS


@dataclass
class DeviceInstance:
    """Identity of one virtual device."""

    index: int
    name: str
    base_path: str
    assigned_instance_id: int | None = None

    @property
    def device_instance(self) -> int:
        """Instance number to publish: the assigned one when known."""
        if self.assigned_instance_id is not None:
            return self.assigned_instance_id
        return self.index


class Disposable(Protocol):
    async def dispose(self) -> None: ...


class DeviceRegistry[S: Disposable]:
    """Owns the instance map and the service objects of one device class.

    Args:
        create_service: Async factory building (and starting) the
            service for a freshly created instance.  If it raises,
            nothing is stored and the error propagates to the caller.
    """

    def __init__(
        self,
        create_service: Callable[[DeviceInstance], Awaitable[S]],
    ) -> None:
        self._create_service = create_service
        self._instances: dict[str, DeviceInstance] = {}
        self._services: dict[str, S] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}
        self._names: dict[str, str] = {}

    # -- lookup ----------------------------------------------------------

    def get(self, base_path: str) -> DeviceInstance | None:
        return self._instances.get(base_path)

    def service_for(self, base_path: str) -> S:
        """Return the service of a ready device.

        Raises:
            KeyError: If no device exists for *base_path*.
        """
        return self._services[base_path]

    def __len__(self) -> int:
        return len(self._instances)

    def __iter__(self) -> Iterator[DeviceInstance]:
        return iter(list(self._instances.values()))

    def is_creating(self, base_path: str) -> bool:
        """Whether a creation for *base_path* is currently in flight."""
        lock = self._locks.get(base_path)
        return lock is not None and lock.locked()

    # -- creation --------------------------------------------------------

    async def ensure_instance(self, base_path: str, name_hint: str) -> DeviceInstance:
        """Return the instance for *base_path*, creating it on first use."""
        existing = self._instances.get(base_path)
        if existing is not None:
            return existing

        lock = self._locks.setdefault(base_path, asyncio.Lock())
        self._waiting[base_path] = self._waiting.get(base_path, 0) + 1
        try:
            async with lock:
                existing = self._instances.get(base_path)
                if existing is not None:
                    return existing
                return await self._create(base_path, name_hint)
        finally:
            self._waiting[base_path] -= 1
            if not self._waiting[base_path]:
                del self._waiting[base_path]
                del self._locks[base_path]

    async def _create(self, base_path: str, name_hint: str) -> DeviceInstance:
        instance = DeviceInstance(
            index=stable_index(base_path),
            name=self._disambiguate(base_path, name_hint),
            base_path=base_path,
        )
        logger.debug(
            "Creating device %s (index=%d)",
            instance.name,
            instance.index,
            extra={"device": base_path},
        )
        try:
            service = await self._create_service(instance)
        except BaseException:
            self._names.pop(base_path, None)
            raise
        self._instances[base_path] = instance
        self._services[base_path] = service
        logger.info(
            "Device %s ready (index=%d, instance=%d)",
            instance.name,
            instance.index,
            instance.device_instance,
            extra={"device": base_path},
        )
        return instance

    def _disambiguate(self, base_path: str, name_hint: str) -> str:
        """First device with a name keeps it, later ones get `` 2``, `` 3``...

        Names are claimed per base path; a failed creation gives its
        claim back so the next device can take the name.
        """
        claimed = self._names.get(base_path)
        if claimed is not None:
            return claimed
        taken = set(self._names.values())
        name, number = name_hint, 1
        while name in taken:
            number += 1
            name = f"{name_hint} {number}"
        self._names[base_path] = name
        return name

    # -- teardown --------------------------------------------------------

    async def dispose(self) -> None:
        """Dispose every service and forget all instances."""
        services = list(self._services.items())
        self._services.clear()
        self._instances.clear()
        self._names.clear()
        for base_path, service in services:
            try:
                await service.dispose()
            except Exception:
                logger.exception(
                    "Failed to dispose service for %s",
                    base_path,
                    extra={"device": base_path},
                )
