"""Telemetry update sources.

A source is any async iterable of :class:`Update`.  Two are provided:

- :class:`JsonLinesSource` — reads a text stream (stdin by default),
  one JSON document per line.
- :class:`QueueSource` — fed in-process with :meth:`QueueSource.put`,
  used when embedding the bridge and in tests.

Each JSON line is either a flat update::

    {"path": "electrical.batteries.house.voltage", "value": 12.8}
    {"path": "environment.inside.temperature", "value": 21.5, "unit": "C"}

or a Signal K delta::

    {"context": "vessels.self",
     "updates": [{"values": [{"path": "tanks.fuel.0.currentLevel", "value": 0.5}]}]}
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, TextIO, runtime_checkable

from venusbridge._errors import InvalidValueError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Update:
    """One telemetry value for one path."""

    path: str
    value: object
    unit: str | None = None


@runtime_checkable
class UpdateSource(Protocol):
    """Async iterable of telemetry updates; exhaustion ends the bridge run."""

    def __aiter__(self) -> AsyncIterator[Update]: ...


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _update_from(entry: object) -> Update:
    if not isinstance(entry, dict):
        msg = f"Update must be an object, got {type(entry).__name__}"
        raise InvalidValueError(msg)
    path = entry.get("path")
    if not isinstance(path, str) or not path:
        msg = f"Update has no path: {entry!r}"
        raise InvalidValueError(msg)
    unit = entry.get("unit")
    return Update(path, entry.get("value"), unit if isinstance(unit, str) else None)


def parse_line(line: str) -> list[Update]:
    """Decode one JSON line into updates.

    Raises:
        InvalidValueError: If the line is not a flat update or a delta.
    """
    try:
        document = json.loads(line)
    except ValueError as exc:
        msg = f"Invalid JSON: {exc}"
        raise InvalidValueError(msg) from exc

    if isinstance(document, dict) and "updates" in document:
        updates = document["updates"]
        if not isinstance(updates, list):
            msg = "Delta 'updates' must be a list"
            raise InvalidValueError(msg)
        result: list[Update] = []
        for block in updates:
            values = block.get("values") if isinstance(block, dict) else None
            if not isinstance(values, list):
                continue
            result.extend(_update_from(entry) for entry in values)
        return result
    return [_update_from(document)]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class JsonLinesSource:
    """Reads JSON-lines updates from a text stream until EOF.

    The stream is read on a daemon thread so a blocked ``readline``
    never holds up interpreter shutdown.  Malformed lines are logged
    and skipped.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdin

    async def __aiter__(self) -> AsyncIterator[Update]:
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[str | None] = asyncio.Queue()

        def pump() -> None:
            try:
                for line in self._stream:
                    loop.call_soon_threadsafe(lines.put_nowait, line)
            except (OSError, ValueError) as exc:
                logger.error("Reading updates failed: %s", exc)
            except RuntimeError:
                # event loop closed while we were still reading
                return
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(lines.put_nowait, None)

        threading.Thread(target=pump, name="venusbridge-stdin", daemon=True).start()

        while (line := await lines.get()) is not None:
            if not line.strip():
                continue
            try:
                updates = parse_line(line)
            except InvalidValueError as exc:
                logger.warning("Skipping input line: %s", exc)
                continue
            for update in updates:
                yield update


class QueueSource:
    """In-process source; iteration ends after :meth:`close`."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Update | None] = asyncio.Queue()

    def put(self, path: str, value: object, unit: str | None = None) -> None:
        self._queue.put_nowait(Update(path, value, unit))

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def join(self) -> None:
        """Wait until every queued update has been consumed."""
        await self._queue.join()

    async def __aiter__(self) -> AsyncIterator[Update]:
        while True:
            update = await self._queue.get()
            try:
                if update is None:
                    return
                yield update
            finally:
                self._queue.task_done()
