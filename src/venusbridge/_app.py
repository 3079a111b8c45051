"""Bridge orchestrator: telemetry in, Venus OS virtual devices out.

The :class:`Bridge` class is the composition root.  It builds one
:class:`~venusbridge._client.DeviceClassClient` per enabled device
class, routes every incoming :class:`~venusbridge._source.Update` to
the right client and runs the full lifecycle via :meth:`Bridge.run`.

Typical usage::

    import venusbridge

    bridge = venusbridge.Bridge(version="1.0.0")
    bridge.on_value_changed(lambda path, value: print(path, value))
    bridge.run()

Lifecycle phases:

1. Bootstrap: settings, logging, bus factory, history restore.
2. Wire: clients, router, listeners.
3. Run: consume updates until the source ends or a signal arrives,
   saving battery history periodically.  Updates for one base path
   are applied in order; different base paths proceed independently.
4. Tear down: cancel in-flight updates, final history save, dispose
   every device service, close every bus connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Mapping
from functools import partial
from types import MappingProxyType

from venusbridge._bus import BusFactory
from venusbridge._client import DataUpdatedListener, DeviceClassClient, ValueChangedListener
from venusbridge._clock import ClockPort, SystemClock
from venusbridge._devices import DEVICE_CLASSES, DeviceClass
from venusbridge._dispatch import LaneDispatcher
from venusbridge._energy import EnergyAccumulator, TelemetryCache
from venusbridge._errors import BridgeError, ErrorListener, ErrorReporter
from venusbridge._history import HistoryStore
from venusbridge._logging import configure_logging
from venusbridge._router import PathRouter
from venusbridge._settings import Settings
from venusbridge._source import JsonLinesSource, Update, UpdateSource

logger = logging.getLogger(__name__)


class Bridge:
    """Signal K to Venus OS D-Bus bridge.

    Args:
        name: Process name, published as ``/Mgmt/ProcessName``.
        version: Process version, published as ``/Mgmt/ProcessVersion``.
        description: Short description for CLI help text.
        settings_class: Settings subclass instantiated at startup.
        device_classes: Available device-class descriptors by key.
    """

    def __init__(
        self,
        name: str = "venusbridge",
        version: str = "0.0.0",
        *,
        description: str = "Signal K to Venus OS D-Bus bridge",
        settings_class: type[Settings] = Settings,
        device_classes: Mapping[str, DeviceClass] = DEVICE_CLASSES,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._device_classes = dict(device_classes)
        self._value_listeners: list[ValueChangedListener] = []
        self._data_listeners: list[DataUpdatedListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._clients: dict[str, DeviceClassClient] = {}
        self._accumulator: EnergyAccumulator | None = None
        self._router: PathRouter | None = None
        self._dispatcher = LaneDispatcher()

    # --- Introspection ------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    @property
    def description(self) -> str:
        return self._description

    @property
    def settings_class(self) -> type[Settings]:
        return self._settings_class

    @property
    def clients(self) -> Mapping[str, DeviceClassClient]:
        """Clients of the current (or last) run, by device-class key."""
        return MappingProxyType(self._clients)

    @property
    def accumulator(self) -> EnergyAccumulator | None:
        return self._accumulator

    # --- Listeners ----------------------------------------------------------

    def on_value_changed(self, listener: ValueChangedListener) -> None:
        """Receive (telemetry path, value) for every accepted remote write."""
        self._value_listeners.append(listener)

    def on_data_updated(self, listener: DataUpdatedListener) -> None:
        """Receive (category, text) for every applied update."""
        self._data_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        """Receive an :class:`~venusbridge._errors.ErrorEvent` per reported error."""
        self._error_listeners.append(listener)

    # --- Lifecycle ----------------------------------------------------------

    def run(
        self,
        *,
        settings: Settings | None = None,
        bus_factory: BusFactory | None = None,
        source: UpdateSource | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Start the bridge (blocking, synchronous entrypoint).

        Wraps :meth:`_run_async` in :func:`asyncio.run`, handling
        ``KeyboardInterrupt`` for clean Ctrl-C shutdown.

        Args:
            settings: Override settings (skip env-file loading).
            bus_factory: Override the bus factory (e.g.
                ``MockBusFactory`` for testing).  Defaults to the real
                dbus-next adapter.
            source: Override the update source.  Defaults to JSON lines
                on stdin.
            shutdown_event: Override shutdown event (skip OS signal
                handlers).
            clock: Override clock (e.g. ``FakeClock`` for tests).
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    settings=settings,
                    bus_factory=bus_factory,
                    source=source,
                    shutdown_event=shutdown_event,
                    clock=clock,
                ),
            )

    def cli(self) -> None:
        """Start the bridge with CLI argument parsing."""
        from venusbridge._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        bus_factory: BusFactory | None = None,
        source: UpdateSource | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Async orchestration of the four lifecycle phases.

        Raises:
            RuntimeError: If the default bus factory is used and
                dbus-next is not installed.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        resolved_clock = clock if clock is not None else SystemClock()
        resolved_factory = bus_factory if bus_factory is not None else self._default_factory()
        resolved_source = source if source is not None else JsonLinesSource()

        reporter = ErrorReporter()
        for listener in self._error_listeners:
            reporter.subscribe(listener)
        cache = TelemetryCache()
        self._accumulator = EnergyAccumulator(
            clock=resolved_clock,
            current_source=cache,
            min_voltage=resolved_settings.battery.min_voltage,
            max_voltage=resolved_settings.battery.max_voltage,
            max_gap_hours=resolved_settings.battery.max_gap_hours,
            solar_path=resolved_settings.battery.solar_current_path,
            alternator_path=resolved_settings.battery.alternator_current_path,
        )
        store = self._restore_history(resolved_settings, self._accumulator)

        # --- Phase 2: Wire ---
        self._clients = self._build_clients(
            resolved_settings,
            resolved_factory,
            resolved_clock,
            self._accumulator,
        )
        router = self._router = self._wire_router(self._clients)
        self._dispatcher = LaneDispatcher()
        shutdown_event = self._install_signal_handlers(shutdown_event)
        logger.info(
            "Bridging %s to %s",
            ", ".join(self._clients) or "nothing",
            resolved_settings.bus.display_target,
        )

        # --- Phase 3: Run ---
        tasks = [
            asyncio.create_task(
                self._consume(resolved_source, router, cache, reporter, shutdown_event),
            ),
        ]
        if store is not None:
            tasks.append(
                asyncio.create_task(
                    self._history_loop(
                        store,
                        self._accumulator,
                        resolved_settings.history.save_interval,
                    ),
                ),
            )
        try:
            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await self._cancel_tasks(tasks)
            await self._dispatcher.cancel()
            if store is not None:
                self._save_history(store, self._accumulator)
            for client in self._clients.values():
                try:
                    await client.disconnect()
                except Exception:
                    logger.exception("Disconnecting %s failed", client.device_class.key)
        logger.info("Shutdown complete")

    # --- _run_async helpers -------------------------------------------------

    @staticmethod
    def _default_factory() -> BusFactory:
        from venusbridge._dbus_next import connect_dbus_next, require_dbus_next

        require_dbus_next()
        return connect_dbus_next

    @staticmethod
    def _restore_history(
        settings: Settings,
        accumulator: EnergyAccumulator,
    ) -> HistoryStore | None:
        if settings.history.file is None:
            return None
        store = HistoryStore(settings.history.file)
        accumulator.restore(store.load())
        return store

    def _build_clients(
        self,
        settings: Settings,
        bus_factory: BusFactory,
        clock: ClockPort,
        accumulator: EnergyAccumulator,
    ) -> dict[str, DeviceClassClient]:
        clients: dict[str, DeviceClassClient] = {}
        for key in dict.fromkeys(settings.devices):
            device_class = self._device_classes.get(key)
            if device_class is None:
                logger.warning("Unknown device class '%s' ignored", key)
                continue
            client = DeviceClassClient(
                device_class,
                settings=settings,
                bus_factory=bus_factory,
                clock=clock,
                accumulator=accumulator,
                process_name=self._name,
                process_version=self._version,
            )
            for value_listener in self._value_listeners:
                client.on_value_changed(value_listener)
            for data_listener in self._data_listeners:
                client.on_data_updated(data_listener)
            clients[key] = client
        return clients

    @staticmethod
    def _wire_router(clients: Mapping[str, DeviceClassClient]) -> PathRouter:
        router = PathRouter()
        for key, client in clients.items():

            async def _apply(
                path: str,
                value: object,
                unit: str | None,
                *,
                _client: DeviceClassClient = client,
            ) -> bool:
                return await _client.apply_update(path, value, unit=unit)

            router.register(key, client.device_class.prefix, _apply)
        return router

    def _install_signal_handlers(
        self,
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    async def _consume(
        self,
        source: UpdateSource,
        router: PathRouter,
        cache: TelemetryCache,
        reporter: ErrorReporter,
        shutdown_event: asyncio.Event,
    ) -> None:
        """Hand every update to its lane; end of input requests shutdown.

        The source is never blocked by a slow device: the update is
        queued in the lane of its base path and applied there.
        """
        try:
            async for update in source:
                cache.record(update.path, update.value)
                self._dispatcher.submit(
                    self._lane(update.path, router),
                    partial(self._apply, update, router, reporter),
                )
            logger.info("Update source exhausted")
            await self._dispatcher.drain()
        finally:
            shutdown_event.set()

    async def settle(self, path: str) -> None:
        """Wait until every update received so far for *path*'s device is applied."""
        if self._router is not None:
            await self._dispatcher.wait(self._lane(path, self._router))

    def _lane(self, path: str, router: PathRouter) -> str:
        device_class, base_path = self._apply_context(path, router)
        if device_class is None or base_path is None:
            return path
        return f"{device_class}:{base_path}"

    def _apply_context(self, path: str, router: PathRouter) -> tuple[str | None, str | None]:
        key = router.classify(path)
        client = self._clients.get(key) if key is not None else None
        match = client.device_class.match(path) if client is not None else None
        return key, match.base_path if match is not None else None

    async def _apply(
        self,
        update: Update,
        router: PathRouter,
        reporter: ErrorReporter,
    ) -> None:
        try:
            await router.route(update.path, update.value, update.unit)
        except BridgeError as exc:
            device_class, base_path = self._apply_context(update.path, router)
            reporter.report(exc, device_class=device_class, base_path=base_path)
        except Exception as exc:
            logger.exception("Unexpected error applying %s", update.path)
            device_class, base_path = self._apply_context(update.path, router)
            reporter.report(exc, device_class=device_class, base_path=base_path)

    @classmethod
    async def _history_loop(
        cls,
        store: HistoryStore,
        accumulator: EnergyAccumulator,
        interval: float,
    ) -> None:
        """Save history at a fixed interval until cancelled."""
        while True:
            await asyncio.sleep(interval)
            cls._save_history(store, accumulator)

    @staticmethod
    def _save_history(store: HistoryStore, accumulator: EnergyAccumulator) -> None:
        try:
            store.save(accumulator.records)
        except OSError as exc:
            logger.error("Saving history to %s failed: %s", store.path, exc)

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        """Cancel background tasks and wait for graceful completion."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)
