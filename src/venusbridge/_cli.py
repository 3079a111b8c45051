"""Command-line entry point for the bridge (Typer-based).

:func:`build_cli` wraps a :class:`~venusbridge._app.Bridge` in a
single-command Typer app.  Telemetry is read as JSON lines from stdin;
every accepted remote write is printed to stdout as one JSON line::

    {"path": "electrical.switches.cabinLights.state", "value": true}

Exit codes: 0 after a clean shutdown, 1 for invalid configuration,
3 when the bridge fails at runtime (e.g. dbus-next missing).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from venusbridge._settings import LoggingSettings

if TYPE_CHECKING:
    from venusbridge._app import Bridge
    from venusbridge._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# Allowed values come straight from the LoggingSettings Literal types
_LOG_LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
_LOG_FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def write_value_changed(path: str, value: object) -> None:
    """Print one remote write as a JSON line on stdout."""
    sys.stdout.write(json.dumps({"path": path, "value": value}) + "\n")
    sys.stdout.flush()


def _checked_choice(
    value: str | None,
    allowed: tuple[str, ...],
    *,
    option: str,
    upper: bool,
) -> str | None:
    """Normalise the case of *value* and reject anything outside *allowed*."""
    if value is None:
        return None
    normalized = value.upper() if upper else value.lower()
    if normalized not in allowed:
        msg = f"Invalid value '{value}'. Choose from: {', '.join(allowed)}"
        raise typer.BadParameter(msg, param_hint=f"'{option}'")
    return normalized


def _apply_overrides(
    settings: Settings,
    *,
    log_level: str | None,
    log_format: str | None,
    host: str | None,
    history_file: str | None,
) -> None:
    logging_update = {
        key: value
        for key, value in (("level", log_level), ("format", log_format))
        if value is not None
    }
    if logging_update:
        settings.logging = settings.logging.model_copy(update=logging_update)
    if host is not None:
        settings.bus = settings.bus.model_copy(update={"host": host})
    if history_file is not None:
        settings.history = settings.history.model_copy(update={"file": history_file})


def build_cli(bridge: Bridge) -> typer.Typer:
    """Construct the Typer app for *bridge*.

    Invoking it loads settings from the environment and ``--env-file``,
    applies the command-line overrides, subscribes
    :func:`write_value_changed` and runs :meth:`Bridge._run_async`
    until shutdown.
    """
    name = bridge.name
    version = bridge.version

    cli = typer.Typer(help=f"{name} v{version} — {bridge.description}")

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format (json or text)."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        host: Annotated[
            str | None,
            typer.Option("--host", help="Venus OS host exposing D-Bus over TCP."),
        ] = None,
        history_file: Annotated[
            str | None,
            typer.Option("--history-file", help="Persist battery history to this file."),
        ] = None,
    ) -> None:
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        level = _checked_choice(log_level, _LOG_LEVELS, option="--log-level", upper=True)
        fmt = _checked_choice(log_format, _LOG_FORMATS, option="--log-format", upper=False)

        try:
            settings: Settings = bridge.settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        _apply_overrides(
            settings,
            log_level=level,
            log_format=fmt,
            host=host,
            history_file=history_file,
        )
        bridge.on_value_changed(write_value_changed)

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(bridge._run_async(settings=settings))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main() -> None:
    """Console-script entry point."""
    from venusbridge import __version__
    from venusbridge._app import Bridge

    Bridge(version=__version__).cli()
