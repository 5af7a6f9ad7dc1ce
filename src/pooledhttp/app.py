"""Typer application and CLI entry point for pooledhttp.

The ``pooledhttp`` command is a small curl-like front end over the client
core: ``pooledhttp request URL`` sends a request through a freshly created
:class:`~pooledhttp.pool.Manager` and prints the body, while
``pooledhttp config`` manages the persisted defaults.

:func:`main` is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers, registers commands, and
invokes the Typer app. :class:`~pooledhttp.exceptions.PooledHTTPError`
exits with the error's code; anything else writes a crash log under the
data directory.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer
from rich.logging import RichHandler

from pooledhttp import __version__
from pooledhttp.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="pooledhttp",
    help="HTTP/1.1 client with keep-alive connection pooling.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"pooledhttp {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection activity to stderr."),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmations."),
    output_file: Optional[str] = typer.Option(None, "-o", "--output", help="Write the body to a file."),
) -> None:
    """Root callback executed before every sub-command.

    Without ``--json`` or ``--plain`` the format comes from
    ``output.format`` in the resolved config.

    Installs the global :class:`~pooledhttp.output.OutputManager`, hooks
    library logging up to stderr when ``--verbose`` is given, and stores
    shared flags in ``ctx.obj``.
    """
    from pooledhttp.output import OutputFormat, OutputManager, set_output

    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    else:
        fmt = _configured_format()

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
        output_file=output_file,
    )
    set_output(output)
    configure_logging(verbose, output)

    ctx.ensure_object(dict)
    ctx.obj["force"] = force
    ctx.obj["verbose"] = verbose


def _configured_format() -> Any:
    """Return the output format from config and ``POOLEDHTTP_OUTPUT_FORMAT``.

    An unreadable config falls back to ``AUTO``; the commands that load
    the config report the error themselves, and ``config reset`` must
    still run.
    """
    from pooledhttp.config import resolve_config
    from pooledhttp.exceptions import ConfigError
    from pooledhttp.output import OutputFormat

    try:
        return OutputFormat(resolve_config().output.format)
    except ConfigError:
        return OutputFormat.AUTO


def configure_logging(verbose: bool, output: Any) -> None:
    """Route ``pooledhttp.*`` log records to stderr through Rich when *verbose*.

    Without ``--verbose`` the library loggers stay at WARNING with no
    handler of ours attached.
    """
    logger = logging.getLogger("pooledhttp")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    if not verbose:
        logger.setLevel(logging.WARNING)
        return
    handler = RichHandler(console=output.stderr_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from pooledhttp.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def register_commands() -> None:
    """Attach the built-in sub-commands to :data:`app` (idempotent)."""
    from pooledhttp.commands.config import config_app
    from pooledhttp.commands.request import request_command

    if getattr(app, "_pooledhttp_registered", False):
        return
    app.command("request")(request_command)
    app.add_typer(config_app, name="config", help="Configuration management.")
    app._pooledhttp_registered = True  # type: ignore[attr-defined]


def main() -> None:
    """CLI entry point invoked by the ``pooledhttp`` console script.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        register_commands()
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from pooledhttp.exceptions import PooledHTTPError
        from pooledhttp.output import error

        if isinstance(exc, PooledHTTPError):
            error(str(exc))
            sys.exit(exc.exit_code)
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
