"""Typer application and CLI entry point for loopauth.

This module wires together the top-level Typer application and registers
the ``auth`` sub-command group. The root callback applies the global flags
(profile selection, output format, colour, verbosity) before any
sub-command runs.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
Unhandled exceptions are written to a crash log under the data directory.

See Also:
    :mod:`loopauth.config`: Profile and path resolution.
    :mod:`loopauth.output`: Output formatting initialised in :func:`main_callback`.
    :mod:`loopauth.logging_setup`: Log handler configured in :func:`main_callback`.
"""

from __future__ import annotations

import os
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer

from loopauth import __version__
from loopauth.commands.auth import auth_app
from loopauth.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="loopauth",
    help="Loopback OAuth2 sign-in and token management for command-line tools.",
    no_args_is_help=True,
    add_completion=True,
    rich_markup_mode="rich",
)

app.add_typer(auth_app, name="auth", help="Authentication management.")


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"loopauth {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    profile: Optional[str] = typer.Option(
        None, "--profile", "-p", help="Profile name to use."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~loopauth.output.OutputManager` and the
    ``loopauth`` log handler from CLI flags. ``--profile`` is validated and
    exported as ``LOOPAUTH_PROFILE`` so every path lookup in this process
    sees it.

    Args:
        version: If ``True``, print the version string and exit.
        profile: Profile name override (highest precedence).
        json_output: Force JSON output format.
        plain_output: Force plain-text output format.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential diagnostic output.
        verbose: Enable debug-level diagnostic output and logging.
    """
    from loopauth.config import ENV_PROFILE, validate_profile_name
    from loopauth.exceptions import ConfigurationError
    from loopauth.logging_setup import configure_logging
    from loopauth.output import OutputFormat, OutputManager, error, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(
        OutputManager(
            format=fmt,
            no_color=no_color,
            quiet=quiet,
            verbose=verbose,
        )
    )
    configure_logging(verbose=verbose)

    if profile is not None:
        try:
            os.environ[ENV_PROFILE] = validate_profile_name(profile)
        except ConfigurationError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None



def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path.

    Args:
        exc: The unhandled exception to log.

    Returns:
        Absolute path to the written crash log file.
    """
    from loopauth.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``loopauth`` console script.

    Unhandled :class:`~loopauth.exceptions.LoopauthError` instances cause a
    clean exit with the error's ``exit_code``; classified provider errors
    are printed with their fix steps. All other exceptions produce a crash
    log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from loopauth.errors import ProviderAuthError
        from loopauth.exceptions import LoopauthError
        from loopauth.output import error

        if isinstance(exc, ProviderAuthError):
            error(exc.to_display_string())
            sys.exit(exc.exit_code)
        elif isinstance(exc, LoopauthError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
