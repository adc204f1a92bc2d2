"""Typer application and CLI entry point for mailauth.

This module wires the root Typer application together. Commands are
mounted at two kinds of places, and that placement decides whether the
ambient configuration wizard runs:

* ``authorize`` and ``token`` are registered directly on the root app.
  The root callback only sets up output and logging, so these commands
  work with no configuration file at all.
* The ``account`` group carries its own callback that bootstraps the
  global configuration (running the wizard if it is missing).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. Unhandled exceptions are written to a crash log under
the data directory.

See Also:
    :mod:`mailauth.commands`: The sub-command modules.
    :mod:`mailauth.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from mailauth import __version__
from mailauth.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INTERRUPTED


app = typer.Typer(
    name="mailauth",
    help="Authorize mail accounts with OAuth 2.0 + PKCE by copy-pasting a code.",
    no_args_is_help=True,
    add_completion=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"mailauth {__version__}")
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
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmations."
    ),
    no_input: bool = typer.Option(
        False, "--no-input", help="Disable interactive prompts."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~mailauth.output.OutputManager` and the
    ``mailauth`` logger from CLI flags, and stores shared options in the
    Typer context so sub-commands can read them via ``ctx.obj``. It does
    not touch configuration files.
    """
    from mailauth.output import OutputFormat, OutputManager, set_output, setup_logging

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    setup_logging(verbose, output.stderr_console)

    ctx.ensure_object(dict)
    ctx.obj["force"] = force
    ctx.obj["no_input"] = no_input
    ctx.obj["verbose"] = verbose


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

from mailauth.commands.account import account_app  # noqa: E402
from mailauth.commands.authorize import authorize_command  # noqa: E402
from mailauth.commands.config import config_app  # noqa: E402
from mailauth.commands.token import token_command  # noqa: E402

app.command("authorize")(authorize_command)
app.command("token")(token_command)
app.add_typer(account_app, name="account", help="Manage authorized accounts.")
app.add_typer(config_app, name="config", help="Configuration management.")


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from mailauth.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``mailauth`` console script.

    Unhandled :class:`~mailauth.exceptions.MailauthError` instances cause
    a clean exit with the error's ``exit_code``. All other exceptions
    produce a crash log and a generic failure exit.

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
        sys.exit(EXIT_INTERRUPTED)
    except Exception as exc:
        from mailauth.exceptions import MailauthError
        from mailauth.output import error

        if isinstance(exc, MailauthError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
