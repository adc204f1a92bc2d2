"""Terminal output for mailauth: what goes to stdout and what goes to stderr.

mailauth is used in two ways. A person runs ``mailauth authorize`` in a
terminal, often over SSH, and copies a long URL out of it. A mail client
runs ``mailauth token`` as a password command and reads a single line.
Both depend on stdout carrying nothing but the payload:

* **stdout** -- the authorization URL, the access token, account tables
  and account details.
* **stderr** -- instructions, progress, warnings, errors and next-step hints.

URLs and tokens are written with :func:`print`, never through Rich, so the
terminal width cannot wrap or restyle text the user has to copy. Colour
follows ``NO_COLOR``, ``TERM=dumb`` and ``--no-color``.

:class:`OutputManager` is created in :func:`~mailauth.app.main_callback` and
installed with :func:`set_output`; the module-level functions delegate to it.
Library code logs through :mod:`logging`; :func:`setup_logging` sends those
records to stderr with secret values masked.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

SECRET_FIELDS = ("access_token", "refresh_token", "client_secret", "code_verifier", "code")

_SECRET_RE = re.compile(
    r"""(?P<key>["']?\b(?:%s)\b["']?\s*[:=]\s*["']?)(?P<value>[^"'&\s,}]+)"""
    % "|".join(SECRET_FIELDS)
)
_MASK = "***"


class OutputFormat(str, Enum):
    """How data written to stdout is rendered.

    ``AUTO`` becomes ``RICH`` on a colour-capable terminal and ``PLAIN``
    when stdout is piped.
    """

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Holds the output preferences chosen by the global CLI flags.

    Args:
        format: Rendering of stdout data; ``AUTO`` is resolved on creation.
        no_color: Disable colour and Rich styling.
        quiet: Drop informational stderr messages. Warnings, errors and
            stdout data are kept.
        verbose: Show debug logging on stderr.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            rich_ok = _is_tty() and not self._no_color
            format = OutputFormat.RICH if rich_ok else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        return self._verbose

    @property
    def stderr_console(self) -> Console:
        """Console used by :func:`setup_logging`."""
        return self._stderr

    # ------------------------------------------------------------------ #
    # stdout
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        """Write one line to stdout as-is."""
        print(text, file=sys.stdout, flush=True)

    def print_url(self, url: str) -> None:
        """Write the authorization URL so it can be copied in one piece.

        In JSON mode the URL is wrapped as ``{"authorization_url": ...}``.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(json.dumps({"authorization_url": url}))
        else:
            self.print_data(url)

    def print_secret(self, value: str) -> None:
        """Write a token for a password-command hook: one bare line.

        The output format does not apply. ``--quiet`` does not suppress it.
        """
        self.print_data(value.strip())

    def format_response(self, data: Any) -> None:
        """Render account or config details on stdout.

        Nested mappings are flattened to dotted keys in plain mode
        (``credential.expired``) and shown as a two-column table in rich mode.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(json.dumps(data, indent=2, ensure_ascii=False, default=str))
            return
        if not isinstance(data, dict):
            self._print_plain(data)
            return
        pairs = list(_flatten(data))
        if self._format == OutputFormat.PLAIN:
            for key, value in pairs:
                self.print_data(f"{key}\t{_plain_value(value)}")
        else:
            table = Table(show_header=False, box=None, pad_edge=False)
            table.add_column(style="bold")
            table.add_column()
            for key, value in pairs:
                table.add_row(escape(key), escape(_plain_value(value)))
            self._stdout.print(table)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Render rows such as the account list.

        JSON mode prints a list of objects keyed by *headers*; plain mode
        prints tab-separated lines with a header line first.
        """
        if self._format == OutputFormat.JSON:
            records = [dict(zip(headers, row)) for row in rows]
            self.print_data(json.dumps(records, indent=2, ensure_ascii=False))
        elif self._format == OutputFormat.PLAIN:
            for row in [headers, *rows]:
                self.print_data("\t".join(row))
        else:
            table = Table(title=title, header_style="bold cyan")
            for header in headers:
                table.add_column(header)
            for row in rows:
                table.add_row(*(escape(cell) for cell in row))
            self._stdout.print(table)

    def _print_plain(self, data: Any) -> None:
        items = data if isinstance(data, list) else [data]
        for item in items:
            self.print_data(str(item))

    # ------------------------------------------------------------------ #
    # stderr
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        self._emit(message, quiet_ok=True)

    def success(self, message: str) -> None:
        self._emit(message, style="green", quiet_ok=True)

    def warning(self, message: str) -> None:
        self._emit(message, label="Warning:", style="yellow")

    def error(self, message: str) -> None:
        self._emit(message, label="Error:", style="bold red")

    def suggest(self, message: str) -> None:
        self._emit(f"→ {message}", style="dim", quiet_ok=True)

    def _emit(
        self,
        message: str,
        label: str = "",
        style: str = "",
        quiet_ok: bool = False,
    ) -> None:
        if quiet_ok and self._quiet:
            return
        if self._no_color:
            text = f"{label} {message}" if label else message
            print(text, file=sys.stderr, flush=True)
            return
        body = escape(message)
        if label:
            self._stderr.print(f"[{style}]{label}[/{style}] {body}", highlight=False)
        elif style:
            self._stderr.print(f"[{style}]{body}[/{style}]", highlight=False)
        else:
            self._stderr.print(body, highlight=False)


def _flatten(data: dict, prefix: str = ""):
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            yield from _flatten(value, f"{name}.")
        else:
            yield name, value


def _plain_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)):
        return " ".join(str(item) for item in value)
    return str(value)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (to anything) or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Logging
# ------------------------------------------------------------------ #


def redact_secrets(text: str) -> str:
    """Mask the values of token, verifier, client secret and code fields in *text*."""
    return _SECRET_RE.sub(lambda m: m.group("key") + _MASK, text)


class SecretRedactingFilter(logging.Filter):
    """Rewrite each record's message with :func:`redact_secrets` applied."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    """Route ``mailauth.*`` log records to stderr through Rich.

    DEBUG and above when *verbose*, WARNING and above otherwise. Calling
    it again replaces the previously installed handler.
    """
    logger = logging.getLogger("mailauth")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or get_output().stderr_console,
        show_path=False,
        rich_tracebacks=False,
        markup=False,
    )
    handler.addFilter(SecretRedactingFilter())
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


# ------------------------------------------------------------------ #
# Global instance
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Forget the installed manager; the next call creates a fresh default."""
    global _output
    _output = None


def format_response(data: Any) -> None:
    get_output().format_response(data)


def print_data(text: str) -> None:
    get_output().print_data(text)


def print_url(url: str) -> None:
    get_output().print_url(url)


def print_secret(value: str) -> None:
    get_output().print_secret(value)


def print_table(
    headers: list[str],
    rows: list[list[str]],
    title: Optional[str] = None,
) -> None:
    get_output().print_table(headers, rows, title)


def info(message: str) -> None:
    get_output().info(message)


def error(message: str) -> None:
    get_output().error(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def suggest(message: str) -> None:
    get_output().suggest(message)
