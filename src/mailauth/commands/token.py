"""Token command -- print a valid access token for a mail client.

Designed for password-command hooks of IMAP/SMTP clients: the token is the
only thing written to stdout, refreshed first if it has expired.

Example::

    mailauth token work
"""

from __future__ import annotations

from typing import Optional

import typer

from mailauth.output import print_secret


def token_command(
    account: Optional[str] = typer.Argument(
        None, help="Account name (defaults to $MAILAUTH_ACCOUNT or the configured default)."
    ),
) -> None:
    """Print a valid access token for ACCOUNT, refreshing it if needed."""
    from mailauth.config import load_global_config, resolve_default_account
    from mailauth.exceptions import InvalidUsageError
    from mailauth.tokens import get_valid_access_token

    config = load_global_config()
    name = account or resolve_default_account(config)
    if not name:
        raise InvalidUsageError("No account given and no default account configured")
    print_secret(get_valid_access_token(name, config=config))
