"""Authorize command -- run the copy-paste OAuth flow for one account.

``mailauth authorize`` is registered on the root app, outside the
``account`` and ``config`` groups, so the configuration wizard those
groups bootstrap never runs for it. It works against the default
:class:`~mailauth.models.GlobalConfig` when no config file exists and
writes the account file and credential itself.

Typical workflow::

    mailauth authorize work --provider gmail
    mailauth token work          # hand the access token to a mail client
"""

from __future__ import annotations

import os
from typing import Optional

import typer
from pydantic import ValidationError

from mailauth.config import ENV_CLIENT_ID, ENV_CLIENT_SECRET, load_global_config
from mailauth.exceptions import (
    FlowFailed,
    InvalidUsageError,
    ProviderRejected,
    StateMismatchError,
    TransportError,
)
from mailauth.models import AccountSetup, GlobalConfig, ProviderConfig
from mailauth.output import error, suggest


def prompt_account_setup(
    provider: ProviderConfig,
    account: Optional[str] = None,
    email: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    scopes: Optional[list[str]] = None,
    no_input: bool = False,
) -> AccountSetup:
    """Collect the account name, client identity, and email address.

    Values given as arguments (or via ``$MAILAUTH_CLIENT_ID`` and
    ``$MAILAUTH_CLIENT_SECRET``) are used without prompting. With
    *no_input* every value must already be known.

    Raises:
        InvalidUsageError: If a value is missing under *no_input*, or blank
            once surrounding whitespace is removed.
    """
    client_id = client_id or os.environ.get(ENV_CLIENT_ID)
    client_secret = client_secret or os.environ.get(ENV_CLIENT_SECRET)

    if no_input:
        missing = [
            name
            for name, value in (
                ("account", account),
                ("--email", email),
                ("--client-id", client_id),
                (f"${ENV_CLIENT_SECRET}", client_secret),
            )
            if not value
        ]
        if missing:
            raise InvalidUsageError(
                f"--no-input requires: {', '.join(missing)}"
            )
    else:
        if not account:
            account = typer.prompt("Account name", default=provider.name)
        if not client_id:
            client_id = typer.prompt("OAuth client ID")
        if not client_secret:
            client_secret = typer.prompt("OAuth client secret", hide_input=True)
        if not email:
            email = typer.prompt("Email address")

    values = {
        "account": (account or "").strip(),
        "email": (email or "").strip(),
        "client_id": (client_id or "").strip(),
        "client_secret": (client_secret or "").strip(),
    }
    blank = [name.replace("_", " ") for name, value in values.items() if not value]
    if blank:
        raise InvalidUsageError(f"These values cannot be blank: {', '.join(blank)}")

    try:
        return AccountSetup(**values, scopes=scopes or [])
    except ValidationError as exc:
        # Only field names reach the message; the secret value stays out of it.
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
        raise InvalidUsageError(f"Invalid account details: {fields}") from None


def authorize_command(
    ctx: typer.Context,
    account: Optional[str] = typer.Argument(
        None, help="Account name to authorize (prompted if omitted)."
    ),
    provider_name: Optional[str] = typer.Option(
        None, "--provider", "-P", help="Mail provider: gmail, outlook, or a configured one."
    ),
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Email address."),
    client_id: Optional[str] = typer.Option(
        None, "--client-id", help="OAuth client ID (or $MAILAUTH_CLIENT_ID)."
    ),
    scopes: Optional[list[str]] = typer.Option(
        None, "--scope", help="Scope to request; repeat for several. Defaults to the provider's."
    ),
) -> None:
    """Authorize a mail account with OAuth 2.0 and PKCE.

    Prints an authorization URL, waits for the code you copy from the
    browser, exchanges it for tokens, and stores them in the secret store.
    No local web server is started, so this works over SSH, in containers,
    and in tmux.

    Example::

        mailauth authorize work --provider gmail --email me@example.com
    """
    from mailauth.flow import AuthorizationFlow
    from mailauth.providers import get_provider
    from mailauth.store import CredentialStore

    obj = ctx.obj or {}
    config: GlobalConfig = load_global_config()
    provider = get_provider(provider_name or config.default_provider, config)
    no_input = bool(obj.get("no_input", False))

    flow = AuthorizationFlow(
        provider,
        CredentialStore(),
        prompt_credentials=lambda: prompt_account_setup(
            provider,
            account=account,
            email=email,
            client_id=client_id,
            scopes=scopes,
            no_input=no_input,
        ),
        max_code_attempts=config.max_code_attempts,
        max_retries=config.http.max_retries,
        timeout=config.http.timeout,
    )

    try:
        credential = flow.run()
    except FlowFailed as exc:
        error(f"Authorization failed while {exc.state.replace('_', ' ')}: {exc.reason}")
        _suggest_next_step(exc, account)
        raise typer.Exit(code=exc.exit_code) from None

    suggest(f"Get an access token: mailauth token {credential.account}")


def _suggest_next_step(exc: FlowFailed, account: Optional[str]) -> None:
    """Tell the user whether retrying makes sense for this failure."""
    retry = f"mailauth authorize {account}" if account else "mailauth authorize"
    reason = exc.reason
    if isinstance(reason, ProviderRejected):
        suggest(
            "Authorization codes are single-use and expire quickly; "
            f"start again with a fresh URL: {retry}"
        )
    elif isinstance(reason, StateMismatchError):
        suggest(f"Copy the code from the page opened by the latest URL: {retry}")
    elif isinstance(reason, TransportError):
        suggest(f"Check your network connection and try again: {retry}")
    elif exc.reason_name == "CredentialStoreError":
        suggest("Nothing was saved. Check the permissions of the mailauth data directory.")
