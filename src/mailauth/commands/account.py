"""Account commands -- inspect, refresh, and remove authorized accounts.

Every command in this group needs the global configuration, so the group
callback runs :func:`~mailauth.config.ensure_configured` first, which
starts the configuration wizard when no config file exists yet.
"""

from __future__ import annotations

import typer

from mailauth.output import error, format_response, get_output, info, success, suggest


def _bootstrap(ctx: typer.Context) -> None:
    """Make sure a global config exists before any account command runs."""
    from mailauth.config import ensure_configured

    obj = ctx.ensure_object(dict)
    obj["config"] = ensure_configured(no_input=bool(obj.get("no_input", False)))


account_app = typer.Typer(no_args_is_help=True, callback=_bootstrap)


@account_app.command("list")
def account_list() -> None:
    """List authorized accounts with their token status.

    Example::

        mailauth account list
    """
    from mailauth.config import list_accounts, load_account
    from mailauth.exceptions import MailauthError
    from mailauth.store import CredentialStore

    names = list_accounts()
    if not names:
        info("No accounts authorized.")
        suggest("Authorize one: mailauth authorize <name> --provider gmail")
        return

    store = CredentialStore()
    rows: list[list[str]] = []
    for name in names:
        try:
            account = load_account(name)
            credential = store.load(name)
        except MailauthError as exc:
            rows.append([name, "?", "?", f"error: {exc}"])
            continue
        if credential is None:
            status = "missing credential"
        elif credential.is_expired():
            status = "expired" if credential.refresh_token else "expired (no refresh token)"
        else:
            status = "valid"
        rows.append([name, account.provider, account.email, status])

    get_output().print_table(["Account", "Provider", "Email", "Token"], rows, title="Accounts")


@account_app.command("show")
def account_show(
    name: str = typer.Argument(help="Account name."),
) -> None:
    """Show an account's settings and token status (never the tokens).

    Example::

        mailauth account show work --json
    """
    from mailauth.config import load_account
    from mailauth.store import CredentialStore

    account = load_account(name)
    credential = CredentialStore().load(name)

    data = account.model_dump(mode="json")
    if credential is None:
        data["credential"] = None
    else:
        data["credential"] = {
            "token_type": credential.token_type,
            "scope": credential.scope,
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
            "expired": credential.is_expired(),
            "has_refresh_token": bool(credential.refresh_token),
            "obtained_at": credential.obtained_at.isoformat(),
        }
    format_response(data)


@account_app.command("refresh")
def account_refresh(
    ctx: typer.Context,
    name: str = typer.Argument(help="Account name."),
) -> None:
    """Refresh an account's access token using its stored refresh token.

    Example::

        mailauth account refresh work
    """
    from mailauth.store import CredentialStore
    from mailauth.tokens import refresh_account_credential

    config = ctx.obj.get("config") if ctx.obj else None
    credential = refresh_account_credential(name, CredentialStore(), config=config)
    expiry = credential.expires_at.isoformat() if credential.expires_at else "unknown"
    success(f'Access token for "{name}" refreshed (expires {expiry}).')


@account_app.command("remove")
def account_remove(
    ctx: typer.Context,
    name: str = typer.Argument(help="Account name."),
) -> None:
    """Remove an account and delete its stored credential.

    Asks for confirmation unless ``--force`` is active.

    Example::

        mailauth --force account remove work
    """
    from mailauth.config import account_exists, delete_account
    from mailauth.store import CredentialStore

    force = ctx.obj.get("force", False) if ctx.obj else False
    store = CredentialStore()
    has_file = account_exists(name)
    if not has_file and store.load(name) is None:
        error(f"Account '{name}' not found.")
        raise typer.Exit(code=4)

    if not force:
        confirm = typer.confirm(f"Remove account '{name}' and its tokens?", default=False)
        if not confirm:
            info("Cancelled.")
            raise typer.Exit()

    store.delete(name)
    if has_file:
        delete_account(name)
    success(f'Account "{name}" removed.')
