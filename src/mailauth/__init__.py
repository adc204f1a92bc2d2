"""mailauth -- OAuth 2.0 authorization for mail accounts, without a local callback server.

The user opens an authorization URL in any browser, copies the code the
provider shows, and pastes it back into the terminal. mailauth exchanges
it (with PKCE, :rfc:`7636`) for access and refresh tokens and keeps them
in a permission-protected secret store, from which IMAP/SMTP clients read
them. This works over SSH, inside containers, and in tmux.

Typical workflow::

    mailauth authorize work --provider gmail   # one-time setup
    mailauth token work                        # fresh access token on stdout

Modules:
    app: Typer application and CLI entry point.
    flow: The authorization state machine.
    oauth: PKCE, URL building, code collection, token exchange.
    store: Secret-store capability and credential adapter.
    tokens: Access-token refresh for stored accounts.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration, accounts, and the setup wizard.
    exceptions: Exception hierarchy with exit-code mapping.
    output: stdout/stderr formatting with Rich.
"""

__version__ = "0.1.0"
