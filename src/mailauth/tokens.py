"""Access-token lifecycle for already-authorized accounts.

Mail clients read the stored :class:`~mailauth.models.AccountCredential`
through :func:`get_valid_access_token`, which refreshes the access token
with the stored refresh token when it is about to expire and writes the
updated credential back to the store.
"""

from __future__ import annotations

import logging
from typing import Optional

from mailauth.config import load_account
from mailauth.exceptions import AuthError, NotFoundError
from mailauth.models import AccountCredential, GlobalConfig
from mailauth.oauth.exchange import TokenExchanger
from mailauth.providers import get_provider
from mailauth.store import CredentialStore

logger = logging.getLogger(__name__)


def refresh_account_credential(
    account_id: str,
    credential_store: CredentialStore,
    exchanger: Optional[TokenExchanger] = None,
    config: Optional[GlobalConfig] = None,
) -> AccountCredential:
    """Refresh the access token of *account_id* and persist the result.

    The refresh token and client secret are carried over when the
    provider does not return new ones.

    Raises:
        NotFoundError: If the account or its credential does not exist.
        AuthError: If no refresh token is stored.
        TransportError, ProviderRejected, ResponseFormatError: From the
            token endpoint.
        CredentialStoreError: If the updated credential cannot be written.
    """
    config = config or GlobalConfig()
    account = load_account(account_id)
    credential = credential_store.load(account_id)
    if credential is None:
        raise NotFoundError(f"No stored credential for account '{account_id}'")
    if not credential.refresh_token:
        raise AuthError(
            f"Account '{account_id}' has no refresh token; run 'mailauth authorize {account_id}'"
        )

    if exchanger is None:
        provider = get_provider(account.provider, config)
        exchanger = TokenExchanger.for_provider(provider, timeout=config.http.timeout)

    token = exchanger.refresh_access_token(
        credential.refresh_token, account.client_id, credential.client_secret
    )
    if not token.refresh_token:
        token = token.model_copy(update={"refresh_token": credential.refresh_token})

    refreshed = AccountCredential.from_token_response(
        account_id,
        credential.provider,
        token,
        client_secret=credential.client_secret,
    )
    if refreshed.scope is None:
        refreshed.scope = credential.scope
    credential_store.save(refreshed)
    logger.debug("Refreshed access token for account '%s'", account_id)
    return refreshed


def get_valid_access_token(
    account_id: str,
    credential_store: Optional[CredentialStore] = None,
    exchanger: Optional[TokenExchanger] = None,
    config: Optional[GlobalConfig] = None,
) -> str:
    """Return an access token for *account_id*, refreshing it if it has expired.

    Raises:
        NotFoundError: If the account has never been authorized.
    """
    credential_store = credential_store or CredentialStore()
    credential = credential_store.load(account_id)
    if credential is None:
        raise NotFoundError(
            f"Account '{account_id}' is not authorized; run 'mailauth authorize {account_id}'"
        )
    if not credential.is_expired():
        return credential.access_token
    logger.debug("Access token for '%s' expired, refreshing", account_id)
    return refresh_account_credential(
        account_id, credential_store, exchanger, config
    ).access_token
