"""Canonical Pydantic models shared across all mailauth modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Flow models** -- live only in process memory for one authorization attempt:
    :class:`PkcePair` and :class:`AuthorizationRequest`.

**Wire models** -- decoded from the provider's token endpoint:
    :class:`TokenResponse`.

**Persisted models** -- serialised as JSON:
    :class:`AccountCredential` (secret store only), :class:`AccountConfig`,
    :class:`ProviderConfig`, :class:`HttpConfig`, and :class:`GlobalConfig`
    (config directory).

All models use Pydantic v2. Secret-bearing fields are excluded from
``repr`` so that they never leak into logs or tracebacks.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# --- Flow models ---


class PkcePair(BaseModel):
    """A PKCE ``code_verifier`` / ``code_challenge`` pair (:rfc:`7636`).

    The ``challenge`` is always ``base64url_no_pad(SHA256(verifier))``; see
    :func:`mailauth.oauth.pkce.generate_pkce_pair`. The verifier is only sent
    to the token endpoint, never in the authorization URL.
    """

    model_config = ConfigDict(frozen=True)

    verifier: str = Field(repr=False, min_length=43, max_length=128)
    challenge: str


class AuthorizationRequest(BaseModel):
    """Immutable set of query parameters for the provider's authorization endpoint.

    Built by :func:`mailauth.oauth.url.build_authorization_request` and
    rendered once into a URL string. ``redirect_uri`` is an out-of-band
    value; no local listener ever receives the redirect.
    """

    model_config = ConfigDict(frozen=True)

    authorization_endpoint: str
    client_id: str
    scope: str
    redirect_uri: str
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"
    response_type: str = "code"
    access_type: str = "offline"

    def query_params(self) -> list[tuple[str, str]]:
        """Return the query parameters in a stable order."""
        return [
            ("client_id", self.client_id),
            ("response_type", self.response_type),
            ("redirect_uri", self.redirect_uri),
            ("scope", self.scope),
            ("state", self.state),
            ("code_challenge", self.code_challenge),
            ("code_challenge_method", self.code_challenge_method),
            ("access_type", self.access_type),
        ]


# --- Wire models ---


class TokenResponse(BaseModel):
    """Successful response from the provider's token endpoint.

    ``refresh_token`` is absent when the user already granted offline
    access and the provider does not re-issue it. Unknown fields such as
    ``id_token`` are kept in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(repr=False, min_length=1)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


# --- Persisted models ---


class AccountCredential(BaseModel):
    """Token material persisted in the secret store, one entry per account.

    Created on the first successful exchange, replaced on every refresh,
    and deleted together with the account.

    Attributes:
        account: Account name used as the secret-store key.
        provider: Provider identifier (``"gmail"``, ``"outlook"``...).
        access_token: Current OAuth access token.
        refresh_token: Long-lived refresh token, if the provider issued one.
        token_type: Usually ``"Bearer"``.
        scope: Space-separated scopes actually granted.
        expires_at: UTC expiry of ``access_token``, or ``None`` if unknown.
        obtained_at: When the token material was last written.
        client_secret: OAuth client secret needed to refresh the token.
    """

    account: str
    provider: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    obtained_at: datetime = Field(default_factory=utcnow)
    client_secret: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_token_response(
        cls,
        account: str,
        provider: str,
        token: TokenResponse,
        client_secret: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccountCredential:
        """Build a credential from a fresh :class:`TokenResponse`."""
        now = now or utcnow()
        expires_at = None
        if token.expires_in is not None:
            expires_at = now + timedelta(seconds=token.expires_in)
        return cls(
            account=account,
            provider=provider,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            scope=token.scope,
            expires_at=expires_at,
            obtained_at=now,
            client_secret=client_secret,
        )

    def is_expired(self, margin: float = 30.0, now: Optional[datetime] = None) -> bool:
        """Return ``True`` if the access token expires within *margin* seconds."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now >= expires - timedelta(seconds=margin)


class ProviderConfig(BaseModel):
    """OAuth endpoints and default scopes for a mail provider.

    Built-in presets live in :mod:`mailauth.providers`; additional providers
    can be declared under ``providers`` in :class:`GlobalConfig`.
    """

    name: str
    authorization_url: str
    token_url: str
    scopes: list[str] = Field(default_factory=list)
    redirect_uri: str = "urn:ietf:wg:oauth:2.0:oob"

    def scope_string(self, scopes: Optional[list[str]] = None) -> str:
        """Join *scopes* (or the provider defaults) into a space-separated string."""
        return " ".join(scopes if scopes else self.scopes)


class AccountConfig(BaseModel):
    """Non-secret account settings stored under ``accounts/<name>.json``.

    Client secrets and tokens are never part of this model; they live in
    :class:`AccountCredential` inside the secret store.
    """

    name: str
    provider: str
    email: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class HttpConfig(BaseModel):
    """HTTP settings for calls to the provider's token endpoint."""

    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    max_retries: int = Field(
        default=2, ge=0, description="Retries after a transport failure (timeouts excluded)"
    )


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/mailauth/config.json``.

    Loaded and saved by :func:`~mailauth.config.load_global_config` and
    :func:`~mailauth.config.save_global_config`. When the file does not
    exist the defaults below apply.
    """

    default_account: Optional[str] = None
    default_provider: str = "gmail"
    max_code_attempts: int = Field(
        default=3, ge=1, description="Prompts for a non-empty authorization code"
    )
    http: HttpConfig = Field(default_factory=HttpConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)


class AccountSetup(BaseModel):
    """Answers collected before the authorization URL is shown.

    Produced by the credential prompt (see
    :func:`mailauth.commands.authorize.prompt_account_setup`) and consumed by
    :class:`~mailauth.flow.AuthorizationFlow`.
    """

    account: str
    email: str
    client_id: str = Field(min_length=1)
    client_secret: str = Field(repr=False, min_length=1)
    scopes: list[str] = Field(default_factory=list)
