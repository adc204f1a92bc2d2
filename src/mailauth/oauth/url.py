"""Authorization URL builder.

Pure functions: no network access and no randomness. Identical inputs
always yield an identical URL, and every parameter value is
percent-encoded with :func:`urllib.parse.quote` and an empty ``safe`` set,
so reserved characters (``&``, ``=``, ``/``, ``:``, space...) can never
leak into the query structure.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode

from mailauth.models import AuthorizationRequest, ProviderConfig
from mailauth.providers import GMAIL


def build_authorization_request(
    client_id: str,
    scope: str,
    state: str,
    challenge: str,
    provider: ProviderConfig = GMAIL,
    redirect_uri: Optional[str] = None,
) -> AuthorizationRequest:
    """Assemble the immutable :class:`~mailauth.models.AuthorizationRequest`.

    Args:
        client_id: OAuth client identifier.
        scope: Space-separated scope string.
        state: CSRF state token from :func:`~mailauth.oauth.pkce.generate_state`.
        challenge: S256 PKCE code challenge.
        provider: Provider whose authorization endpoint is used.
        redirect_uri: Override for the provider's out-of-band redirect URI.
    """
    return AuthorizationRequest(
        authorization_endpoint=provider.authorization_url,
        client_id=client_id,
        scope=scope,
        redirect_uri=redirect_uri or provider.redirect_uri,
        state=state,
        code_challenge=challenge,
    )


def render_authorization_url(request: AuthorizationRequest) -> str:
    """Render *request* as a URL string with a percent-encoded query."""
    query = urlencode(request.query_params(), quote_via=quote)
    endpoint = request.authorization_endpoint
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{query}"


def build_authorization_url(
    client_id: str,
    scope: str,
    state: str,
    challenge: str,
    provider: ProviderConfig = GMAIL,
) -> str:
    """Build the provider authorization URL for the manual copy-paste flow.

    Example::

        url = build_authorization_url("cid", "https://mail.google.com/", "st", "ch")
        # https://accounts.google.com/o/oauth2/v2/auth?client_id=cid&response_type=code&...
    """
    request = build_authorization_request(client_id, scope, state, challenge, provider)
    return render_authorization_url(request)
