"""OAuth 2.0 Authorization Code + PKCE building blocks.

The leaves of the authorization flow, each usable on its own:

* :mod:`~mailauth.oauth.pkce` -- verifier/challenge pairs and CSRF state.
* :mod:`~mailauth.oauth.url` -- the provider authorization URL.
* :mod:`~mailauth.oauth.collector` -- reading the pasted code from the terminal.
* :mod:`~mailauth.oauth.exchange` -- the code-for-token exchange and refresh.

:class:`~mailauth.flow.AuthorizationFlow` sequences them.
"""

from mailauth.oauth.collector import (
    PastedCode,
    present_authorization_url,
    prompt_for_authorization_code,
    split_pasted_code,
)
from mailauth.oauth.exchange import TokenExchanger
from mailauth.oauth.pkce import compute_code_challenge, generate_pkce_pair, generate_state
from mailauth.oauth.url import (
    build_authorization_request,
    build_authorization_url,
    render_authorization_url,
)

__all__ = [
    "PastedCode",
    "TokenExchanger",
    "build_authorization_request",
    "build_authorization_url",
    "compute_code_challenge",
    "generate_pkce_pair",
    "generate_state",
    "present_authorization_url",
    "prompt_for_authorization_code",
    "render_authorization_url",
    "split_pasted_code",
]
