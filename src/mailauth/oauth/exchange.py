"""Token endpoint client: authorization-code exchange and refresh.

:class:`TokenExchanger` performs exactly one form-encoded POST per call
and maps every failure to a distinct error:

* transport failure -- :class:`~mailauth.exceptions.TransportError`
  (:class:`~mailauth.exceptions.FlowTimeoutError` for timeouts)
* non-2xx answer -- :class:`~mailauth.exceptions.ProviderRejected` carrying
  the OAuth ``error`` / ``error_description``
* undecodable or incomplete 2xx body --
  :class:`~mailauth.exceptions.ResponseFormatError`

It never retries by itself. Authorization codes are single-use, so a
replayed exchange is expected to come back as ``ProviderRejected``; any
retry policy belongs to :class:`~mailauth.flow.AuthorizationFlow`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from mailauth.exceptions import (
    FlowTimeoutError,
    ProviderRejected,
    ResponseFormatError,
    TransportError,
)
from mailauth.models import ProviderConfig, TokenResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class TokenExchanger:
    """Client for a provider's OAuth token endpoint.

    Args:
        token_url: Absolute URL of the token endpoint.
        redirect_uri: The redirect URI sent in the authorization request;
            providers check it again during the exchange.
        timeout: Per-request timeout in seconds.
        transport: Optional :class:`httpx.BaseTransport`, mainly for tests
            (e.g. :class:`httpx.MockTransport`).

    Example::

        exchanger = TokenExchanger.for_provider(GMAIL)
        token = exchanger.exchange_code_for_tokens(code, pkce.verifier, "cid", "csec")
    """

    def __init__(
        self,
        token_url: str,
        redirect_uri: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._token_url = token_url
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def for_provider(
        cls,
        provider: ProviderConfig,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> TokenExchanger:
        """Create an exchanger for *provider*'s token endpoint."""
        return cls(provider.token_url, provider.redirect_uri, timeout, transport)

    @property
    def token_url(self) -> str:
        return self._token_url

    def exchange_code_for_tokens(
        self,
        code: str,
        verifier: str,
        client_id: str,
        client_secret: str,
    ) -> TokenResponse:
        """Exchange an authorization code for access and refresh tokens.

        Args:
            code: The authorization code pasted by the user.
            verifier: The PKCE ``code_verifier`` whose challenge was sent in
                the authorization URL.
            client_id: OAuth client identifier.
            client_secret: OAuth client secret.

        Returns:
            The decoded :class:`~mailauth.models.TokenResponse`.

        Raises:
            TransportError: On network failure (``FlowTimeoutError`` on timeout).
            ProviderRejected: If the endpoint answers with a non-2xx status.
            ResponseFormatError: If the body is not a token response.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self._redirect_uri,
        }
        return self._post(data)

    def refresh_access_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: Optional[str] = None,
    ) -> TokenResponse:
        """Obtain a new access token with ``grant_type=refresh_token``.

        Raises the same errors as :meth:`exchange_code_for_tokens`.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        if client_secret:
            data["client_secret"] = client_secret
        return self._post(data)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _post(self, data: dict[str, str]) -> TokenResponse:
        logger.debug("POST %s (grant_type=%s)", self._token_url, data["grant_type"])
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    self._token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise FlowTimeoutError(
                f"Token endpoint did not answer within {self._timeout:g}s"
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Token request failed: {exc}") from exc

        logger.debug("Token endpoint answered HTTP %s", response.status_code)
        if not response.is_success:
            raise self._rejection(response)
        return self._decode(response)

    @staticmethod
    def _rejection(response: httpx.Response) -> ProviderRejected:
        """Build a :class:`ProviderRejected` from an error response."""
        body: Any = None
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            pass

        if isinstance(body, dict) and isinstance(body.get("error"), str):
            return ProviderRejected(
                body["error"],
                body.get("error_description"),
                status_code=response.status_code,
            )
        text = response.text[:200] if response.text else None
        return ProviderRejected(
            f"http_{response.status_code}", text, status_code=response.status_code
        )

    @staticmethod
    def _decode(response: httpx.Response) -> TokenResponse:
        """Decode a 2xx body into a :class:`TokenResponse`."""
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise ResponseFormatError(
                f"Token response is not valid JSON: {exc}"
            ) from exc

        if not isinstance(body, dict):
            raise ResponseFormatError("Token response is not a JSON object")
        if not body.get("access_token"):
            raise ResponseFormatError("Token response missing 'access_token' field")

        try:
            return TokenResponse.model_validate(body)
        except ValidationError as exc:
            raise ResponseFormatError(f"Invalid token response: {exc}") from exc
