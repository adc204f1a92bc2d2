"""PKCE material and CSRF state generation (:rfc:`7636`).

Verifiers and state tokens are drawn character by character from the
unreserved set ``[A-Za-z0-9-._~]`` using :mod:`secrets`, which reads the
operating system's CSPRNG. If the OS cannot provide entropy the error is
surfaced as :class:`~mailauth.exceptions.EntropyUnavailable`; there is no
fallback to :mod:`random`.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from mailauth.exceptions import EntropyUnavailable
from mailauth.models import PkcePair

PKCE_CHARSET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
    "-._~"
)
"""Unreserved characters allowed in a code verifier (RFC 7636 section 4.1)."""

VERIFIER_LENGTH = 128
STATE_LENGTH = 32


def _random_string(length: int) -> str:
    try:
        return "".join(secrets.choice(PKCE_CHARSET) for _ in range(length))
    except (NotImplementedError, OSError) as exc:
        raise EntropyUnavailable(
            f"Secure random source unavailable: {exc}"
        ) from exc


def compute_code_challenge(verifier: str) -> str:
    """Return the S256 code challenge for *verifier*.

    SHA-256 over the verifier's ASCII bytes, base64url-encoded with the
    ``=`` padding stripped.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> PkcePair:
    """Generate a PKCE verifier (128 characters) and its S256 challenge.

    Returns:
        A frozen :class:`~mailauth.models.PkcePair`.

    Raises:
        EntropyUnavailable: If the OS random source cannot be read.
    """
    verifier = _random_string(VERIFIER_LENGTH)
    return PkcePair(verifier=verifier, challenge=compute_code_challenge(verifier))


def generate_state() -> str:
    """Generate a 32-character CSRF state token from the PKCE character set.

    Raises:
        EntropyUnavailable: If the OS random source cannot be read.
    """
    return _random_string(STATE_LENGTH)
