"""Shared test fixtures for mailauth.

Provides reusable fixtures for isolating config and data directories,
resetting output state, in-memory secret stores, and a mock token
endpoint built on :class:`httpx.MockTransport`. These fixtures are
automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest

from mailauth.exceptions import CredentialStoreError
from mailauth.models import AccountSetup
from mailauth.oauth.pkce import compute_code_challenge
from mailauth.output import reset_output
from mailauth.store import CredentialStore, SecretStore


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager and the mailauth logger after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time; CliRunner swaps those streams per invocation.
    """
    yield
    reset_output()
    logger = logging.getLogger("mailauth")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration and data to a temporary directory.

    Forces the XDG layout, points XDG_CONFIG_HOME and XDG_DATA_HOME at
    subdirectories of tmp_path, and clears all MAILAUTH_* variables.

    Returns:
        The tmp_path root directory.
    """
    monkeypatch.setattr("mailauth.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ["MAILAUTH_ACCOUNT", "MAILAUTH_CLIENT_ID", "MAILAUTH_CLIENT_SECRET"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Secret stores
# ---------------------------------------------------------------------------


class MemorySecretStore(SecretStore):
    """Dict-backed secret store for tests."""

    def __init__(self) -> None:
        self.secrets: dict[str, str] = {}

    def set_secret(self, key: str, value: str) -> None:
        self.secrets[key] = value

    def get_secret(self, key: str) -> Optional[str]:
        return self.secrets.get(key)

    def delete_secret(self, key: str) -> None:
        self.secrets.pop(key, None)


class FailingSecretStore(MemorySecretStore):
    """Secret store whose writes always fail."""

    def set_secret(self, key: str, value: str) -> None:
        raise CredentialStoreError("keyring locked: permission denied")


@pytest.fixture
def memory_secrets() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def failing_secrets() -> FailingSecretStore:
    return FailingSecretStore()


@pytest.fixture
def credential_store(memory_secrets: MemorySecretStore) -> CredentialStore:
    return CredentialStore(memory_secrets)


@pytest.fixture
def account_setup() -> AccountSetup:
    return AccountSetup(
        account="work",
        email="me@example.com",
        client_id="cid",
        client_secret="csec",
    )


# ---------------------------------------------------------------------------
# Mock token endpoint
# ---------------------------------------------------------------------------


class MockTokenEndpoint:
    """A token endpoint that behaves like a real provider for PKCE exchanges.

    Codes must be registered with :meth:`issue_code` together with the
    challenge that was sent in the authorization URL. Exchanges succeed
    only for a registered, unused code whose ``code_verifier`` hashes to
    that challenge; every code can be used once.
    """

    def __init__(
        self,
        token_body: Optional[dict[str, Any]] = None,
        client_id: str = "cid",
        client_secret: str = "csec",
    ) -> None:
        self.token_body = token_body or {
            "access_token": "AT",
            "refresh_token": "RT",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.client_id = client_id
        self.client_secret = client_secret
        self.challenges: dict[str, str] = {}
        self.used_codes: set[str] = set()
        self.requests: list[dict[str, str]] = []

    def issue_code(self, code: str, challenge: str) -> None:
        self.challenges[code] = challenge

    def _error(self, error: str, description: str, status: int = 400) -> httpx.Response:
        return httpx.Response(
            status, json={"error": error, "error_description": description}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)

        if form.get("client_id") != self.client_id or (
            form.get("client_secret") != self.client_secret
        ):
            return self._error("invalid_client", "Unauthorized client", 401)

        if form.get("grant_type") == "refresh_token":
            body = {"access_token": "AT2", "expires_in": 3600, "token_type": "Bearer"}
            return httpx.Response(200, json=body)

        code = form.get("code", "")
        if code in self.used_codes:
            return self._error("invalid_grant", "Code was already redeemed.")
        challenge = self.challenges.get(code)
        if challenge is None:
            return self._error("invalid_grant", "Malformed auth code.")
        self.used_codes.add(code)
        if compute_code_challenge(form.get("code_verifier", "")) != challenge:
            return self._error("invalid_grant", "Invalid code verifier.")
        return httpx.Response(200, content=json.dumps(self.token_body).encode())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def token_endpoint() -> MockTokenEndpoint:
    return MockTokenEndpoint()

