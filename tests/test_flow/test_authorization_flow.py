"""Tests for the AuthorizationFlow state machine."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mailauth.config import account_exists, load_account
from mailauth.exceptions import EmptyCodeError, FlowFailed
from mailauth.flow import AuthorizationFlow, FlowLock, FlowState
from mailauth.models import AccountSetup, TokenResponse
from mailauth.oauth.exchange import TokenExchanger
from mailauth.oauth.pkce import compute_code_challenge
from mailauth.providers import GMAIL, OOB_REDIRECT_URI
from mailauth.store import CredentialStore

TOKEN_URL = "https://oauth2.example.com/token"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeUser:
    """Plays the user: reads the presented URL and pastes values back.

    When the URL is presented, ``code`` is registered with the mock token
    endpoint for the challenge found in it, as the provider would.
    """

    def __init__(self, endpoint=None, pastes: Optional[list[str]] = None, code: str = "4/abc"):
        self.endpoint = endpoint
        self.pastes = list(pastes) if pastes is not None else [code]
        self.code = code
        self.urls: list[str] = []
        self.reads = 0

    @property
    def params(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlparse(self.urls[-1]).query).items()}

    def present(self, url: str) -> None:
        self.urls.append(url)
        if self.endpoint is not None:
            self.endpoint.issue_code(self.code, self.params["code_challenge"])

    def read(self) -> str:
        self.reads += 1
        value = self.pastes.pop(0).strip()
        if not value:
            raise EmptyCodeError()
        return value


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_flow(isolated_config: Path, credential_store: CredentialStore, sleeps: list[float]):
    def _make(
        user: FakeUser,
        transport: httpx.BaseTransport,
        store: Optional[CredentialStore] = None,
        **kwargs,
    ) -> AuthorizationFlow:
        exchanger = TokenExchanger(TOKEN_URL, OOB_REDIRECT_URI, transport=transport)
        return AuthorizationFlow(
            GMAIL,
            store or credential_store,
            exchanger=exchanger,
            present_url=user.present,
            read_code=user.read,
            lock_dir=isolated_config / "locks",
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


def _always(respond):
    """Handler that answers every request with respond(request) and records it."""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return respond(request)

    handler.calls = calls  # type: ignore[attr-defined]
    return handler


def _raise(exc_type: type[httpx.RequestError], message: str):
    def respond(request: httpx.Request) -> httpx.Response:
        raise exc_type(message, request=request)

    return respond


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulFlow:
    def test_end_to_end(
        self, make_flow, token_endpoint, credential_store, account_setup
    ) -> None:
        user = FakeUser(token_endpoint)
        flow = make_flow(user, token_endpoint.transport)

        with patch("mailauth.flow.success") as mock_success:
            credential = flow.run(account_setup)

        assert flow.state is FlowState.COMPLETE
        assert flow.failure is None
        assert credential.access_token == "AT"
        assert credential.refresh_token == "RT"
        stored = credential_store.load("work")
        assert stored.access_token == "AT"
        assert stored.refresh_token == "RT"
        assert stored.client_secret == "csec"
        mock_success.assert_called_once_with('Account "work" authorized.')

    def test_account_file_written_without_secrets(
        self, make_flow, token_endpoint, account_setup, isolated_config: Path
    ) -> None:
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        flow.run(account_setup)

        account = load_account("work")
        assert account.provider == "gmail"
        assert account.email == "me@example.com"
        assert account.client_id == "cid"
        text = (isolated_config / "config" / "mailauth" / "accounts" / "work.json").read_text()
        assert "csec" not in text
        assert "RT" not in text

    def test_verifier_sent_matches_challenge_in_url(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        user = FakeUser(token_endpoint)
        make_flow(user, token_endpoint.transport).run(account_setup)

        sent = token_endpoint.requests[0]
        assert compute_code_challenge(sent["code_verifier"]) == user.params["code_challenge"]
        assert sent["code_verifier"] not in user.urls[0]
        assert sent["code"] == "4/abc"
        assert sent["redirect_uri"] == OOB_REDIRECT_URI

    def test_url_parameters(self, make_flow, token_endpoint, account_setup) -> None:
        user = FakeUser(token_endpoint)
        flow = make_flow(user, token_endpoint.transport)
        flow.run(account_setup)

        params = user.params
        assert params["client_id"] == "cid"
        assert params["scope"] == "https://mail.google.com/"
        assert params["code_challenge_method"] == "S256"
        assert params["state"] == flow.csrf_state

    def test_verifier_discarded_after_completion(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        flow.run(account_setup)
        assert flow.pkce is None

    def test_credentials_from_prompt_collaborator(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        flow = make_flow(
            FakeUser(token_endpoint),
            token_endpoint.transport,
            prompt_credentials=lambda: account_setup,
        )
        flow.run()
        assert flow.setup == account_setup

    def test_code_with_matching_state(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        user = FakeUser(token_endpoint)
        flow = make_flow(user, token_endpoint.transport)
        flow.collect_credentials(account_setup)
        flow.present_authorization()
        assert flow.state is FlowState.AUTHORIZATION_PRESENTED

        flow.submit_code(f"4/abc#{flow.csrf_state}")
        assert flow.state is FlowState.AWAITING_CODE
        flow.exchange()
        assert flow.state is FlowState.EXCHANGING
        flow.store()
        assert flow.state is FlowState.COMPLETE

    def test_pasted_redirect_url(self, make_flow, token_endpoint, account_setup) -> None:
        user = FakeUser(token_endpoint)
        flow = make_flow(user, token_endpoint.transport)
        flow.collect_credentials(account_setup)
        flow.present_authorization()
        flow.submit_code(f"https://example.com/cb?code=4%2Fabc&state={flow.csrf_state}")
        flow.exchange()
        assert flow.store().access_token == "AT"

    def test_secrets_never_logged(
        self, make_flow, token_endpoint, account_setup, caplog: pytest.LogCaptureFixture
    ) -> None:
        token_endpoint.token_body = {
            "access_token": "ya29.access-value",
            "refresh_token": "1//refresh-value",
            "expires_in": 3600,
        }
        user = FakeUser(token_endpoint, code="4/code-value")
        with caplog.at_level(logging.DEBUG, logger="mailauth"):
            make_flow(user, token_endpoint.transport).run(account_setup)

        verifier = token_endpoint.requests[0]["code_verifier"]
        for secret in ("ya29.access-value", "1//refresh-value", "4/code-value", "csec", verifier):
            assert secret not in caplog.text


# ---------------------------------------------------------------------------
# Code prompt
# ---------------------------------------------------------------------------


class TestCodePrompt:
    def test_reprompts_on_empty_code(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        user = FakeUser(token_endpoint, pastes=["", "   ", "4/abc"])
        flow = make_flow(user, token_endpoint.transport, max_code_attempts=3)

        with patch("mailauth.flow.warning") as mock_warning:
            flow.run(account_setup)

        assert user.reads == 3
        assert mock_warning.call_count == 2
        assert flow.state is FlowState.COMPLETE

    def test_fails_after_max_attempts(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        user = FakeUser(token_endpoint, pastes=["", "", "", "4/abc"])
        flow = make_flow(user, token_endpoint.transport, max_code_attempts=3)

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)

        assert user.reads == 3
        assert exc_info.value.state == "awaiting_code"
        assert exc_info.value.reason_name == "EmptyCodeError"
        assert token_endpoint.requests == []

    def test_submit_empty_code(self, make_flow, token_endpoint, account_setup) -> None:
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        flow.collect_credentials(account_setup)
        flow.present_authorization()
        with pytest.raises(FlowFailed) as exc_info:
            flow.submit_code("   ")
        assert exc_info.value.reason_name == "EmptyCodeError"

    def test_state_mismatch(self, make_flow, token_endpoint, account_setup) -> None:
        user = FakeUser(token_endpoint, pastes=["4/abc#forged-state"])
        flow = make_flow(user, token_endpoint.transport)

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)

        assert exc_info.value.reason_name == "StateMismatchError"
        assert token_endpoint.requests == []

    def test_denied_consent(self, make_flow, token_endpoint, account_setup) -> None:
        user = FakeUser(
            token_endpoint, pastes=["https://example.com/cb?error=access_denied"]
        )
        with pytest.raises(FlowFailed) as exc_info:
            make_flow(user, token_endpoint.transport).run(account_setup)
        assert exc_info.value.reason_name == "ProviderRejected"


# ---------------------------------------------------------------------------
# Exchange failures and retries
# ---------------------------------------------------------------------------


class TestExchangeFailures:
    def test_rejected_code_is_not_retried(
        self, make_flow, token_endpoint, account_setup, sleeps
    ) -> None:
        user = FakeUser(token_endpoint, pastes=["4/unknown"])
        flow = make_flow(user, token_endpoint.transport)

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)

        assert exc_info.value.state == "exchanging"
        assert exc_info.value.reason_name == "ProviderRejected"
        assert exc_info.value.reason.code == "invalid_grant"
        assert len(token_endpoint.requests) == 1
        assert sleeps == []
        assert flow.pkce is None

    def test_transport_error_is_retried(
        self, make_flow, account_setup, sleeps
    ) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"access_token": "AT", "refresh_token": "RT"})

        flow = make_flow(FakeUser(), httpx.MockTransport(handler), max_retries=2)
        flow.run(account_setup)

        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]
        assert flow.state is FlowState.COMPLETE

    def test_transport_error_exhausts_retries(
        self, make_flow, account_setup, sleeps
    ) -> None:
        handler = _always(_raise(httpx.ConnectError, "unreachable"))
        flow = make_flow(FakeUser(), httpx.MockTransport(handler), max_retries=2)

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)

        assert len(handler.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert exc_info.value.reason_name == "TransportError"
        assert exc_info.value.exit_code == 6

    def test_timeout_is_not_retried(self, make_flow, account_setup, sleeps) -> None:
        handler = _always(_raise(httpx.ReadTimeout, "slow"))
        flow = make_flow(FakeUser(), httpx.MockTransport(handler))

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)

        assert len(handler.calls) == 1
        assert sleeps == []
        assert exc_info.value.reason_name == "Timeout"
        assert flow.state is FlowState.FAILED

    def test_malformed_response(self, make_flow, account_setup) -> None:
        handler = _always(lambda request: httpx.Response(200, text="not json"))
        flow = make_flow(FakeUser(), httpx.MockTransport(handler))

        with pytest.raises(FlowFailed) as exc_info:
            flow.run(account_setup)
        assert exc_info.value.reason_name == "ResponseFormatError"


# ---------------------------------------------------------------------------
# Storing
# ---------------------------------------------------------------------------


class TestStoring:
    def test_store_failure_fails_flow_without_success_message(
        self, make_flow, token_endpoint, account_setup, failing_secrets
    ) -> None:
        flow = make_flow(
            FakeUser(token_endpoint),
            token_endpoint.transport,
            store=CredentialStore(failing_secrets),
        )

        with patch("mailauth.flow.success") as mock_success:
            with pytest.raises(FlowFailed) as exc_info:
                flow.run(account_setup)

        assert exc_info.value.state == "storing"
        assert exc_info.value.reason_name == "CredentialStoreError"
        assert exc_info.value.exit_code == 8
        assert flow.state is FlowState.FAILED
        assert flow.failure is exc_info.value
        assert flow.credential is None
        mock_success.assert_not_called()
        assert not account_exists("work")

    def test_missing_refresh_token_keeps_previous(
        self, make_flow, token_endpoint, credential_store, account_setup
    ) -> None:
        credential_store.store(
            "work", TokenResponse(access_token="old-AT", refresh_token="old-RT"), "gmail"
        )
        token_endpoint.token_body = {"access_token": "AT", "expires_in": 3600}
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)

        with patch("mailauth.flow.warning") as mock_warning:
            credential = flow.run(account_setup)

        assert credential.access_token == "AT"
        assert credential.refresh_token == "old-RT"
        assert credential_store.load("work").refresh_token == "old-RT"
        mock_warning.assert_called_once()

    def test_unreadable_previous_credential_is_replaced(
        self, make_flow, token_endpoint, memory_secrets, credential_store, account_setup
    ) -> None:
        memory_secrets.secrets["work"] = "{not json"
        token_endpoint.token_body = {"access_token": "AT"}
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)

        with patch("mailauth.flow.warning") as mock_warning:
            credential = flow.run(account_setup)

        assert flow.state is FlowState.COMPLETE
        assert credential.access_token == "AT"
        assert credential_store.load("work").access_token == "AT"
        messages = [call.args[0] for call in mock_warning.call_args_list]
        assert any("could not be read" in message for message in messages)
        assert any("refresh token" in message for message in messages)

    def test_missing_refresh_token_warns(
        self, make_flow, token_endpoint, credential_store, account_setup
    ) -> None:
        token_endpoint.token_body = {"access_token": "AT"}
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)

        with patch("mailauth.flow.warning") as mock_warning:
            credential = flow.run(account_setup)

        assert credential.refresh_token is None
        assert "refresh token" in mock_warning.call_args.args[0]

    def test_reauthorizing_keeps_created_at(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        make_flow(FakeUser(token_endpoint), token_endpoint.transport).run(account_setup)
        created = load_account("work").created_at

        user = FakeUser(token_endpoint, code="4/second")
        make_flow(user, token_endpoint.transport).run(account_setup)

        account = load_account("work")
        assert account.created_at == created
        assert account.updated_at >= created


# ---------------------------------------------------------------------------
# Concurrency and step order
# ---------------------------------------------------------------------------


class TestLocking:
    def test_concurrent_flow_for_same_account_is_rejected(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        first = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        first.collect_credentials(account_setup)

        second = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        with pytest.raises(FlowFailed) as exc_info:
            second.run(account_setup)
        assert exc_info.value.reason_name == "FlowInProgressError"
        assert exc_info.value.state == "init"

    def test_lock_released_after_completion(
        self, make_flow, token_endpoint, account_setup, isolated_config: Path
    ) -> None:
        make_flow(FakeUser(token_endpoint), token_endpoint.transport).run(account_setup)
        assert not (isolated_config / "locks" / "work.lock").exists()

        user = FakeUser(token_endpoint, code="4/again")
        make_flow(user, token_endpoint.transport).run(account_setup)

    def test_lock_released_after_failure(
        self, make_flow, token_endpoint, account_setup, isolated_config: Path
    ) -> None:
        user = FakeUser(token_endpoint, pastes=["4/unknown"])
        with pytest.raises(FlowFailed):
            make_flow(user, token_endpoint.transport).run(account_setup)
        assert not (isolated_config / "locks" / "work.lock").exists()

    def test_different_accounts_do_not_conflict(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        first = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        first.collect_credentials(account_setup)

        other = AccountSetup(
            account="home", email="me@home.example", client_id="cid", client_secret="csec"
        )
        second = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        second.collect_credentials(other)
        assert second.state is FlowState.AWAITING_CREDENTIALS

    def test_stale_lock_is_reclaimed(self, tmp_path: Path) -> None:
        lock_dir = tmp_path / "locks"
        lock_dir.mkdir()
        (lock_dir / "work.lock").write_text("999999999")

        with FlowLock("work", lock_dir) as lock:
            assert lock.held
            assert (lock_dir / "work.lock").read_text() == str(os.getpid())
        assert not (lock_dir / "work.lock").exists()


class TestStepOrder:
    def test_exchange_before_code_is_rejected(self, make_flow, token_endpoint) -> None:
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        with pytest.raises(RuntimeError, match="expected 'awaiting_code'"):
            flow.exchange()
        assert flow.state is FlowState.INIT

    def test_no_steps_after_failure(
        self, make_flow, token_endpoint, account_setup
    ) -> None:
        user = FakeUser(token_endpoint, pastes=["4/unknown"])
        flow = make_flow(user, token_endpoint.transport)
        with pytest.raises(FlowFailed):
            flow.run(account_setup)
        with pytest.raises(RuntimeError):
            flow.store()

    def test_missing_credentials_without_prompt(self, make_flow, token_endpoint) -> None:
        flow = make_flow(FakeUser(token_endpoint), token_endpoint.transport)
        with pytest.raises(FlowFailed) as exc_info:
            flow.run()
        assert exc_info.value.reason_name == "ConfigError"
