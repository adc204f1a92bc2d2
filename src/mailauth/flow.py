"""Authorization flow orchestrator.

:class:`AuthorizationFlow` is an explicit state machine that owns the PKCE
verifier for the lifetime of one authorization attempt, including the
human-speed pause while the user switches to a browser::

    INIT -> AWAITING_CREDENTIALS -> AUTHORIZATION_PRESENTED -> AWAITING_CODE
         -> EXCHANGING -> STORING -> COMPLETE

Any failing step moves the flow to ``FAILED`` and raises
:class:`~mailauth.exceptions.FlowFailed`, which carries the state that
failed and the underlying error. The orchestrator is the only place that
decides on re-prompting, retrying, and user-visible messages; the
components in :mod:`mailauth.oauth` and :mod:`mailauth.store` only raise.

Only one flow per account may run at a time. :class:`FlowLock` enforces
this with an exclusive lock file, so a second attempt (in this or another
process) fails with :class:`~mailauth.exceptions.FlowInProgressError`.
"""

from __future__ import annotations

import enum
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from mailauth.config import (
    account_exists,
    get_data_dir,
    load_account,
    save_account,
    validate_account_name,
)
from mailauth.exceptions import (
    ConfigError,
    CredentialStoreError,
    EmptyCodeError,
    FlowFailed,
    FlowInProgressError,
    MailauthError,
    StateMismatchError,
    TransportError,
)
from mailauth.models import (
    AccountConfig,
    AccountCredential,
    AccountSetup,
    PkcePair,
    ProviderConfig,
    TokenResponse,
    utcnow,
)
from mailauth.oauth.collector import (
    PastedCode,
    present_authorization_url,
    prompt_for_authorization_code,
    split_pasted_code,
)
from mailauth.oauth.exchange import TokenExchanger
from mailauth.oauth.pkce import generate_pkce_pair, generate_state
from mailauth.oauth.url import build_authorization_request, render_authorization_url
from mailauth.output import info, success, warning
from mailauth.store import CredentialStore

logger = logging.getLogger(__name__)


class FlowState(str, enum.Enum):
    """States of :class:`AuthorizationFlow`. ``COMPLETE`` and ``FAILED`` are terminal."""

    INIT = "init"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AUTHORIZATION_PRESENTED = "authorization_presented"
    AWAITING_CODE = "awaiting_code"
    EXCHANGING = "exchanging"
    STORING = "storing"
    COMPLETE = "complete"
    FAILED = "failed"


class FlowLock:
    """Exclusive per-account lock file held while a flow is in flight.

    The lock file ``<data_dir>/locks/<account>.lock`` is created with
    ``O_EXCL`` and holds the owner's PID. A lock left behind by a process
    that no longer exists is reclaimed.

    Args:
        account: Account name the lock protects.
        directory: Lock directory. Defaults to ``get_data_dir() / "locks"``.
    """

    def __init__(self, account: str, directory: Optional[Path] = None) -> None:
        self._account = validate_account_name(account)
        self._directory = directory
        self._path: Optional[Path] = None

    @property
    def path(self) -> Path:
        directory = self._directory or (get_data_dir() / "locks")
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{self._account}.lock"

    @property
    def held(self) -> bool:
        return self._path is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            FlowInProgressError: If another live flow holds it.
        """
        path = self.path
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if _lock_is_stale(path):
                    logger.debug("Reclaiming stale lock %s", path)
                    path.unlink(missing_ok=True)
                    continue
                raise FlowInProgressError(
                    f"An authorization for account '{self._account}' is already in progress"
                ) from None
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            self._path = path
            return
        raise FlowInProgressError(
            f"Could not lock account '{self._account}' ({path})"
        )

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        if self._path is not None:
            self._path.unlink(missing_ok=True)
            self._path = None

    def __enter__(self) -> FlowLock:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


def _lock_is_stale(path: Path) -> bool:
    """Return ``True`` if the PID recorded in *path* is no longer running."""
    try:
        pid = int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        # Half-written by a concurrent acquire.
        return False
    if pid == os.getpid():
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except OSError:
        return False
    return False


CredentialPrompt = Callable[[], AccountSetup]


class AuthorizationFlow:
    """Stateful orchestrator for one copy-paste authorization attempt.

    Each step method checks that the flow is in the expected state,
    performs one transition, and returns its result, so the flow can be
    driven one step at a time in tests without terminal I/O. :meth:`run`
    drives all steps in order.

    Args:
        provider: The mail provider being authorized.
        credential_store: Where the resulting tokens are persisted.
        exchanger: Token endpoint client. Defaults to one built from
            *provider* and *timeout*.
        prompt_credentials: External collaborator returning the
            :class:`~mailauth.models.AccountSetup` answers.
        present_url: Displays the authorization URL.
        read_code: Reads the pasted code; raises
            :class:`~mailauth.exceptions.EmptyCodeError` on empty input.
        max_code_attempts: Prompts allowed before an empty code is fatal.
        max_retries: Extra exchange attempts after a transport failure.
            Timeouts are never retried.
        backoff: Base delay in seconds between transport retries (doubled
            on each attempt).
        timeout: Token endpoint timeout when *exchanger* is not given.
        lock_dir: Directory for :class:`FlowLock` files.
        sleep: Delay function, replaceable in tests.

    Example::

        flow = AuthorizationFlow(GMAIL, CredentialStore(), prompt_credentials=ask)
        credential = flow.run()
    """

    def __init__(
        self,
        provider: ProviderConfig,
        credential_store: CredentialStore,
        exchanger: Optional[TokenExchanger] = None,
        prompt_credentials: Optional[CredentialPrompt] = None,
        present_url: Callable[[str], None] = present_authorization_url,
        read_code: Callable[[], str] = prompt_for_authorization_code,
        max_code_attempts: int = 3,
        max_retries: int = 2,
        backoff: float = 1.0,
        timeout: float = 30.0,
        lock_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._store = credential_store
        self._exchanger = exchanger or TokenExchanger.for_provider(provider, timeout=timeout)
        self._prompt_credentials = prompt_credentials
        self._present_url = present_url
        self._read_code = read_code
        self._max_code_attempts = max(1, max_code_attempts)
        self._max_retries = max(0, max_retries)
        self._backoff = backoff
        self._lock_dir = lock_dir
        self._sleep = sleep

        self._state = FlowState.INIT
        self._failure: Optional[FlowFailed] = None
        self._lock: Optional[FlowLock] = None
        self._setup: Optional[AccountSetup] = None
        self._pkce: Optional[PkcePair] = None
        self._csrf_state: Optional[str] = None
        self._auth_url: Optional[str] = None
        self._code: Optional[str] = None
        self._token: Optional[TokenResponse] = None
        self._credential: Optional[AccountCredential] = None

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def failure(self) -> Optional[FlowFailed]:
        """The ``Failed{reason}`` of a failed flow, else ``None``."""
        return self._failure

    @property
    def provider(self) -> ProviderConfig:
        return self._provider

    @property
    def setup(self) -> Optional[AccountSetup]:
        return self._setup

    @property
    def pkce(self) -> Optional[PkcePair]:
        """The in-flight PKCE pair; ``None`` before presentation and after the exchange."""
        return self._pkce

    @property
    def csrf_state(self) -> Optional[str]:
        return self._csrf_state

    @property
    def authorization_url(self) -> Optional[str]:
        return self._auth_url

    @property
    def credential(self) -> Optional[AccountCredential]:
        """The persisted credential once the flow is ``COMPLETE``."""
        return self._credential

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    def collect_credentials(self, setup: Optional[AccountSetup] = None) -> AccountSetup:
        """``INIT -> AWAITING_CREDENTIALS``: gather account and client identity.

        Uses *setup* when given, otherwise asks the ``prompt_credentials``
        collaborator. Takes the per-account lock.
        """
        self._expect(FlowState.INIT)
        with self._failing_on_error():
            if setup is None:
                if self._prompt_credentials is None:
                    raise ConfigError("No account details supplied and no prompt available")
                setup = self._prompt_credentials()
            validate_account_name(setup.account)
            lock = FlowLock(setup.account, self._lock_dir)
            lock.acquire()
            self._lock = lock
            self._setup = setup
            self._state = FlowState.AWAITING_CREDENTIALS
        logger.debug("Collected client identity for account '%s'", setup.account)
        return setup

    def present_authorization(self) -> str:
        """``AWAITING_CREDENTIALS -> AUTHORIZATION_PRESENTED``: build and show the URL."""
        self._expect(FlowState.AWAITING_CREDENTIALS)
        assert self._setup is not None
        with self._failing_on_error():
            pkce = generate_pkce_pair()
            csrf_state = generate_state()
            scope = self._provider.scope_string(self._setup.scopes)
            request = build_authorization_request(
                self._setup.client_id, scope, csrf_state, pkce.challenge, self._provider
            )
            url = render_authorization_url(request)
            self._pkce = pkce
            self._csrf_state = csrf_state
            self._auth_url = url
            self._present_url(url)
            self._state = FlowState.AUTHORIZATION_PRESENTED
        return url

    def await_code(self) -> str:
        """``AUTHORIZATION_PRESENTED -> AWAITING_CODE``: read the pasted code.

        Re-prompts on empty input up to ``max_code_attempts`` times.
        """
        self._expect(FlowState.AUTHORIZATION_PRESENTED)
        self._state = FlowState.AWAITING_CODE
        with self._failing_on_error():
            pasted = self._read_pasted_code()
            self._verify_state(pasted)
            self._code = pasted.code
        return pasted.code

    def submit_code(self, pasted: str) -> str:
        """Accept a pasted value directly, bypassing the terminal prompt.

        Valid from ``AUTHORIZATION_PRESENTED`` or ``AWAITING_CODE``.
        """
        self._expect(FlowState.AUTHORIZATION_PRESENTED, FlowState.AWAITING_CODE)
        self._state = FlowState.AWAITING_CODE
        with self._failing_on_error():
            value = pasted.strip()
            if not value:
                raise EmptyCodeError()
            parsed = split_pasted_code(value)
            self._verify_state(parsed)
            self._code = parsed.code
        return parsed.code

    def exchange(self) -> TokenResponse:
        """``AWAITING_CODE -> EXCHANGING``: trade the code and verifier for tokens.

        Transport failures are retried with exponential backoff; timeouts,
        provider rejections, and malformed responses are not. The
        verifier is discarded afterwards whatever the outcome.
        """
        self._expect(FlowState.AWAITING_CODE)
        if self._code is None:
            raise RuntimeError("No authorization code has been collected")
        assert self._setup is not None and self._pkce is not None
        self._state = FlowState.EXCHANGING
        info("Exchanging authorization code for tokens...")
        try:
            with self._failing_on_error():
                self._token = self._exchange_with_retry(self._code, self._pkce.verifier)
        finally:
            self._pkce = None
            self._code = None
        return self._token

    def store(self) -> AccountCredential:
        """``EXCHANGING -> STORING -> COMPLETE``: persist the tokens and account.

        A missing ``refresh_token`` is tolerated: the one already stored for
        the account is carried forward if there is one, and a warning is
        shown either way.
        """
        self._expect(FlowState.EXCHANGING)
        assert self._setup is not None and self._token is not None
        self._state = FlowState.STORING
        setup = self._setup
        with self._failing_on_error():
            token = self._token
            if not token.refresh_token:
                previous = self._previous_credential(setup.account)
                if previous is not None and previous.refresh_token:
                    token = token.model_copy(update={"refresh_token": previous.refresh_token})
                    warning(
                        "The provider did not issue a new refresh token; "
                        "keeping the one already stored for this account."
                    )
                else:
                    warning(
                        "The provider did not issue a refresh token. Access will stop "
                        "working when the access token expires; revoke the app's access "
                        "in your provider account settings and authorize again to get one."
                    )
            credential = self._store.store(
                setup.account,
                token,
                provider=self._provider.name,
                client_secret=setup.client_secret,
            )
            self._save_account(setup)
            self._credential = credential
            self._state = FlowState.COMPLETE
        self._release_lock()
        success(f'Account "{setup.account}" authorized.')
        return credential

    def run(self, setup: Optional[AccountSetup] = None) -> AccountCredential:
        """Drive every step from ``INIT`` to ``COMPLETE``.

        Raises:
            FlowFailed: With the failing state and reason; no success
                message has been emitted in that case.
        """
        try:
            self.collect_credentials(setup)
            self.present_authorization()
            self.await_code()
            self.exchange()
            return self.store()
        finally:
            self._pkce = None
            self._release_lock()

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _expect(self, *states: FlowState) -> None:
        if self._state not in states:
            expected = " or ".join(s.value for s in states)
            raise RuntimeError(
                f"Flow is in state '{self._state.value}', expected '{expected}'"
            )

    def _failing_on_error(self) -> _FailOnError:
        return _FailOnError(self)

    def _fail(self, reason: MailauthError) -> FlowFailed:
        failed = FlowFailed(self._state.value, reason)
        logger.debug("Flow failed in state %s: %s", self._state.value, failed.reason_name)
        self._failure = failed
        self._state = FlowState.FAILED
        self._pkce = None
        self._code = None
        self._release_lock()
        return failed

    def _release_lock(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def _read_pasted_code(self) -> PastedCode:
        last_error: Optional[EmptyCodeError] = None
        for attempt in range(1, self._max_code_attempts + 1):
            try:
                return split_pasted_code(self._read_code())
            except EmptyCodeError as exc:
                last_error = exc
                if attempt < self._max_code_attempts:
                    warning(
                        f"{exc}. Please paste the code again "
                        f"(attempt {attempt + 1}/{self._max_code_attempts})."
                    )
        assert last_error is not None
        raise last_error

    def _verify_state(self, pasted: PastedCode) -> None:
        if pasted.state is None:
            # Out-of-band pages usually show only the code.
            logger.info(
                "Provider did not echo the state token; CSRF binding recorded "
                "for audit but not verified"
            )
            return
        if pasted.state != self._csrf_state:
            raise StateMismatchError(
                "The state returned with the code does not match the one sent; "
                "restart the authorization"
            )
        logger.debug("State token verified")

    def _exchange_with_retry(self, code: str, verifier: str) -> TokenResponse:
        assert self._setup is not None
        for attempt in range(self._max_retries + 1):
            try:
                return self._exchanger.exchange_code_for_tokens(
                    code, verifier, self._setup.client_id, self._setup.client_secret
                )
            except TransportError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    raise
                delay = self._backoff * (2 ** attempt)
                logger.debug(
                    "Transport error: %s, retrying in %ss (attempt %d/%d)",
                    exc, delay, attempt + 1, self._max_retries,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def _previous_credential(self, account: str) -> Optional[AccountCredential]:
        """Return the stored credential, or ``None`` if it cannot be read.

        The entry is about to be overwritten, so an unreadable one only
        costs the refresh token it might have held.
        """
        try:
            return self._store.load(account)
        except CredentialStoreError:
            logger.debug("Previous credential for account '%s' is unreadable", account)
            warning(
                "The credential already stored for this account could not be read "
                "and will be replaced."
            )
            return None

    def _save_account(self, setup: AccountSetup) -> None:
        now = utcnow()
        created_at = now
        if account_exists(setup.account):
            try:
                created_at = load_account(setup.account).created_at
            except MailauthError:
                logger.debug("Replacing unreadable account file for '%s'", setup.account)
        account = AccountConfig(
            name=setup.account,
            provider=self._provider.name,
            email=setup.email,
            client_id=setup.client_id,
            scopes=setup.scopes,
            created_at=created_at,
            updated_at=now,
        )
        try:
            save_account(account)
        except OSError as exc:
            raise ConfigError(f"Cannot save account '{setup.account}': {exc}") from exc


class _FailOnError:
    """Context manager turning a :class:`MailauthError` into ``FAILED``."""

    def __init__(self, flow: AuthorizationFlow) -> None:
        self._flow = flow

    def __enter__(self) -> None:
        return None

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: object,
    ) -> bool:
        if exc is None:
            return False
        if isinstance(exc, FlowFailed):
            return False
        if isinstance(exc, MailauthError):
            raise self._flow._fail(exc) from exc
        # Interrupts and programming errors propagate unchanged, but the
        # verifier and the lock never outlive them.
        self._flow._pkce = None
        self._flow._release_lock()
        return False
