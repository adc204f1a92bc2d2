"""Exception hierarchy for mailauth.

All exceptions inherit from :class:`MailauthError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`mailauth.exit_codes`.
The top-level error handler in :func:`mailauth.app.main` catches
``MailauthError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    MailauthError (exit 1)
    +-- InvalidUsageError        (exit 2)
    +-- ConfigError              (exit 1)
    +-- NotFoundError            (exit 4)
    +-- AuthError                (exit 3)
    |   +-- EntropyUnavailable
    |   +-- EmptyCodeError
    |   +-- StateMismatchError
    |   +-- ProviderRejected
    |   +-- ResponseFormatError
    |   +-- FlowInProgressError
    |   +-- FlowFailed
    +-- TransportError           (exit 6)
    |   +-- FlowTimeoutError
    +-- CredentialStoreError     (exit 8)

Only :class:`TransportError` (excluding timeouts) and
:class:`EmptyCodeError` are recoverable; the orchestrator in
:mod:`mailauth.flow` decides whether to re-enter an earlier state.
"""

from __future__ import annotations

from typing import Optional

from mailauth.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_CREDENTIAL_STORE_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
)


class MailauthError(Exception):
    """Base exception for all mailauth errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`mailauth.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    retryable: bool = False

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(MailauthError):
    """Raised for invalid CLI arguments or missing required parameters."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(MailauthError):
    """Raised for configuration problems (unknown provider, invalid JSON)."""

    exit_code = EXIT_GENERIC_FAILURE


class NotFoundError(MailauthError):
    """Raised when a named account or its stored credential does not exist."""

    exit_code = EXIT_NOT_FOUND


class AuthError(MailauthError):
    """Raised when the authorization flow fails."""

    exit_code = EXIT_AUTH_FAILURE


class EntropyUnavailable(AuthError):
    """Raised when the OS cannot supply cryptographically secure randomness.

    Always fatal. Callers must never fall back to a weaker generator.
    """


class EmptyCodeError(AuthError):
    """Raised when the pasted authorization code is empty after trimming."""

    retryable = True

    def __init__(self, message: str = "Authorization code cannot be empty") -> None:
        super().__init__(message)


class StateMismatchError(AuthError):
    """Raised when the ``state`` echoed with the pasted code differs from the one sent."""


class ProviderRejected(AuthError):
    """Raised when the token endpoint answers with a non-2xx status.

    Typically an expired, invalid, or already-used code, or a PKCE
    verifier that does not match the challenge. Codes are single-use, so
    the flow must restart from a fresh authorization URL.

    Args:
        code: The OAuth ``error`` value (e.g. ``"invalid_grant"``).
        description: The ``error_description`` value, if any.
        status_code: The HTTP status returned by the token endpoint.
    """

    def __init__(
        self,
        code: str,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.code = code
        self.description = description
        self.status_code = status_code
        message = f"Provider rejected the request: {code}"
        if description:
            message += f" ({description})"
        super().__init__(message)


class ResponseFormatError(AuthError):
    """Raised when the token endpoint returns a body that cannot be decoded."""


class FlowInProgressError(AuthError):
    """Raised when another authorization flow is already running for the account."""


class FlowFailed(AuthError):
    """Terminal ``Failed{reason}`` state of an authorization flow.

    Wraps the component error that stopped the flow together with the
    state the flow was in when it failed. The exit code follows the
    wrapped error so that transport and store failures stay distinguishable.

    Args:
        state: Name of the :class:`~mailauth.flow.FlowState` that failed.
        reason: The underlying :class:`MailauthError`.
    """

    def __init__(self, state: str, reason: MailauthError) -> None:
        self.state = state
        self.reason = reason
        super().__init__(str(reason), exit_code=reason.exit_code)

    @property
    def reason_name(self) -> str:
        """Class name of the underlying error, e.g. ``"CredentialStoreError"``."""
        if isinstance(self.reason, FlowTimeoutError):
            return "Timeout"
        return type(self.reason).__name__


class TransportError(MailauthError):
    """Raised on network-level failures talking to the token endpoint."""

    exit_code = EXIT_CONNECTION_ERROR
    retryable = True


class FlowTimeoutError(TransportError):
    """Raised when the token endpoint does not answer within the configured timeout."""

    retryable = False


class CredentialStoreError(MailauthError):
    """Raised when the secret store is unavailable or refuses a read or write."""

    exit_code = EXIT_CREDENTIAL_STORE_ERROR
