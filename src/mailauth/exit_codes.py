"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~mailauth.exceptions.MailauthError` subclass.
Shell wrappers can inspect the exit code to tell a rejected authorization
code apart from a network failure without parsing stderr.

Example::

    $ mailauth authorize work --provider gmail
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the provider rejected the pasted code
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""The authorization flow failed (rejected code, state mismatch, empty input)."""

EXIT_NOT_FOUND = 4
"""The requested account or credential does not exist."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_CREDENTIAL_STORE_ERROR = 8
"""The secret store could not be read or written."""

EXIT_INTERRUPTED = 130
"""The user interrupted the command (Ctrl-C)."""
