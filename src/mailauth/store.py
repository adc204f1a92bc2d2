"""Secret-store capability and the per-account credential adapter.

Two layers:

- :class:`SecretStore` -- the capability the rest of the code consumes:
  store, retrieve, and delete an opaque secret string by key.
  :class:`FileSecretStore` is the built-in backend. It keeps one file per
  key under ``~/.local/share/mailauth/secrets/`` (XDG) with ``0o700``
  directory and ``0o600`` file permissions, written atomically via
  :func:`~mailauth.config.atomic_write`.
- :class:`CredentialStore` -- serialises
  :class:`~mailauth.models.AccountCredential` as JSON into exactly one
  secret per account.

Every backend failure surfaces as
:class:`~mailauth.exceptions.CredentialStoreError`. A write either
replaces the whole credential or leaves the previous one in place; there
are no partial entries.

See Also:
    :class:`~mailauth.flow.AuthorizationFlow` -- writes the credential
    after a successful exchange.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from mailauth.config import atomic_write, get_data_dir, validate_account_name
from mailauth.exceptions import CredentialStoreError
from mailauth.models import AccountCredential, TokenResponse

logger = logging.getLogger(__name__)


class SecretStore(ABC):
    """Abstract key/value store for secret strings.

    Implementations must make :meth:`set_secret` atomic: after an
    interruption the key holds either the previous value or the new one.
    """

    @abstractmethod
    def set_secret(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value.

        Raises:
            CredentialStoreError: If the backend refuses the write.
        """
        ...

    @abstractmethod
    def get_secret(self, key: str) -> Optional[str]:
        """Return the secret stored under *key*, or ``None`` if absent.

        Raises:
            CredentialStoreError: If the backend cannot be read.
        """
        ...

    @abstractmethod
    def delete_secret(self, key: str) -> None:
        """Remove *key*. A missing key is not an error.

        Raises:
            CredentialStoreError: If the backend refuses the deletion.
        """
        ...


class FileSecretStore(SecretStore):
    """OS-permission-protected secret files, one per key.

    Args:
        directory: Where secrets are kept. Defaults to
            ``get_data_dir() / "secrets"``.

    Example::

        secrets = FileSecretStore()
        secrets.set_secret("work", "{...}")
        assert secrets.get_secret("work") == "{...}"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        """The directory holding the secret files, created with ``0o700`` on first use."""
        path = self._directory or (get_data_dir() / "secrets")
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, 0o700)
        except OSError as exc:
            raise CredentialStoreError(f"Secret store unavailable at {path}: {exc}") from exc
        return path

    def path_for(self, key: str) -> Path:
        """Return the file path backing *key*."""
        if not key or "/" in key or "\\" in key or key.startswith(".") or not key.isprintable():
            raise CredentialStoreError(f"Invalid secret key: {key!r}")
        return self.directory / f"{key}.secret"

    def set_secret(self, key: str, value: str) -> None:
        path = self.path_for(key)
        try:
            atomic_write(path, value, mode=0o600)
        except OSError as exc:
            raise CredentialStoreError(f"Cannot write secret '{key}': {exc}") from exc

    def get_secret(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialStoreError(f"Cannot read secret '{key}': {exc}") from exc

    def delete_secret(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise CredentialStoreError(f"Cannot delete secret '{key}': {exc}") from exc


class CredentialStore:
    """Persist :class:`~mailauth.models.AccountCredential` entries by account name.

    Args:
        secrets: The backing :class:`SecretStore`. Defaults to
            :class:`FileSecretStore`.

    Example::

        store = CredentialStore()
        store.store("work", token_response, provider="gmail", client_secret="csec")
        credential = store.load("work")
        assert credential.access_token == token_response.access_token
    """

    def __init__(self, secrets: Optional[SecretStore] = None) -> None:
        self._secrets = secrets or FileSecretStore()

    @property
    def secrets(self) -> SecretStore:
        return self._secrets

    def store(
        self,
        account_id: str,
        token: TokenResponse,
        provider: str,
        client_secret: Optional[str] = None,
    ) -> AccountCredential:
        """Persist the token material from a fresh exchange.

        Args:
            account_id: Account name, used as the secret key.
            token: The decoded token endpoint response.
            provider: Provider identifier recorded with the credential.
            client_secret: Client secret kept for later refreshes.

        Returns:
            The :class:`~mailauth.models.AccountCredential` that was written.

        Raises:
            CredentialStoreError: If the secret store refuses the write.
        """
        credential = AccountCredential.from_token_response(
            account_id, provider, token, client_secret=client_secret
        )
        self.save(credential)
        return credential

    def save(self, credential: AccountCredential) -> None:
        """Write *credential* under its ``account`` key in a single secret."""
        key = validate_account_name(credential.account)
        payload = credential.model_dump_json()
        self._secrets.set_secret(key, payload)
        logger.debug("Stored credential for account '%s'", key)

    def load(self, account_id: str) -> Optional[AccountCredential]:
        """Return the stored credential, or ``None`` if the account has none.

        Raises:
            CredentialStoreError: If the store cannot be read or the stored
                value is not a valid credential.
        """
        key = validate_account_name(account_id)
        raw = self._secrets.get_secret(key)
        if raw is None:
            return None
        try:
            return AccountCredential.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CredentialStoreError(
                f"Stored credential for '{account_id}' is corrupted: {exc}"
            ) from exc

    def delete(self, account_id: str) -> None:
        """Delete the account's credential. A missing credential is not an error."""
        key = validate_account_name(account_id)
        self._secrets.delete_secret(key)
        logger.debug("Deleted credential for account '%s'", key)
