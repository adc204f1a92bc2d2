"""Configuration management with XDG paths, atomic writes, and the setup wizard.

This module handles all persistent, non-secret configuration for mailauth:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.mailauth/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_data_dir`, :func:`get_accounts_dir`.
* **Global config** -- A single :class:`~mailauth.models.GlobalConfig`
  JSON file storing defaults (provider, HTTP timeout, retry budget).
* **Accounts** -- One JSON file per authorized account, each deserialised
  into an :class:`~mailauth.models.AccountConfig`. Managed via
  :func:`load_account`, :func:`save_account`, :func:`delete_account`.
* **Wizard** -- :func:`run_config_wizard` interactively creates the global
  config. :func:`ensure_configured` is the ambient bootstrap that commands
  needing configuration run first; ``mailauth authorize`` never calls it.

Tokens and client secrets never pass through this module; they live in the
secret store (:mod:`mailauth.store`).

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import re
import sys
import tempfile
from pathlib import Path
from typing import Optional

import typer

from mailauth.exceptions import ConfigError, InvalidUsageError, NotFoundError
from mailauth.models import AccountConfig, GlobalConfig

logger = logging.getLogger(__name__)

_APP_NAME = "mailauth"
_CONFIG_FILENAME = "config.json"
_ACCOUNT_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._@+-]{0,127}")

ENV_ACCOUNT = "MAILAUTH_ACCOUNT"
ENV_CLIENT_ID = "MAILAUTH_CLIENT_ID"
ENV_CLIENT_SECRET = "MAILAUTH_CLIENT_SECRET"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/mailauth/`` (default ``~/.config/mailauth/``).
    On macOS/Windows: ``~/.mailauth/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (secrets, locks, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/mailauth/`` (default ``~/.local/share/mailauth/``).
    On macOS/Windows: ``~/.mailauth/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_accounts_dir() -> Path:
    """Return the accounts directory (``<config_dir>/accounts/``), creating it if necessary."""
    path = get_config_dir() / "accounts"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. When *mode* is
    given, it is applied to the temp file before any content is written.
    On any failure (including ``KeyboardInterrupt``) the temp file is
    removed and *path* is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def global_config_path() -> Path:
    """Path to the global config file."""
    return get_config_dir() / _CONFIG_FILENAME


def global_config_exists() -> bool:
    """Return ``True`` if the global config file has been written."""
    return global_config_path().is_file()


def load_global_config() -> GlobalConfig:
    """Load the global configuration.

    Returns:
        The deserialised :class:`~mailauth.models.GlobalConfig`. If the
        file does not exist, a default instance is returned and nothing
        is written.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        text = path.read_text(encoding="utf-8")
        return GlobalConfig.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically to disk."""
    data = config.model_dump(mode="json")
    atomic_write(global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Accounts ---


def validate_account_name(name: str) -> str:
    """Return *name* if it is usable as a file name and secret-store key.

    Raises:
        InvalidUsageError: If the name is empty or contains path separators
            or other unsupported characters.
    """
    if not _ACCOUNT_NAME_RE.fullmatch(name):
        raise InvalidUsageError(
            f"Invalid account name '{name}': use letters, digits, and . _ @ + -"
        )
    return name


def _account_path(name: str) -> Path:
    return get_accounts_dir() / f"{validate_account_name(name)}.json"


def list_accounts() -> list[str]:
    """Return all account names found in the accounts directory, sorted."""
    return sorted(p.stem for p in get_accounts_dir().glob("*.json") if p.is_file())


def account_exists(name: str) -> bool:
    return _account_path(name).is_file()


def load_account(name: str) -> AccountConfig:
    """Load and validate an account from disk.

    Raises:
        NotFoundError: If the account file does not exist.
        ConfigError: If it contains invalid JSON or fails validation.
    """
    path = _account_path(name)
    if not path.is_file():
        raise NotFoundError(f"Account '{name}' not found at {path}")
    try:
        text = path.read_text(encoding="utf-8")
        return AccountConfig.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid account '{name}' at {path}: {exc}") from exc


def save_account(account: AccountConfig) -> None:
    """Persist an account atomically; the file name is derived from ``account.name``."""
    data = account.model_dump(mode="json")
    atomic_write(_account_path(account.name), json.dumps(data, indent=2) + "\n")


def delete_account(name: str) -> None:
    """Delete an account's JSON file.

    Raises:
        NotFoundError: If the account does not exist.
    """
    path = _account_path(name)
    if not path.is_file():
        raise NotFoundError(f"Account '{name}' not found at {path}")
    path.unlink()


def resolve_default_account(config: GlobalConfig) -> Optional[str]:
    """Pick the default account: ``$MAILAUTH_ACCOUNT``, then the config, then a sole account."""
    env_account = os.environ.get(ENV_ACCOUNT)
    if env_account:
        return env_account
    if config.default_account:
        return config.default_account
    accounts = list_accounts()
    if len(accounts) == 1:
        return accounts[0]
    return None


# --- Wizard ---


def _stdin_is_tty() -> bool:
    return hasattr(sys.stdin, "isatty") and sys.stdin.isatty()


def run_config_wizard() -> GlobalConfig:
    """Interactively create and save the global configuration.

    Prompts for the default provider and default account, keeping the
    current values as defaults, then writes ``config.json``.
    """
    from mailauth.providers import get_provider, list_providers

    config = load_global_config()
    providers = ", ".join(list_providers(config))
    provider = typer.prompt(
        f"Default provider ({providers})", default=config.default_provider
    ).strip()
    get_provider(provider, config)
    config.default_provider = provider.lower()

    account = typer.prompt(
        "Default account name (leave empty for none)",
        default=config.default_account or "",
        show_default=bool(config.default_account),
    ).strip()
    config.default_account = validate_account_name(account) if account else None

    save_global_config(config)
    logger.info("Wrote global config to %s", global_config_path())
    return config


def ensure_configured(no_input: bool = False) -> GlobalConfig:
    """Return the global config, running the wizard first if none exists.

    Args:
        no_input: When ``True`` (or stdin is not a TTY) the wizard cannot
            run and a missing config is an error.

    Raises:
        ConfigError: If no config exists and prompting is not possible.
    """
    if global_config_exists():
        return load_global_config()
    if no_input or not _stdin_is_tty():
        raise ConfigError(
            f"No configuration found at {global_config_path()}. "
            "Run 'mailauth config wizard' to create one."
        )
    return run_config_wizard()
