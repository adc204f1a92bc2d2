"""Built-in OAuth provider presets.

Each preset describes the authorization and token endpoints of a mail
provider together with the scopes IMAP/SMTP clients need. Users can add
their own providers under ``providers`` in the global config; those take
precedence over the presets with the same name.
"""

from __future__ import annotations

from typing import Optional

from mailauth.exceptions import ConfigError
from mailauth.models import GlobalConfig, ProviderConfig

OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"
"""Out-of-band redirect: the provider shows the code instead of redirecting."""

GMAIL = ProviderConfig(
    name="gmail",
    authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    scopes=["https://mail.google.com/"],
    redirect_uri=OOB_REDIRECT_URI,
)

OUTLOOK = ProviderConfig(
    name="outlook",
    authorization_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    scopes=[
        "https://outlook.office.com/IMAP.AccessAsUser.All",
        "https://outlook.office.com/SMTP.Send",
        "offline_access",
    ],
    redirect_uri="https://login.microsoftonline.com/common/oauth2/nativeclient",
)

BUILTIN_PROVIDERS: dict[str, ProviderConfig] = {
    GMAIL.name: GMAIL,
    OUTLOOK.name: OUTLOOK,
}


def list_providers(config: Optional[GlobalConfig] = None) -> list[str]:
    """Return the names of all known providers, sorted alphabetically."""
    names = set(BUILTIN_PROVIDERS)
    if config is not None:
        names.update(config.providers)
    return sorted(names)


def get_provider(name: str, config: Optional[GlobalConfig] = None) -> ProviderConfig:
    """Look up a provider by name.

    Args:
        name: Provider identifier, case-insensitive (e.g. ``"gmail"``).
        config: Optional global config whose ``providers`` override presets.

    Returns:
        The matching :class:`~mailauth.models.ProviderConfig`.

    Raises:
        ConfigError: If no provider with that name exists.
    """
    key = name.lower()
    if config is not None and key in config.providers:
        return config.providers[key]
    provider = BUILTIN_PROVIDERS.get(key)
    if provider is None:
        available = ", ".join(list_providers(config))
        raise ConfigError(f"Unknown provider '{name}'. Available providers: {available}")
    return provider
