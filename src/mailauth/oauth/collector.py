"""Interactive collection of the pasted authorization code.

The provider shows the authorization code on a page (or in the address
bar of an out-of-band redirect) and the user pastes it back into the
terminal. Three shapes of pasted value are understood:

* a bare code: ``4/0AX4XfWh...``
* ``code#state``, as shown by providers that append the state to the code
* the full redirect URL: ``https://...?code=...&state=...``

Retrying after an empty paste is the orchestrator's decision; this module
only raises :class:`~mailauth.exceptions.EmptyCodeError`.
"""

from __future__ import annotations

from typing import NamedTuple, Optional
from urllib.parse import parse_qs, urlparse

import typer

from mailauth.exceptions import EmptyCodeError, ProviderRejected
from mailauth.output import info, print_url

CODE_PROMPT = "Enter the authorization code"


class PastedCode(NamedTuple):
    """An authorization code and the ``state`` echoed alongside it, if any."""

    code: str
    state: Optional[str] = None


def present_authorization_url(auth_url: str) -> None:
    """Show the authorization URL and the copy-paste instructions."""
    info("")
    info("Please visit this URL to authorize access to your mailbox:")
    info("")
    print_url(auth_url)
    info("")
    info("After authorizing, copy the authorization code shown by the provider")
    info("(or the whole address of the page it redirected to) and paste it below.")


def prompt_for_authorization_code() -> str:
    """Block on the terminal until the user pastes the authorization code.

    Returns:
        The pasted value with surrounding whitespace removed.

    Raises:
        EmptyCodeError: If the input is empty or whitespace only.
    """
    raw = typer.prompt(CODE_PROMPT, default="", show_default=False)
    value = raw.strip()
    if not value:
        raise EmptyCodeError()
    return value


def _looks_like_redirect(value: str) -> bool:
    return "://" in value or value.startswith("?") or "code=" in value or "error=" in value


def _redirect_params(value: str) -> dict[str, list[str]]:
    """Parse a full redirect URL, a ``?query``, or a bare ``code=...&state=...``."""
    if "://" in value or value.startswith("?"):
        parsed = urlparse(value)
        params = parse_qs(parsed.query)
        if not params and parsed.fragment:
            params = parse_qs(parsed.fragment)
        return params
    return parse_qs(value)


def split_pasted_code(value: str) -> PastedCode:
    """Split a pasted value into the authorization code and the echoed state.

    Args:
        value: The trimmed value returned by :func:`prompt_for_authorization_code`.

    Returns:
        A :class:`PastedCode`. ``state`` is ``None`` when the provider did
        not surface it.

    Raises:
        ProviderRejected: If a pasted redirect URL carries an ``error`` parameter
            (e.g. the user clicked *Deny*).
        EmptyCodeError: If no code can be found in the pasted value.
    """
    value = value.strip()
    if _looks_like_redirect(value):
        params = _redirect_params(value)
        if "error" in params:
            raise ProviderRejected(
                params["error"][0],
                params.get("error_description", [None])[0],
            )
        codes = params.get("code")
        if not codes or not codes[0].strip():
            raise EmptyCodeError("No authorization code found in the pasted URL")
        state = params.get("state", [None])[0]
        return PastedCode(codes[0].strip(), state)

    if "#" in value:
        code, state = value.split("#", 1)
        code = code.strip()
        if not code:
            raise EmptyCodeError()
        return PastedCode(code, state.strip() or None)

    if not value:
        raise EmptyCodeError()
    return PastedCode(value)
