"""Credential kinds, auth headers and local (offline) plausibility checks."""

from __future__ import annotations

import re
import time
from enum import Enum

from jose import JWTError, jwt

VENDOR_KEY_RE = re.compile(r"^pk_[a-zA-Z0-9]+\.sk_[a-zA-Z0-9]+$")
JWT_RE = re.compile(r"^[\w-]+\.[\w-]+\.[\w-]*$")

CLI_TOKEN_MAX_AGE = 30 * 24 * 60 * 60  # seconds


class CredentialKind(str, Enum):
    VENDOR_KEY = "vendor_key"
    JWT = "jwt"
    CLI_TOKEN = "cli_token"
    API_KEY = "api_key"


def credential_kind(credential: str) -> CredentialKind:
    if VENDOR_KEY_RE.match(credential):
        return CredentialKind.VENDOR_KEY
    if credential.startswith("cli_"):
        return CredentialKind.CLI_TOKEN
    if JWT_RE.match(credential):
        return CredentialKind.JWT
    return CredentialKind.API_KEY


def auth_headers(credential: str) -> dict[str, str]:
    """Request headers carrying ``credential``: X-API-Key for vendor keys, bearer otherwise."""
    if credential_kind(credential) is CredentialKind.VENDOR_KEY:
        return {"X-API-Key": credential}
    return {"Authorization": f"Bearer {credential}"}


def jwt_claims(token: str) -> dict:
    """Unverified JWT claims, or an empty dict when the token does not decode."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


def actor_from_credential(credential: str | None) -> str:
    if credential and credential_kind(credential) is CredentialKind.JWT:
        claims = jwt_claims(credential)
        actor = claims.get("sub") or claims.get("user_id")
        if actor:
            return str(actor)
    return "anonymous"


def locally_plausible(credential: str, *, now: float | None = None) -> bool:
    """Whether ``credential`` could still be valid without asking the server.

    JWTs must carry an unexpired ``exp``; cli tokens (``cli_<id>_<unix-ms>``)
    live 30 days; vendor keys only need the right shape. Anything else cannot
    be judged locally and is treated as implausible.
    """
    now = time.time() if now is None else now
    kind = credential_kind(credential)

    if kind is CredentialKind.VENDOR_KEY:
        return True

    if kind is CredentialKind.CLI_TOKEN:
        parts = credential.split("_")
        if len(parts) >= 3:
            try:
                issued_ms = int(parts[-1])
            except ValueError:
                return True
            return now - issued_ms / 1000 < CLI_TOKEN_MAX_AGE
        return True

    if kind is CredentialKind.JWT:
        exp = jwt_claims(credential).get("exp")
        return isinstance(exp, (int, float)) and exp > now

    return False
