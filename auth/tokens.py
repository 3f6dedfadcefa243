"""
auth/tokens.py -- Secret/Token Issuer: JWTs, opaque tokens, OTP codes, API keys.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. Two token types share
       the key but never the "type" claim:
         - "access": end-user token for JWT-mode applications. Carries sub
           (user id), app_id, email, jti, plus the application's configured
           custom claims. Not persisted -- validity is signature + exp.
         - "client": tenant admin token for the /admin and /applications
           surface. Carries sub (client id) and email.
       Decoding returns None on any failure; the caller turns that into 401.

  Opaque tokens (refresh, session, API token, magic link, verification,
       password reset): secrets.token_urlsafe(32) -- 256 bits of entropy.

  OTP codes: 6 decimal digits from secrets.randbelow(10**6), zero-padded so
       every code is equally likely. Collisions are tolerable: codes are
       single-use, short-lived, and scoped to (application, email).

  API keys: pk_live_ / pk_test_ prefix + 48 hex chars (192 bits). The prefix
       tells integrators at a glance whether a key belongs to a production
       application.

  Storage: every persisted secret is stored as HMAC-SHA256(SECRET_KEY, raw).
       The hash is deterministic, so lookup is O(1) by unique index; an
       attacker with the DB but not SECRET_KEY cannot reverse it. bcrypt's
       slowness is unnecessary for high-entropy random values.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt

from core.config import get_settings
from tenants.models import STANDARD_CLAIMS, Environment

if TYPE_CHECKING:
    from auth.models import User
    from tenants.models import AuthConfig

logger = logging.getLogger("tokenly.auth.tokens")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_TOKEN_TYPE = "access"
CLIENT_TOKEN_TYPE = "client"

OTP_DIGITS = 6

# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------


def generate_public_key(environment: Environment) -> str:
    """Generate an application API key: pk_live_<48 hex> or pk_test_<48 hex>."""
    label = "live" if environment is Environment.PRODUCTION else "test"
    return f"pk_{label}_{secrets.token_hex(24)}"


def generate_opaque_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def generate_otp() -> str:
    """Return a uniformly distributed 6-digit code, zero padded."""
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# End-user access tokens (JWT mode)
# ---------------------------------------------------------------------------


def build_custom_claims(user: User, claim_names: list[str]) -> dict[str, Any]:
    """Resolve configured claim names against a user record.

    Standard names map to built-in attributes; anything else is looked up in
    the user's custom fields. Names with no value on this user are skipped --
    the claim list was validated at config-save time, but an individual user
    may simply not have that field filled in.
    """
    standard: dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "status": user.status.value,
        "verified": user.email_verified,
    }
    claims: dict[str, Any] = {}
    for name in claim_names:
        if name in STANDARD_CLAIMS:
            claims[name] = standard[name]
        elif name in user.custom_fields and user.custom_fields[name] is not None:
            claims[name] = user.custom_fields[name]
    return claims


def create_access_token(user: User, config: AuthConfig) -> str:
    """Encode a signed access JWT for a user of a JWT-mode application."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = build_custom_claims(user, config.jwt_custom_claims)
    # Registered claims are set last so a custom field can never override them.
    payload.update(
        {
            "sub": user.id,
            "app_id": user.application_id,
            "email": user.email,
            "type": ACCESS_TOKEN_TYPE,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(minutes=config.access_token_ttl_minutes),
        }
    )
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an end-user access JWT. Returns the payload or None."""
    payload = _decode(token)
    if payload is None or payload.get("type") != ACCESS_TOKEN_TYPE:
        return None
    if "sub" not in payload or "app_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Tenant admin (client) tokens
# ---------------------------------------------------------------------------


def create_client_token(client_id: str, email: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT identifying a tenant admin.

    If expire_seconds is 0 (default), Settings.client_token_expire_seconds applies.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.client_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": client_id,
        "email": email,
        "type": CLIENT_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_client_token(token: str) -> dict | None:
    """Decode a tenant admin JWT. Returns the payload or None on any failure."""
    payload = _decode(token)
    if payload is None or payload.get("type") != CLIENT_TOKEN_TYPE or "sub" not in payload:
        return None
    return payload


def _decode(token: str) -> dict | None:
    try:
        return jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
