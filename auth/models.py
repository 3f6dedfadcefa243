"""
auth/models.py -- Domain dataclasses for end-user identities and credentials.

Pattern: Data class (pure data container, zero logic). Mirrors tenants/models.py
-- dataclasses own domain shape; stores and services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"


class TokenKind(str, Enum):
    """Every stateful credential the issuer persists.

    REFRESH, SESSION and API_TOKEN are multi-use until expiry or revocation.
    OTP, MAGIC_LINK, EMAIL_VERIFICATION and PASSWORD_RESET are single-use:
    the first successful consume sets revoked_at.
    """

    REFRESH = "REFRESH"
    SESSION = "SESSION"
    API_TOKEN = "API_TOKEN"
    OTP = "OTP"
    MAGIC_LINK = "MAGIC_LINK"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


SINGLE_USE_KINDS: frozenset[TokenKind] = frozenset(
    {TokenKind.OTP, TokenKind.MAGIC_LINK, TokenKind.EMAIL_VERIFICATION, TokenKind.PASSWORD_RESET}
)

# Kinds that act as a bearer credential for the user's session.
SESSION_KINDS: frozenset[TokenKind] = frozenset({TokenKind.REFRESH, TokenKind.SESSION, TokenKind.API_TOKEN})


class RevokeReason(str, Enum):
    CONSUMED = "consumed"
    ROTATED = "rotated"
    LOGOUT = "logout"
    REVOKED_ALL = "revoked_all"
    FAMILY_REUSE = "family_reuse"
    SUPERSEDED = "superseded"


class FailureReason(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_BLOCKED = "USER_BLOCKED"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    INVALID_TOKEN = "INVALID_TOKEN"
    OAUTH_FAILED = "OAUTH_FAILED"


@dataclass
class User:
    """An end user of one tenant Application.

    email is unique per application, not globally: the same address may exist
    as two distinct users in two applications.

    password_hash is None for passwordless-only users (OTP, magic link, OAuth).
    Its format reveals which algorithm produced it; a digest from a different
    algorithm than the application's current one never verifies.
    """

    application_id: str
    email: str
    id: str | None = None
    password_hash: str | None = None
    status: UserStatus = UserStatus.ACTIVE
    email_verified: bool = False
    custom_fields: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    last_login_at: str | None = None


@dataclass
class TokenRecord:
    """A persisted, hashed credential.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token); raw tokens are never
    stored. family groups a refresh token with every rotation descended from it.
    email is set for OTP records, which exist before the login resolves a user.
    """

    application_id: str
    kind: TokenKind
    token_hash: str
    expires_at: str
    id: str | None = None
    user_id: str | None = None
    email: str | None = None
    family: str | None = None
    created_at: str | None = None
    revoked_at: str | None = None
    revoked_reason: str | None = None
    last_used_at: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class LoginAttempt:
    """One row of login history, successful or not."""

    application_id: str
    success: bool
    email_attempted: str | None = None
    user_id: str | None = None
    failure_reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None
