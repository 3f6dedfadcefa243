"""
core/errors.py -- Typed failure outcomes shared by every layer.

Domain code (auth/, tenants/) raises these; api/main.py owns the single
exception handler that turns them into the JSON error envelope. Each class
carries a default HTTP status and a machine-readable code, both overridable
per raise site so callers can distinguish e.g. "account_blocked" from
"email_not_verified" without parsing message text.

Layer rule: no imports from api/, auth/, or tenants/.
"""

from __future__ import annotations


class TokenlyError(Exception):
    """Base class for every expected failure surfaced to API callers."""

    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationError(TokenlyError):
    """Malformed or missing input, wrong custom-field type, weak password."""

    status_code = 400
    code = "validation_error"


class ConflictError(ValidationError):
    """A uniqueness rule was violated (email taken, field already defined)."""

    status_code = 409
    code = "conflict"


class AuthenticationError(TokenlyError):
    """Bad credentials, invalid/expired OTP or magic link, bad refresh token.

    Messages are deliberately generic so they never reveal whether an email
    address is registered.
    """

    status_code = 401
    code = "authentication_failed"


class AuthorizationError(TokenlyError):
    """Credential was understood but access is refused (revoked key, blocked user)."""

    status_code = 403
    code = "forbidden"


class ConfigurationError(TokenlyError):
    """The tenant's configuration does not allow the operation."""

    status_code = 400
    code = "configuration_error"


class NotFoundError(TokenlyError):
    """Unknown application, user, field, or key within the caller's scope."""

    status_code = 404
    code = "not_found"
