"""
tenants/models.py -- Domain dataclasses and enums for the tenant registry.

Pattern: Data class (pure data container, zero logic). Stores and the registry
do the work; these own the shape.

A Client is a platform tenant (a company). It owns Applications; each
Application is an isolated authentication environment with exactly one
AuthConfig, any number of ApiKeys, and its own custom-field schema.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    STAGING = "STAGING"
    PRODUCTION = "PRODUCTION"


class ApplicationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class AuthMode(str, Enum):
    JWT = "JWT"
    SESSION = "SESSION"
    API_TOKEN = "API_TOKEN"


class LoginMethod(str, Enum):
    PASSWORD = "PASSWORD"
    OTP = "OTP"
    MAGIC_LINK = "MAGIC_LINK"
    OAUTH = "OAUTH"


class HashAlgorithm(str, Enum):
    BCRYPT = "BCRYPT"
    ARGON2 = "ARGON2"
    PBKDF2 = "PBKDF2"


class FieldType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    EMAIL = "EMAIL"
    URL = "URL"


# Claim names that map to built-in user attributes rather than custom fields.
STANDARD_CLAIMS: tuple[str, ...] = ("id", "email", "status", "verified")

# Custom fields may not shadow these -- they are first-class user attributes
# or request keys on the signup payload.
RESERVED_FIELD_NAMES: frozenset[str] = frozenset(
    {"id", "email", "password", "status", "verified", "email_verified", "created_at", "last_login_at"}
)

MAX_API_KEYS_PER_APP = 10

# Requests per minute allowed on a key that sets no limit of its own.
DEFAULT_API_KEY_RATE_LIMIT = 60


@dataclass
class Client:
    """A platform tenant. Client passwords are always bcrypt-hashed."""

    company_name: str
    email: str
    password_hash: str
    id: str | None = None
    status: str = "ACTIVE"
    created_at: str | None = None


@dataclass
class AuthConfig:
    """Per-application authentication behaviour.

    jwt_custom_claims is ordered and has already been validated against the
    standard claim names and the application's field names at save time.
    google_client_id is only consulted when login_method is OAUTH.
    """

    auth_mode: AuthMode = AuthMode.JWT
    login_method: LoginMethod = LoginMethod.PASSWORD
    password_hash_algorithm: HashAlgorithm = HashAlgorithm.BCRYPT
    signup_enabled: bool = True
    email_verification_required: bool = False
    access_token_ttl_minutes: int = 60
    refresh_token_ttl_minutes: int = 43200  # 30 days
    refresh_token_enabled: bool = True
    jwt_custom_claims: list[str] = field(default_factory=list)
    google_client_id: str | None = None
    updated_at: str | None = None


@dataclass
class Application:
    """An isolated authentication environment belonging to one Client."""

    client_id: str
    app_name: str
    environment: Environment
    auth_config: AuthConfig = field(default_factory=AuthConfig)
    id: str | None = None
    status: ApplicationStatus = ApplicationStatus.ACTIVE
    created_at: str | None = None


@dataclass
class ApiKey:
    """Identifies an Application on end-user requests.

    key_hash is HMAC-SHA256(SECRET_KEY, public_key). The plaintext key is
    returned once at creation and never persisted; key_prefix is kept so
    admins can tell keys apart.

    allowed_origins restricts browser callers by their Origin header; an empty
    list or "*" allows any origin, and requests without an Origin always pass.
    rate_limit_per_minute of None means DEFAULT_API_KEY_RATE_LIMIT.
    """

    application_id: str
    key_name: str
    key_hash: str
    key_prefix: str
    id: str | None = None
    active: bool = True
    created_at: str | None = None
    expires_at: str | None = None
    last_used_at: str | None = None
    allowed_origins: list[str] = field(default_factory=list)
    rate_limit_per_minute: int | None = None


@dataclass
class FieldDefinition:
    """A tenant-declared custom attribute collected on user records."""

    application_id: str
    field_name: str
    field_type: FieldType
    required: bool = False
    display_in_signup: bool = True
    display_in_login: bool = False
    validation_pattern: str | None = None
    display_order: int = 0
    description: str | None = None
    created_at: str | None = None
