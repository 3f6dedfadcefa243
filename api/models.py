"""
API request and response models for the Tokenly REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in tenants/models.py and
auth/models.py, which own the internal domain representation. Route handlers
map between the two with the from_domain() constructors below.

JSON is camelCase on the wire (appName, accessToken, jwtCustomClaims) and
snake_case in Python. Request models accept either spelling.

Every successful response is wrapped in ApiResponse; every failure in
ErrorResponse. Both carry a "success" flag so clients can branch without
inspecting the status code.
"""

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import LoginAttempt, TokenRecord, User, UserStatus
from tenants.models import (
    ApiKey,
    Application,
    ApplicationStatus,
    AuthConfig,
    AuthMode,
    Client,
    Environment,
    FieldDefinition,
    FieldType,
    HashAlgorithm,
    LoginMethod,
)

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Request(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _Response(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiResponse(CamelModel, Generic[T]):
    """Success envelope: {"success": true, "message": ..., "data": ...}."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


class ErrorDetail(BaseModel):
    """Structured error detail embedded in ErrorResponse."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error envelope: {"success": false, "message": ..., "error": {...}}."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    message: str
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Tenant admin: clients
# ---------------------------------------------------------------------------


class ClientSignupRequest(_Request):
    company_name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class ClientLoginRequest(_Request):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class ClientUpdateRequest(_Request):
    company_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class PasswordChangeRequest(_Request):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class ClientOut(_Response):
    id: str
    company_name: str
    email: str
    status: str
    created_at: Optional[str] = None

    @classmethod
    def from_domain(cls, client: Client) -> "ClientOut":
        return cls(
            id=client.id,
            company_name=client.company_name,
            email=client.email,
            status=client.status,
            created_at=client.created_at,
        )


class ClientAuthOut(_Response):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    client: ClientOut


# ---------------------------------------------------------------------------
# Tenant admin: applications and auth config
# ---------------------------------------------------------------------------


class AuthConfigUpdate(_Request):
    """Partial update; only the keys present in the request are applied."""

    auth_mode: Optional[AuthMode] = None
    login_method: Optional[LoginMethod] = None
    password_hash_algorithm: Optional[HashAlgorithm] = None
    signup_enabled: Optional[bool] = None
    email_verification_required: Optional[bool] = None
    access_token_ttl_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 365)
    refresh_token_ttl_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 365)
    refresh_token_enabled: Optional[bool] = None
    jwt_custom_claims: Optional[Union[list[str], str]] = None
    google_client_id: Optional[str] = Field(default=None, max_length=255)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class AuthConfigOut(_Response):
    auth_mode: AuthMode
    login_method: LoginMethod
    password_hash_algorithm: HashAlgorithm
    signup_enabled: bool
    email_verification_required: bool
    access_token_ttl_minutes: int
    refresh_token_ttl_minutes: int
    refresh_token_enabled: bool
    jwt_custom_claims: list[str]
    google_client_id: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_domain(cls, config: AuthConfig) -> "AuthConfigOut":
        return cls(
            auth_mode=config.auth_mode,
            login_method=config.login_method,
            password_hash_algorithm=config.password_hash_algorithm,
            signup_enabled=config.signup_enabled,
            email_verification_required=config.email_verification_required,
            access_token_ttl_minutes=config.access_token_ttl_minutes,
            refresh_token_ttl_minutes=config.refresh_token_ttl_minutes,
            refresh_token_enabled=config.refresh_token_enabled,
            jwt_custom_claims=list(config.jwt_custom_claims),
            google_client_id=config.google_client_id,
            updated_at=config.updated_at,
        )


class ApplicationCreateRequest(_Request):
    app_name: str = Field(min_length=1, max_length=255)
    environment: Environment = Environment.DEVELOPMENT
    auth_config: Optional[AuthConfigUpdate] = None


class ApplicationUpdateRequest(_Request):
    app_name: Optional[str] = Field(default=None, max_length=255)
    environment: Optional[Environment] = None


class ApplicationOut(_Response):
    id: str
    app_name: str
    environment: Environment
    status: ApplicationStatus
    created_at: Optional[str] = None
    auth_config: AuthConfigOut

    @classmethod
    def from_domain(cls, application: Application) -> "ApplicationOut":
        return cls(
            id=application.id,
            app_name=application.app_name,
            environment=application.environment,
            status=application.status,
            created_at=application.created_at,
            auth_config=AuthConfigOut.from_domain(application.auth_config),
        )


class ApplicationCreatedOut(_Response):
    """The plaintext API key appears here once and is never retrievable again."""

    application: ApplicationOut
    api_key: str


# ---------------------------------------------------------------------------
# Tenant admin: API keys
# ---------------------------------------------------------------------------


class ApiKeyCreateRequest(_Request):
    key_name: str = Field(min_length=1, max_length=100)
    expires_at: Optional[datetime] = None
    # Empty or absent: any browser origin. "*" is also accepted.
    allowed_origins: list[str] = Field(default_factory=list, max_length=20)
    rate_limit_per_minute: Optional[int] = Field(default=None, ge=1, le=100_000)


class ApiKeyOut(_Response):
    id: str
    key_name: str
    key_prefix: str
    active: bool
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    last_used_at: Optional[str] = None
    allowed_origins: list[str] = Field(default_factory=list)
    rate_limit_per_minute: Optional[int] = None

    @classmethod
    def from_domain(cls, key: ApiKey) -> "ApiKeyOut":
        return cls(
            id=key.id,
            key_name=key.key_name,
            key_prefix=key.key_prefix,
            active=key.active,
            created_at=key.created_at,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
            allowed_origins=key.allowed_origins,
            rate_limit_per_minute=key.rate_limit_per_minute,
        )


class ApiKeyCreatedOut(ApiKeyOut):
    public_key: str


# ---------------------------------------------------------------------------
# Tenant admin: custom fields
# ---------------------------------------------------------------------------


class FieldCreateRequest(_Request):
    field_name: str = Field(min_length=1, max_length=64)
    field_type: FieldType
    required: bool = False
    display_in_signup: bool = True
    display_in_login: bool = False
    validation_pattern: Optional[str] = Field(default=None, max_length=255)
    display_order: int = 0
    description: Optional[str] = Field(default=None, max_length=500)

    def to_domain(self) -> FieldDefinition:
        return FieldDefinition(application_id="", **self.model_dump())


class FieldUpdateRequest(_Request):
    field_type: Optional[FieldType] = None
    required: Optional[bool] = None
    display_in_signup: Optional[bool] = None
    display_in_login: Optional[bool] = None
    validation_pattern: Optional[str] = Field(default=None, max_length=255)
    display_order: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class FieldOut(_Response):
    field_name: str
    field_type: FieldType
    required: bool
    display_in_signup: bool
    display_in_login: bool
    validation_pattern: Optional[str] = None
    display_order: int
    description: Optional[str] = None

    @classmethod
    def from_domain(cls, definition: FieldDefinition) -> "FieldOut":
        return cls(
            field_name=definition.field_name,
            field_type=definition.field_type,
            required=definition.required,
            display_in_signup=definition.display_in_signup,
            display_in_login=definition.display_in_login,
            validation_pattern=definition.validation_pattern,
            display_order=definition.display_order,
            description=definition.description,
        )


# ---------------------------------------------------------------------------
# Users, sessions, login history
# ---------------------------------------------------------------------------


class UserOut(_Response):
    id: str
    email: str
    status: UserStatus
    email_verified: bool
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            status=user.status,
            email_verified=user.email_verified,
            custom_fields=dict(user.custom_fields),
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class UserPage(_Response):
    items: list[UserOut]
    total: int
    limit: int
    offset: int


class SessionOut(_Response):
    id: str
    kind: str
    created_at: Optional[str] = None
    expires_at: str
    last_used_at: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_domain(cls, record: TokenRecord) -> "SessionOut":
        return cls(
            id=record.id,
            kind=record.kind.value,
            created_at=record.created_at,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )


class LoginAttemptOut(_Response):
    id: int
    success: bool
    email_attempted: Optional[str] = None
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_domain(cls, attempt: LoginAttempt) -> "LoginAttemptOut":
        return cls(
            id=attempt.id,
            success=attempt.success,
            email_attempted=attempt.email_attempted,
            user_id=attempt.user_id,
            failure_reason=attempt.failure_reason,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            created_at=attempt.created_at,
        )


class DashboardStatsOut(_Response):
    """Dashboard widgets. Trends are signed percentages such as "+12.5%"."""

    total_applications: int
    total_users: int
    active_users_24h: int = Field(alias="activeUsers24h")
    total_logins: int
    failed_logins: int
    api_success_rate: float
    user_trend: str
    success_rate_trend: str


# ---------------------------------------------------------------------------
# End-user scope
# ---------------------------------------------------------------------------


class UserSignupRequest(_Request):
    """Custom field values may be sent in customFields or as top-level keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True, extra="allow")

    email: str = Field(min_length=3, max_length=255)
    password: Optional[str] = Field(default=None, max_length=256)
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    def field_values(self) -> dict[str, Any]:
        values = dict(self.model_extra or {})
        values.update(self.custom_fields)
        return values


class UserLoginRequest(_Request):
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=256)
    otp_code: Optional[str] = Field(default=None, max_length=16)
    magic_token: Optional[str] = Field(default=None, max_length=512)
    provider_token: Optional[str] = Field(default=None, max_length=8192)


class RefreshRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ForgotPasswordRequest(_Request):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(_Request):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=256)


class TokenOut(_Response):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int


class LoginOut(TokenOut):
    user: UserOut


class AppInfoOut(_Response):
    """Public view of an application's login surface. Nothing secret."""

    login_method: LoginMethod
    google_client_id: Optional[str] = None
    signup_enabled: bool
    signup_fields: list[FieldOut]
    login_fields: list[FieldOut]
