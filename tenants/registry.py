"""
tenants/registry.py -- Application Registry: Client -> Applications -> AuthConfig -> ApiKeys.

The registry is the only writer of tenant state and the only path from an
X-API-Key header to an Application. Every admin operation takes the calling
client's id and checks ownership first; an application owned by someone else
is reported exactly like one that does not exist.

resolve() re-reads the key and its application from the store on every call.
There is no cache, so revoking a key or deactivating an application takes
effect on the very next request. A key may also be pinned to browser origins;
the Origin check happens in resolve() as well.

Client passwords are always BCRYPT regardless of any application setting.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.hashing import check_password_policy, dummy_digest, hash_secret, verify_secret
from auth.tokens import generate_public_key, hash_token
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenants.fields import parse_claims, validate_definition
from tenants.models import (
    MAX_API_KEYS_PER_APP,
    ApiKey,
    Application,
    ApplicationStatus,
    AuthConfig,
    Client,
    Environment,
    FieldDefinition,
    HashAlgorithm,
    LoginMethod,
)
from tenants.store import TenantStore

logger = logging.getLogger("tokenly.tenants")

_CLIENT_ALGORITHM = HashAlgorithm.BCRYPT
_DEFAULT_KEY_NAME = "Default Key"

# AuthConfig attributes an admin may change through update_auth_config().
_CONFIG_FIELDS = frozenset(
    {
        "auth_mode",
        "login_method",
        "password_hash_algorithm",
        "signup_enabled",
        "email_verification_required",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "refresh_token_enabled",
        "jwt_custom_claims",
        "google_client_id",
    }
)

# Attributes of a field definition that may change after creation.
_FIELD_MUTABLE = frozenset(
    {"field_type", "required", "display_in_signup", "display_in_login", "validation_pattern", "display_order", "description"}
)


def _utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _clean_origins(origins: list[str]) -> list[str]:
    # Browsers send Origin without a trailing slash.
    cleaned = [o.strip().rstrip("/") for o in origins]
    return [o for o in cleaned if o]


def origin_allowed(origin: str | None, allowed_origins: list[str]) -> bool:
    """True when a request's Origin header may use a key restricted to allowed_origins.

    No restriction, no Origin header (server-side callers, curl) and a "*"
    entry all pass. Otherwise the match is exact.
    """
    if not allowed_origins or not origin:
        return True
    return "*" in allowed_origins or origin in allowed_origins


class ApplicationRegistry:
    """Tenant administration and API-key resolution over a TenantStore."""

    def __init__(self, store: TenantStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def signup_client(self, company_name: str, email: str, password: str) -> Client:
        email = email.strip().lower()
        if not company_name.strip():
            raise ValidationError("Company name is required.")
        if self.store.get_client_by_email(email) is not None:
            raise ConflictError("An account with this email already exists.", code="email_taken")
        check_password_policy(password)
        client = Client(
            company_name=company_name.strip(),
            email=email,
            password_hash=hash_secret(password, _CLIENT_ALGORITHM),
        )
        try:
            client.id = self.store.create_client(client)
        except IntegrityError:
            raise ConflictError("An account with this email already exists.", code="email_taken") from None
        logger.info("Client registered: id=%s", client.id)
        return self.get_client(client.id)

    def authenticate_client(self, email: str, password: str) -> Client:
        """Return the client for valid credentials, else AuthenticationError.

        Unknown emails still run a bcrypt verify so response time does not
        reveal whether the address is registered.
        """
        client = self.store.get_client_by_email(email.strip().lower())
        if client is None:
            verify_secret(password, dummy_digest(_CLIENT_ALGORITHM), _CLIENT_ALGORITHM)
            raise AuthenticationError("Invalid email or password.", code="invalid_credentials")
        if not verify_secret(password, client.password_hash, _CLIENT_ALGORITHM):
            raise AuthenticationError("Invalid email or password.", code="invalid_credentials")
        if client.status != "ACTIVE":
            raise AuthorizationError("This account is disabled.", code="account_blocked")
        return client

    def get_client(self, client_id: str) -> Client:
        client = self.store.get_client_by_id(client_id)
        if client is None:
            raise NotFoundError("Client not found.")
        return client

    def update_client(self, client_id: str, company_name: str | None = None, email: str | None = None) -> Client:
        current = self.get_client(client_id)
        changes: dict[str, Any] = {}
        if company_name is not None:
            if not company_name.strip():
                raise ValidationError("Company name is required.")
            changes["company_name"] = company_name.strip()
        if email is not None and email.strip().lower() != current.email:
            email = email.strip().lower()
            if self.store.get_client_by_email(email) is not None:
                raise ConflictError("An account with this email already exists.", code="email_taken")
            changes["email"] = email
        if changes:
            try:
                self.store.update_client(client_id, **changes)
            except IntegrityError:
                raise ConflictError("An account with this email already exists.", code="email_taken") from None
        return self.get_client(client_id)

    def change_client_password(self, client_id: str, current_password: str, new_password: str) -> None:
        client = self.get_client(client_id)
        if not verify_secret(current_password, client.password_hash, _CLIENT_ALGORITHM):
            raise AuthenticationError("Current password is incorrect.", code="invalid_credentials")
        check_password_policy(new_password)
        self.store.update_client(client_id, password_hash=hash_secret(new_password, _CLIENT_ALGORITHM))
        logger.info("Client password changed: id=%s", client_id)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(
        self,
        client_id: str,
        app_name: str,
        environment: Environment,
        config: AuthConfig | None = None,
    ) -> tuple[Application, str]:
        """Create an application, its auth config and one active API key.

        Returns (application, plaintext_key). The plaintext key is never
        persisted; this is the only time it is available.
        """
        self.get_client(client_id)
        if not app_name.strip():
            raise ValidationError("Application name is required.")
        config = config or AuthConfig()
        # No fields exist yet, so only standard claims are allowed.
        config.jwt_custom_claims = parse_claims(config.jwt_custom_claims, set())
        _check_config(config)

        raw_key = generate_public_key(environment)
        application = Application(
            client_id=client_id,
            app_name=app_name.strip(),
            environment=environment,
            auth_config=config,
        )
        first_key = ApiKey(
            application_id="",
            key_name=_DEFAULT_KEY_NAME,
            key_hash=hash_token(raw_key),
            key_prefix=raw_key[:12],
        )
        app_id, _ = self.store.create_application(application, first_key)
        logger.info("Application created: id=%s client=%s env=%s", app_id, client_id, environment.value)
        return self.store.get_application(app_id), raw_key

    def list_applications(self, client_id: str) -> list[Application]:
        return self.store.list_applications(client_id)

    def get_application(self, client_id: str, app_id: str) -> Application:
        """Return an active application owned by client_id, else NotFoundError."""
        application = self.store.get_application(app_id)
        if (
            application is None
            or application.client_id != client_id
            or application.status is not ApplicationStatus.ACTIVE
        ):
            raise NotFoundError("Application not found.")
        return application

    def update_application(
        self,
        client_id: str,
        app_id: str,
        app_name: str | None = None,
        environment: Environment | None = None,
    ) -> Application:
        self.get_application(client_id, app_id)
        changes: dict[str, Any] = {}
        if app_name is not None:
            if not app_name.strip():
                raise ValidationError("Application name is required.")
            changes["app_name"] = app_name.strip()
        if environment is not None:
            changes["environment"] = environment
        if changes:
            self.store.update_application(app_id, **changes)
        return self.get_application(client_id, app_id)

    def delete_application(self, client_id: str, app_id: str) -> None:
        """Soft delete: the application turns INACTIVE and its keys stop resolving."""
        self.get_application(client_id, app_id)
        self.store.update_application(app_id, status=ApplicationStatus.INACTIVE)
        logger.warning("Application deactivated: id=%s client=%s", app_id, client_id)

    # ------------------------------------------------------------------
    # Auth config
    # ------------------------------------------------------------------

    def get_auth_config(self, client_id: str, app_id: str) -> AuthConfig:
        return self.get_application(client_id, app_id).auth_config

    def update_auth_config(self, client_id: str, app_id: str, changes: dict[str, Any]) -> AuthConfig:
        """Apply a partial update to an application's auth config.

        jwt_custom_claims is checked against the standard claims and the
        application's current field names; unknown names are rejected here so
        issuance never meets an unknown claim.
        """
        application = self.get_application(client_id, app_id)
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown auth config field(s): {', '.join(sorted(unknown))}.")
        # google_client_id is the only attribute that may be cleared.
        changes = {k: v for k, v in changes.items() if v is not None or k == "google_client_id"}
        current = application.auth_config
        updated = replace(current, **{k: v for k, v in changes.items() if k != "jwt_custom_claims"})
        if "jwt_custom_claims" in changes:
            field_names = {f.field_name for f in self.store.list_fields(app_id)}
            updated.jwt_custom_claims = parse_claims(changes["jwt_custom_claims"], field_names)
        _check_config(updated)

        if updated.password_hash_algorithm is not current.password_hash_algorithm:
            logger.warning(
                "Hash algorithm changed for app %s: %s -> %s. Existing passwords will not verify until reset.",
                app_id,
                current.password_hash_algorithm.value,
                updated.password_hash_algorithm.value,
            )
        self.store.save_auth_config(app_id, updated)
        return self.get_auth_config(client_id, app_id)

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(
        self,
        client_id: str,
        app_id: str,
        key_name: str,
        expires_at: datetime | None = None,
        allowed_origins: list[str] | None = None,
        rate_limit_per_minute: int | None = None,
    ) -> tuple[ApiKey, str]:
        """Create an additional key. Returns (record, plaintext_key)."""
        application = self.get_application(client_id, app_id)
        if not key_name.strip():
            raise ValidationError("Key name is required.")
        if rate_limit_per_minute is not None and rate_limit_per_minute < 1:
            raise ValidationError("rateLimitPerMinute must be at least 1.", code="invalid_rate_limit")
        if self.store.count_active_api_keys(app_id) >= MAX_API_KEYS_PER_APP:
            raise ValidationError(
                f"An application may have at most {MAX_API_KEYS_PER_APP} active API keys.", code="api_key_limit"
            )
        raw_key = generate_public_key(application.environment)
        record = ApiKey(
            application_id=app_id,
            key_name=key_name.strip(),
            key_hash=hash_token(raw_key),
            key_prefix=raw_key[:12],
            expires_at=_utc_iso(expires_at),
            allowed_origins=_clean_origins(allowed_origins or []),
            rate_limit_per_minute=rate_limit_per_minute,
        )
        record.id = self.store.create_api_key(record)
        logger.info("API key created: app=%s key=%s", app_id, record.id)
        return record, raw_key

    def list_api_keys(self, client_id: str, app_id: str) -> list[ApiKey]:
        self.get_application(client_id, app_id)
        return self.store.list_api_keys(app_id)

    def revoke_api_key(self, client_id: str, app_id: str, key_id: str) -> None:
        self.get_application(client_id, app_id)
        if not self.store.revoke_api_key(key_id, app_id):
            raise NotFoundError("API key not found.")
        logger.warning("API key revoked: app=%s key=%s", app_id, key_id)

    def resolve(self, raw_key: str | None, origin: str | None = None) -> Application:
        """Map a presented API key to its active Application."""
        return self.resolve_key(raw_key, origin)[1]

    def resolve_key(self, raw_key: str | None, origin: str | None = None) -> tuple[ApiKey, Application]:
        """Map a presented API key to (key record, active Application).

        Fails closed with AuthorizationError for a missing, unknown, revoked or
        expired key, and for a key whose application is INACTIVE. A browser
        Origin outside the key's allowed_origins is origin_not_allowed (403).
        """
        if not raw_key:
            raise AuthorizationError("API key required.", code="invalid_api_key", status_code=401)
        key = self.store.get_api_key_by_hash(hash_token(raw_key))
        if key is None:
            raise AuthorizationError("Invalid API key.", code="invalid_api_key", status_code=401)
        if key.expires_at is not None and key.expires_at <= _utc_iso(datetime.now(timezone.utc)):
            raise AuthorizationError("API key has expired.", code="invalid_api_key", status_code=401)
        application = self.store.get_application(key.application_id)
        if application is None or application.status is not ApplicationStatus.ACTIVE:
            raise AuthorizationError("Application is not active.", code="application_inactive")
        if not origin_allowed(origin, key.allowed_origins):
            logger.warning("Origin rejected: app=%s key=%s origin=%s", application.id, key.id, origin)
            raise AuthorizationError("Origin not allowed.", code="origin_not_allowed")
        self.store.touch_api_key(key.id)
        return key, application

    # ------------------------------------------------------------------
    # Custom fields
    # ------------------------------------------------------------------

    def list_fields(self, client_id: str, app_id: str) -> list[FieldDefinition]:
        self.get_application(client_id, app_id)
        return self.store.list_fields(app_id)

    def fields_for(self, app_id: str) -> list[FieldDefinition]:
        """Unchecked field lookup for an application already resolved by API key."""
        return self.store.list_fields(app_id)

    def add_field(self, client_id: str, app_id: str, definition: FieldDefinition) -> FieldDefinition:
        self.get_application(client_id, app_id)
        definition.application_id = app_id
        validate_definition(definition)
        if self.store.get_field(app_id, definition.field_name) is not None:
            raise ConflictError(f"Field '{definition.field_name}' already exists.", code="field_exists")
        try:
            self.store.create_field(definition)
        except IntegrityError:
            raise ConflictError(f"Field '{definition.field_name}' already exists.", code="field_exists") from None
        return self.store.get_field(app_id, definition.field_name)

    def update_field(self, client_id: str, app_id: str, field_name: str, changes: dict[str, Any]) -> FieldDefinition:
        self.get_application(client_id, app_id)
        current = self.store.get_field(app_id, field_name)
        if current is None:
            raise NotFoundError(f"Field '{field_name}' not found.")
        unknown = set(changes) - _FIELD_MUTABLE
        if unknown:
            raise ValidationError(f"Field attribute(s) cannot be changed: {', '.join(sorted(unknown))}.")
        updated = replace(current, **changes)
        validate_definition(updated)
        self.store.update_field(updated)
        return self.store.get_field(app_id, field_name)

    def delete_field(self, client_id: str, app_id: str, field_name: str) -> None:
        """Remove a definition. Stored user values are kept; the name is dropped
        from jwt_custom_claims so issuance stops emitting it."""
        application = self.get_application(client_id, app_id)
        if not self.store.delete_field(app_id, field_name):
            raise NotFoundError(f"Field '{field_name}' not found.")
        config = application.auth_config
        if field_name in config.jwt_custom_claims:
            config.jwt_custom_claims = [c for c in config.jwt_custom_claims if c != field_name]
            self.store.save_auth_config(app_id, config)
        logger.info("Field deleted: app=%s field=%s", app_id, field_name)


def _check_config(config: AuthConfig) -> None:
    if config.access_token_ttl_minutes < 1:
        raise ValidationError("access_token_ttl_minutes must be at least 1.")
    if config.refresh_token_ttl_minutes < 1:
        raise ValidationError("refresh_token_ttl_minutes must be at least 1.")
    if config.login_method is LoginMethod.OAUTH and not config.google_client_id:
        raise ConfigurationError("OAUTH login requires google_client_id.", code="oauth_not_configured")
