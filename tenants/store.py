"""
tenants/store.py -- SQLAlchemy Core persistence layer for tenant entities.

Pattern: Repository + Data Mapper. TenantStore is the repository;
_row_to_* functions are the mappers. Registry and route code never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  API keys are stored only as HMAC hashes (see auth/tokens.hash_token).
  Every per-application query filters on application_id so one tenant can
  never read or mutate another tenant's rows, even with a guessed id.

Atomicity:
  create_application() writes the application, its auth config and its first
  API key inside one engine.begin() transaction -- either all three exist or
  none do.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from core.config import get_settings
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

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_clients = Table(
    "clients",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("company_name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("status", String(16), nullable=False, server_default="ACTIVE"),
    Column("created_at", String(32), nullable=False),
)

_applications = Table(
    "applications",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("client_id", String(36), nullable=False, index=True),
    Column("app_name", String(255), nullable=False),
    Column("environment", String(16), nullable=False),
    Column("status", String(16), nullable=False, server_default="ACTIVE"),
    Column("created_at", String(32), nullable=False),
)

_auth_configs = Table(
    "auth_configs",
    _metadata,
    Column("application_id", String(36), primary_key=True),
    Column("auth_mode", String(16), nullable=False),
    Column("login_method", String(16), nullable=False),
    Column("password_hash_algorithm", String(16), nullable=False),
    Column("signup_enabled", Boolean, nullable=False),
    Column("email_verification_required", Boolean, nullable=False),
    Column("access_token_ttl_minutes", Integer, nullable=False),
    Column("refresh_token_ttl_minutes", Integer, nullable=False),
    Column("refresh_token_enabled", Boolean, nullable=False),
    Column("jwt_custom_claims", Text, nullable=False, server_default="[]"),  # JSON list
    Column("google_client_id", String(255)),
    Column("updated_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("application_id", String(36), nullable=False, index=True),
    Column("key_name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(16), nullable=False),  # display only
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
    Column("allowed_origins", Text, nullable=False, server_default="[]"),  # JSON list
    Column("rate_limit_per_minute", Integer),
)

_fields = Table(
    "application_fields",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("application_id", String(36), nullable=False),
    Column("field_name", String(64), nullable=False),
    Column("field_type", String(16), nullable=False),
    Column("required", Boolean, nullable=False, server_default="0"),
    Column("display_in_signup", Boolean, nullable=False, server_default="1"),
    Column("display_in_login", Boolean, nullable=False, server_default="0"),
    Column("validation_pattern", String(255)),
    Column("display_order", Integer, nullable=False, server_default="0"),
    Column("description", String(500)),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("application_id", "field_name", name="uq_field_app_name"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so registry reads do not block behind writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _config_values(config: AuthConfig) -> dict:
    return {
        "auth_mode": config.auth_mode.value,
        "login_method": config.login_method.value,
        "password_hash_algorithm": config.password_hash_algorithm.value,
        "signup_enabled": config.signup_enabled,
        "email_verification_required": config.email_verification_required,
        "access_token_ttl_minutes": config.access_token_ttl_minutes,
        "refresh_token_ttl_minutes": config.refresh_token_ttl_minutes,
        "refresh_token_enabled": config.refresh_token_enabled,
        "jwt_custom_claims": json.dumps(list(config.jwt_custom_claims)),
        "google_client_id": config.google_client_id,
        "updated_at": _now_iso(),
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TenantStore:
    """Repository for Client, Application, AuthConfig, ApiKey and FieldDefinition.

    Usage:
        store = TenantStore("sqlite:///:memory:")
        client_id = store.create_client(Client(company_name="Acme", email="a@acme.io", password_hash=h))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: Client) -> str:
        """Insert a client and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already registered;
        the registry turns that into a ConflictError.
        """
        client_id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _clients.insert().values(
                    id=client_id,
                    company_name=client.company_name,
                    email=client.email,
                    password_hash=client.password_hash,
                    status=client.status,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return client_id

    def get_client_by_id(self, client_id: str) -> Client | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    def get_client_by_email(self, email: str) -> Client | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.email == email)).fetchone()
        return _row_to_client(row) if row is not None else None

    def update_client(self, client_id: str, **fields) -> bool:
        """Update company_name, email or password_hash. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_clients.update().where(_clients.c.id == client_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Applications + auth config
    # ------------------------------------------------------------------

    def create_application(self, application: Application, first_key: ApiKey) -> tuple[str, str]:
        """Insert an application, its auth config and its first API key atomically.

        Returns (application_id, api_key_id).
        """
        app_id = _new_id()
        key_id = _new_id()
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _applications.insert().values(
                    id=app_id,
                    client_id=application.client_id,
                    app_name=application.app_name,
                    environment=application.environment.value,
                    status=application.status.value,
                    created_at=now,
                )
            )
            conn.execute(_auth_configs.insert().values(application_id=app_id, **_config_values(application.auth_config)))
            conn.execute(
                _api_keys.insert().values(
                    id=key_id,
                    application_id=app_id,
                    key_name=first_key.key_name,
                    key_hash=first_key.key_hash,
                    key_prefix=first_key.key_prefix,
                    active=True,
                    created_at=now,
                    expires_at=first_key.expires_at,
                    allowed_origins=json.dumps(list(first_key.allowed_origins)),
                    rate_limit_per_minute=first_key.rate_limit_per_minute,
                )
            )
        return app_id, key_id

    def get_application(self, app_id: str) -> Application | None:
        """Load an application together with its auth config."""
        query = select(_applications, _auth_configs).join(
            _auth_configs, _auth_configs.c.application_id == _applications.c.id
        )
        with self.engine.connect() as conn:
            row = conn.execute(query.where(_applications.c.id == app_id)).fetchone()
        return _row_to_application(row) if row is not None else None

    def list_applications(self, client_id: str, include_inactive: bool = False) -> list[Application]:
        """Return a client's applications, oldest first."""
        query = (
            select(_applications, _auth_configs)
            .join(_auth_configs, _auth_configs.c.application_id == _applications.c.id)
            .where(_applications.c.client_id == client_id)
            .order_by(_applications.c.created_at)
        )
        if not include_inactive:
            query = query.where(_applications.c.status == ApplicationStatus.ACTIVE.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_application(r) for r in rows]

    def update_application(self, app_id: str, **fields) -> bool:
        """Update app_name, environment or status. Enum values are stored by value."""
        values = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
        with self.engine.connect() as conn:
            result = conn.execute(_applications.update().where(_applications.c.id == app_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def save_auth_config(self, app_id: str, config: AuthConfig) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _auth_configs.update()
                .where(_auth_configs.c.application_id == app_id)
                .values(**_config_values(config))
            )
            conn.commit()

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> str:
        key_id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.insert().values(
                    id=key_id,
                    application_id=api_key.application_id,
                    key_name=api_key.key_name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    active=True,
                    created_at=_now_iso(),
                    expires_at=api_key.expires_at,
                    allowed_origins=json.dumps(list(api_key.allowed_origins)),
                    rate_limit_per_minute=api_key.rate_limit_per_minute,
                )
            )
            conn.commit()
        return key_id

    def list_api_keys(self, app_id: str) -> list[ApiKey]:
        """Return every key of an application (active and revoked), newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.application_id == app_id)
                .order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def count_active_api_keys(self, app_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_keys)
                .where((_api_keys.c.application_id == app_id) & (_api_keys.c.active.is_(True)))
            ).scalar()
        return result or 0

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.active.is_(True)))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def touch_api_key(self, key_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))
            conn.commit()

    def revoke_api_key(self, key_id: str, app_id: str) -> bool:
        """Deactivate a key. app_id is checked so a key id from another tenant's
        application never matches. Returns True if a key was revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(
                    (_api_keys.c.id == key_id)
                    & (_api_keys.c.application_id == app_id)
                    & (_api_keys.c.active.is_(True))
                )
                .values(active=False)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Custom field definitions
    # ------------------------------------------------------------------

    def create_field(self, definition: FieldDefinition) -> None:
        """Insert a field definition.

        Raises sqlalchemy.exc.IntegrityError if the name already exists in the
        application.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _fields.insert().values(
                    application_id=definition.application_id,
                    field_name=definition.field_name,
                    field_type=definition.field_type.value,
                    required=definition.required,
                    display_in_signup=definition.display_in_signup,
                    display_in_login=definition.display_in_login,
                    validation_pattern=definition.validation_pattern,
                    display_order=definition.display_order,
                    description=definition.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def list_fields(self, app_id: str) -> list[FieldDefinition]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _fields.select()
                .where(_fields.c.application_id == app_id)
                .order_by(_fields.c.display_order, _fields.c.field_name)
            ).fetchall()
        return [_row_to_field(r) for r in rows]

    def get_field(self, app_id: str, field_name: str) -> FieldDefinition | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _fields.select().where((_fields.c.application_id == app_id) & (_fields.c.field_name == field_name))
            ).fetchone()
        return _row_to_field(row) if row is not None else None

    def update_field(self, definition: FieldDefinition) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _fields.update()
                .where(
                    (_fields.c.application_id == definition.application_id)
                    & (_fields.c.field_name == definition.field_name)
                )
                .values(
                    field_type=definition.field_type.value,
                    required=definition.required,
                    display_in_signup=definition.display_in_signup,
                    display_in_login=definition.display_in_login,
                    validation_pattern=definition.validation_pattern,
                    display_order=definition.display_order,
                    description=definition.description,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_field(self, app_id: str, field_name: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _fields.delete().where((_fields.c.application_id == app_id) & (_fields.c.field_name == field_name))
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_client(row) -> Client:
    return Client(
        id=row.id,
        company_name=row.company_name,
        email=row.email,
        password_hash=row.password_hash,
        status=row.status,
        created_at=row.created_at,
    )


def _row_to_application(row) -> Application:
    config = AuthConfig(
        auth_mode=AuthMode(row.auth_mode),
        login_method=LoginMethod(row.login_method),
        password_hash_algorithm=HashAlgorithm(row.password_hash_algorithm),
        signup_enabled=bool(row.signup_enabled),
        email_verification_required=bool(row.email_verification_required),
        access_token_ttl_minutes=row.access_token_ttl_minutes,
        refresh_token_ttl_minutes=row.refresh_token_ttl_minutes,
        refresh_token_enabled=bool(row.refresh_token_enabled),
        jwt_custom_claims=json.loads(row.jwt_custom_claims or "[]"),
        google_client_id=row.google_client_id,
        updated_at=row.updated_at,
    )
    return Application(
        id=row.id,
        client_id=row.client_id,
        app_name=row.app_name,
        environment=Environment(row.environment),
        status=ApplicationStatus(row.status),
        created_at=row.created_at,
        auth_config=config,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        application_id=row.application_id,
        key_name=row.key_name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        active=bool(row.active),
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        allowed_origins=json.loads(row.allowed_origins or "[]"),
        rate_limit_per_minute=row.rate_limit_per_minute,
    )


def _row_to_field(row) -> FieldDefinition:
    return FieldDefinition(
        application_id=row.application_id,
        field_name=row.field_name,
        field_type=FieldType(row.field_type),
        required=bool(row.required),
        display_in_signup=bool(row.display_in_signup),
        display_in_login=bool(row.display_in_login),
        validation_pattern=row.validation_pattern,
        display_order=row.display_order,
        description=row.description,
        created_at=row.created_at,
    )
