"""
auth/store.py -- SQLAlchemy Core persistence layer for end-user identities.

Pattern: Repository + Data Mapper (same shape as tenants/store.py).
IdentityStore is the repository; _row_to_user / _row_to_token /
_row_to_attempt are the mappers. Services never touch SQL directly.

Tables:
  users           -- one row per (application_id, email); UNIQUE enforced in SQL.
  auth_tokens     -- every stateful credential, hashed. Single-use kinds and
                     multi-use session kinds share the table; revoked_at marks
                     the end of a token's life whatever the reason.
  login_attempts  -- append-only login history.

Concurrency:
  consume_token() and rotate-style updates are conditional UPDATEs guarded by
  "revoked_at IS NULL AND expires_at > now". The rowcount tells the caller
  whether it won; the database serializes the writes, so two threads
  presenting the same OTP or refresh token get exactly one rowcount of 1.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
string comparison in SQL orders them correctly.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

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

from auth.models import LoginAttempt, TokenKind, TokenRecord, User, UserStatus
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("application_id", String(36), nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text),  # NULL for passwordless-only users
    Column("status", String(16), nullable=False, server_default="ACTIVE"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("custom_fields", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    UniqueConstraint("application_id", "email", name="uq_user_app_email"),
)

_tokens = Table(
    "auth_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("application_id", String(36), nullable=False, index=True),
    Column("user_id", String(36), index=True),
    Column("email", String(255)),  # OTP records are keyed by (app, email)
    Column("kind", String(24), nullable=False),
    Column("token_hash", String(64), nullable=False, index=True),  # HMAC-SHA256 hex
    Column("family", String(36), index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(24)),
    Column("last_used_at", String(32)),
    Column("ip_address", String(64)),
    Column("user_agent", String(255)),
)

_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("application_id", String(36), nullable=False, index=True),
    Column("user_id", String(36)),
    Column("email_attempted", String(255)),
    Column("success", Boolean, nullable=False),
    Column("failure_reason", String(32)),
    Column("ip_address", String(64)),
    Column("user_agent", String(255)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; set per connection because PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def expires_in(delta: timedelta) -> str:
    """Return the ISO timestamp delta from now, in the store's format."""
    return (datetime.now(timezone.utc) + delta).isoformat(timespec="microseconds")


def _live(now: str):
    """WHERE clause for a token that is neither revoked nor expired."""
    return _tokens.c.revoked_at.is_(None) & (_tokens.c.expires_at > now)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for User, TokenRecord and LoginAttempt entities.

    Every method that reads or writes a user or token takes application_id
    and filters on it.
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
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists in the
        application. Two concurrent signups for one email therefore produce
        exactly one row; the identity service maps the loser to ConflictError.
        """
        user_id = str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    application_id=user.application_id,
                    email=user.email,
                    password_hash=user.password_hash,
                    status=user.status.value,
                    email_verified=user.email_verified,
                    custom_fields=json.dumps(user.custom_fields),
                    created_at=now_iso(),
                )
            )
            conn.commit()
        return user_id

    def get_user(self, app_id: str, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.application_id == app_id) & (_users.c.id == user_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, app_id: str, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.application_id == app_id) & (_users.c.email == email))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        app_id: str,
        email: str | None = None,
        status: UserStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[User], int]:
        """Return (page, total) of an application's users, newest first.

        email is a case-insensitive substring filter.
        """
        where = _users.c.application_id == app_id
        if email:
            where = where & _users.c.email.ilike(f"%{email}%")
        if status is not None:
            where = where & (_users.c.status == status.value)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users).where(where)).scalar() or 0
            rows = conn.execute(
                _users.select().where(where).order_by(_users.c.created_at.desc()).limit(limit).offset(offset)
            ).fetchall()
        return [_row_to_user(r) for r in rows], total

    def update_user(self, app_id: str, user_id: str, **fields) -> bool:
        """Update password_hash, status, email_verified or custom_fields.

        Returns True if a row was updated, False if the user was not found.
        """
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        if "custom_fields" in fields:
            fields["custom_fields"] = json.dumps(fields["custom_fields"])
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where((_users.c.application_id == app_id) & (_users.c.id == user_id)).values(**fields)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, app_id: str, user_id: str) -> None:
        self.update_user(app_id, user_id, last_login_at=now_iso())

    def count_users(
        self, app_ids: list[str], active_since: str | None = None, created_since: str | None = None
    ) -> int:
        """Count users across applications; active_since limits to recent logins,
        created_since to recent signups."""
        if not app_ids:
            return 0
        where = _users.c.application_id.in_(app_ids)
        if active_since is not None:
            where = where & (_users.c.last_login_at >= active_since)
        if created_since is not None:
            where = where & (_users.c.created_at >= created_since)
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(where)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def save_token(self, record: TokenRecord) -> str:
        """Persist a hashed token record and return its id."""
        token_id = str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _tokens.insert().values(
                    id=token_id,
                    application_id=record.application_id,
                    user_id=record.user_id,
                    email=record.email,
                    kind=record.kind.value,
                    token_hash=record.token_hash,
                    family=record.family,
                    created_at=now_iso(),
                    expires_at=record.expires_at,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                )
            )
            conn.commit()
        return token_id

    def get_token(self, app_id: str, token_hash: str, kinds: frozenset[TokenKind] | set[TokenKind]) -> TokenRecord | None:
        """Return the record for a hash within the application, revoked or not.

        Callers inspect revoked_at / expires_at themselves; refresh needs to
        see rotated tokens to detect reuse. OTP hashes can repeat over time,
        so the newest record wins.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.application_id == app_id)
                    & (_tokens.c.token_hash == token_hash)
                    & _tokens.c.kind.in_([k.value for k in kinds])
                )
                .order_by(_tokens.c.created_at.desc())
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_token_by_hash(self, token_hash: str, kind: TokenKind) -> TokenRecord | None:
        """Unscoped lookup. Only for tokens that identify their own application
        (email verification links are opened without an API key)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select()
                .where((_tokens.c.token_hash == token_hash) & (_tokens.c.kind == kind.value))
                .order_by(_tokens.c.created_at.desc())
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume_token(self, token_id: str, reason: str) -> bool:
        """Atomically revoke a live token. True only for the single winning caller."""
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.id == token_id) & _live(now))
                .values(revoked_at=now, revoked_reason=reason, last_used_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def touch_token(self, token_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_tokens.update().where(_tokens.c.id == token_id).values(last_used_at=now_iso()))
            conn.commit()

    def revoke_family(self, family: str, reason: str) -> int:
        """Revoke every live token of a refresh family. Returns the count."""
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.family == family) & _tokens.c.revoked_at.is_(None))
                .values(revoked_at=now, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def revoke_user_tokens(self, app_id: str, user_id: str, kinds: frozenset[TokenKind], reason: str) -> int:
        """Revoke every unrevoked token of the given kinds held by a user."""
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.application_id == app_id)
                    & (_tokens.c.user_id == user_id)
                    & _tokens.c.kind.in_([k.value for k in kinds])
                    & _tokens.c.revoked_at.is_(None)
                )
                .values(revoked_at=now, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def revoke_email_tokens(self, app_id: str, email: str, kind: TokenKind, reason: str) -> int:
        """Revoke outstanding tokens of one kind addressed to an email."""
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.application_id == app_id)
                    & (_tokens.c.email == email)
                    & (_tokens.c.kind == kind.value)
                    & _tokens.c.revoked_at.is_(None)
                )
                .values(revoked_at=now, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def list_live_tokens(self, app_id: str, user_id: str, kinds: frozenset[TokenKind]) -> list[TokenRecord]:
        """Return a user's live tokens of the given kinds, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select()
                .where(
                    (_tokens.c.application_id == app_id)
                    & (_tokens.c.user_id == user_id)
                    & _tokens.c.kind.in_([k.value for k in kinds])
                    & _live(now_iso())
                )
                .order_by(_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete token records whose expiry has passed. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= now_iso()))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Login history
    # ------------------------------------------------------------------

    def record_attempt(self, attempt: LoginAttempt) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _attempts.insert().values(
                    application_id=attempt.application_id,
                    user_id=attempt.user_id,
                    email_attempted=attempt.email_attempted,
                    success=attempt.success,
                    failure_reason=attempt.failure_reason,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    created_at=now_iso(),
                )
            )
            conn.commit()

    def list_attempts(
        self, app_id: str, user_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[LoginAttempt]:
        where = _attempts.c.application_id == app_id
        if user_id is not None:
            where = where & (_attempts.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _attempts.select()
                .where(where)
                .order_by(_attempts.c.created_at.desc(), _attempts.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def count_attempts(
        self,
        app_ids: list[str],
        success: bool | None = None,
        since: str | None = None,
        before: str | None = None,
    ) -> int:
        if not app_ids:
            return 0
        where = _attempts.c.application_id.in_(app_ids)
        if success is not None:
            where = where & (_attempts.c.success.is_(success))
        if since is not None:
            where = where & (_attempts.c.created_at >= since)
        if before is not None:
            where = where & (_attempts.c.created_at < before)
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_attempts).where(where)).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        application_id=row.application_id,
        email=row.email,
        password_hash=row.password_hash,
        status=UserStatus(row.status),
        email_verified=bool(row.email_verified),
        custom_fields=json.loads(row.custom_fields or "{}"),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def _row_to_token(row) -> TokenRecord:
    return TokenRecord(
        id=row.id,
        application_id=row.application_id,
        user_id=row.user_id,
        email=row.email,
        kind=TokenKind(row.kind),
        token_hash=row.token_hash,
        family=row.family,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
        last_used_at=row.last_used_at,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        application_id=row.application_id,
        user_id=row.user_id,
        email_attempted=row.email_attempted,
        success=bool(row.success),
        failure_reason=row.failure_reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
