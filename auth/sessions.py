"""
auth/sessions.py -- Session/Token Lifecycle Manager.

Issues, validates, rotates and revokes every credential an end user holds,
following the flow resolved from the application's AuthConfig.

Two families of persisted tokens go through here:

  Session credentials (REFRESH, SESSION, API_TOKEN) -- multi-use until they
      expire or are revoked. Refresh tokens rotate: each successful refresh
      consumes the presented token (reason "rotated") and issues its successor
      in the same family.

  Challenges (OTP, MAGIC_LINK, EMAIL_VERIFICATION, PASSWORD_RESET) --
      single-use. consume_challenge() is one conditional UPDATE, so concurrent
      submissions of one code produce exactly one winner.

Refresh reuse policy:
  Presenting a token that was already rotated means a copy of it exists
  somewhere else. The whole family is revoked and the request fails with
  refresh_token_reused. A refresh that merely loses a concurrent race also
  fails with refresh_token_reused, but leaves the family alone -- the winner's
  new token is legitimate.

OTP hashing:
  A 6-digit code alone has far too little entropy to be a lookup key, so the
  stored hash covers application id, email and code together.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from auth.flows import resolve_flow
from auth.models import SESSION_KINDS, RevokeReason, TokenKind, TokenRecord, User, UserStatus
from auth.store import IdentityStore, expires_in, now_iso
from auth.tokens import create_access_token, decode_access_token, generate_opaque_token, generate_otp, hash_token
from core.errors import AuthenticationError, AuthorizationError, ConfigurationError
from tenants.models import Application

logger = logging.getLogger("tokenly.sessions")


@dataclass
class IssuedTokens:
    """What a successful login or refresh hands back to the caller."""

    access_token: str
    expires_in: int  # seconds
    refresh_token: str | None = None
    token_type: str = "Bearer"


def otp_hash(app_id: str, email: str, code: str) -> str:
    return hash_token(f"otp:{app_id}:{email}:{code}")


class SessionManager:
    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        user: User,
        application: Application,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Issue the credentials the application's auth mode prescribes."""
        config = application.auth_config
        flow = resolve_flow(config)

        if flow.token.access_jwt:
            tokens = IssuedTokens(
                access_token=create_access_token(user, config),
                expires_in=config.access_token_ttl_minutes * 60,
            )
            if flow.issues_refresh:
                tokens.refresh_token = self._store_new(
                    application.id,
                    user.id,
                    TokenKind.REFRESH,
                    timedelta(minutes=config.refresh_token_ttl_minutes),
                    family=str(uuid.uuid4()),
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            return tokens

        minutes = config.access_token_ttl_minutes if flow.token.ttl_source == "access" else config.refresh_token_ttl_minutes
        raw = self._store_new(
            application.id,
            user.id,
            flow.token.bearer_kind,
            timedelta(minutes=minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedTokens(access_token=raw, expires_in=minutes * 60)

    def refresh(self, application: Application, raw_refresh: str) -> IssuedTokens:
        """Rotate a refresh token and return a fresh access/refresh pair."""
        config = application.auth_config
        if not resolve_flow(config).issues_refresh:
            raise ConfigurationError("Refresh tokens are not enabled for this application.", code="refresh_disabled")

        record = self.store.get_token(application.id, hash_token(raw_refresh), {TokenKind.REFRESH})
        if record is None:
            raise AuthenticationError("Invalid refresh token.", code="invalid_token")
        if record.revoked_at is not None:
            if record.revoked_reason == RevokeReason.ROTATED.value:
                revoked = self.store.revoke_family(record.family, RevokeReason.FAMILY_REUSE.value)
                logger.warning(
                    "Refresh token reuse detected: app=%s user=%s family=%s revoked=%d",
                    application.id,
                    record.user_id,
                    record.family,
                    revoked,
                )
                raise AuthenticationError("Refresh token has already been used.", code="refresh_token_reused")
            raise AuthenticationError("Invalid refresh token.", code="invalid_token")
        if record.expires_at <= now_iso():
            raise AuthenticationError("Refresh token has expired.", code="invalid_token")

        user = self.store.get_user(application.id, record.user_id)
        if user is None:
            raise AuthenticationError("Invalid refresh token.", code="invalid_token")
        if user.status is UserStatus.BLOCKED:
            self.store.revoke_family(record.family, RevokeReason.REVOKED_ALL.value)
            raise AuthorizationError("This account has been blocked.", code="account_blocked")

        if not self.store.consume_token(record.id, RevokeReason.ROTATED.value):
            # Another request rotated this token between our read and our write.
            raise AuthenticationError("Refresh token has already been used.", code="refresh_token_reused")

        new_refresh = self._store_new(
            application.id,
            user.id,
            TokenKind.REFRESH,
            timedelta(minutes=config.refresh_token_ttl_minutes),
            family=record.family,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )
        return IssuedTokens(
            access_token=create_access_token(user, config),
            expires_in=config.access_token_ttl_minutes * 60,
            refresh_token=new_refresh,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def authenticate(self, application: Application, token: str) -> User:
        """Return the user a bearer token belongs to, or raise.

        JWT mode validates the signature and expiry only. SESSION and API_TOKEN
        modes look the token up and require it to be live.
        """
        flow = resolve_flow(application.auth_config)
        if flow.token.access_jwt:
            payload = decode_access_token(token)
            if payload is None or payload["app_id"] != application.id:
                raise AuthenticationError("Invalid or expired access token.", code="invalid_token")
            user_id = payload["sub"]
        else:
            record = self.store.get_token(application.id, hash_token(token), {flow.token.bearer_kind})
            if record is None or record.revoked_at is not None or record.expires_at <= now_iso():
                raise AuthenticationError("Invalid or expired access token.", code="invalid_token")
            self.store.touch_token(record.id)
            user_id = record.user_id

        user = self.store.get_user(application.id, user_id)
        if user is None:
            raise AuthenticationError("Invalid or expired access token.", code="invalid_token")
        if user.status is UserStatus.BLOCKED:
            raise AuthorizationError("This account has been blocked.", code="account_blocked")
        return user

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, application: Application, user: User, raw_token: str) -> bool:
        """End one session. A refresh token ends its whole family.

        Returns False if the token is unknown, already revoked or not the
        user's; logout of a dead token is not an error.
        """
        record = self.store.get_token(application.id, hash_token(raw_token), SESSION_KINDS)
        if record is None or record.user_id != user.id or record.revoked_at is not None:
            return False
        if record.kind is TokenKind.REFRESH:
            return self.store.revoke_family(record.family, RevokeReason.LOGOUT.value) > 0
        return self.store.consume_token(record.id, RevokeReason.LOGOUT.value)

    def revoke_all(self, app_id: str, user_id: str, reason: RevokeReason = RevokeReason.REVOKED_ALL) -> int:
        """Revoke every refresh, session and API token the user holds."""
        count = self.store.revoke_user_tokens(app_id, user_id, SESSION_KINDS, reason.value)
        logger.info("Revoked %d session token(s): app=%s user=%s reason=%s", count, app_id, user_id, reason.value)
        return count

    def list_sessions(self, app_id: str, user_id: str) -> list[TokenRecord]:
        return self.store.list_live_tokens(app_id, user_id, SESSION_KINDS)

    def purge_expired(self) -> int:
        count = self.store.purge_expired()
        if count:
            logger.info("Purged %d expired token record(s)", count)
        return count

    # ------------------------------------------------------------------
    # Single-use challenges
    # ------------------------------------------------------------------

    def issue_otp(self, app_id: str, user: User, ttl: timedelta) -> str:
        """Issue a 6-digit code for (app, email). Earlier codes stop working."""
        self.store.revoke_email_tokens(app_id, user.email, TokenKind.OTP, RevokeReason.SUPERSEDED.value)
        code = generate_otp()
        self.store.save_token(
            TokenRecord(
                application_id=app_id,
                kind=TokenKind.OTP,
                token_hash=otp_hash(app_id, user.email, code),
                expires_at=expires_in(ttl),
                user_id=user.id,
                email=user.email,
            )
        )
        return code

    def consume_otp(self, app_id: str, email: str, code: str) -> TokenRecord:
        record = self.store.get_token(app_id, otp_hash(app_id, email, code.strip()), {TokenKind.OTP})
        return self._consume(record, "Invalid or expired code.")

    def issue_challenge(self, app_id: str, user: User, kind: TokenKind, ttl: timedelta) -> str:
        """Issue an opaque single-use token. Earlier tokens of the same kind stop working."""
        self.store.revoke_email_tokens(app_id, user.email, kind, RevokeReason.SUPERSEDED.value)
        raw = generate_opaque_token()
        self.store.save_token(
            TokenRecord(
                application_id=app_id,
                kind=kind,
                token_hash=hash_token(raw),
                expires_at=expires_in(ttl),
                user_id=user.id,
                email=user.email,
            )
        )
        return raw

    def consume_challenge(self, app_id: str | None, kind: TokenKind, raw: str) -> TokenRecord:
        """Consume a single-use token. app_id None allows tokens that carry their
        own application (verification links)."""
        if app_id is None:
            record = self.store.get_token_by_hash(hash_token(raw), kind)
        else:
            record = self.store.get_token(app_id, hash_token(raw), {kind})
        return self._consume(record, "Invalid or expired token.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _consume(self, record: TokenRecord | None, message: str) -> TokenRecord:
        if record is None or not self.store.consume_token(record.id, RevokeReason.CONSUMED.value):
            raise AuthenticationError(message, code="invalid_token")
        return record

    def _store_new(
        self,
        app_id: str,
        user_id: str,
        kind: TokenKind,
        ttl: timedelta,
        family: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        raw = generate_opaque_token()
        self.store.save_token(
            TokenRecord(
                application_id=app_id,
                kind=kind,
                token_hash=hash_token(raw),
                expires_at=expires_in(ttl),
                user_id=user_id,
                family=family,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:255] or None,
            )
        )
        return raw
