"""
auth/identity.py -- User Identity Store service: signup, profile, status, passwords, email verification.

Signup validation order (first failure wins):
  1. signup_enabled                    -> ConfigurationError(signup_disabled, 403)
  2. email unique in the application   -> ConflictError(email_taken)
  3. custom fields present and typed   -> ValidationError
  4. password policy, when the login method needs a password or one was sent
  5. hash with the application's current algorithm
  6. persist; a verification token is issued and mailed

Responses of forgot_password() and resend_verification() never depend on
whether the email is registered; a token is only issued when it is.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.delivery import EmailSender
from auth.flows import resolve_flow
from auth.hashing import check_password_policy, hash_secret, verify_secret
from auth.models import RevokeReason, TokenKind, User, UserStatus
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.config import get_settings
from core.errors import AuthenticationError, ConfigurationError, ConflictError, NotFoundError, ValidationError
from tenants.fields import clean_custom_fields
from tenants.models import Application
from tenants.registry import ApplicationRegistry

logger = logging.getLogger("tokenly.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str | None) -> str:
    """Lower-case and strip an email address; raise ValidationError if malformed."""
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email) or len(email) > 255:
        raise ValidationError("A valid email address is required.", code="invalid_email")
    return email


class IdentityService:
    def __init__(
        self,
        store: IdentityStore,
        registry: ApplicationRegistry,
        sessions: SessionManager,
        mailer: EmailSender,
    ) -> None:
        self.store = store
        self.registry = registry
        self.sessions = sessions
        self.mailer = mailer

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def signup(
        self,
        application: Application,
        email: str,
        password: str | None = None,
        custom_fields: dict[str, Any] | None = None,
        email_verified: bool = False,
    ) -> User:
        config = application.auth_config
        if not config.signup_enabled:
            raise ConfigurationError("Signup is disabled for this application.", code="signup_disabled", status_code=403)
        email = normalize_email(email)
        if self.store.get_user_by_email(application.id, email) is not None:
            raise ConflictError("An account with this email already exists.", code="email_taken")

        values = clean_custom_fields(self.registry.fields_for(application.id), custom_fields or {})

        password_hash = None
        if password or resolve_flow(config).login.password_required:
            if not password:
                raise ValidationError("Password is required.", code="weak_password")
            check_password_policy(password)
            password_hash = hash_secret(password, config.password_hash_algorithm)

        user = User(
            application_id=application.id,
            email=email,
            password_hash=password_hash,
            email_verified=email_verified,
            custom_fields=values,
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError:
            raise ConflictError("An account with this email already exists.", code="email_taken") from None
        logger.info("User signed up: app=%s user=%s", application.id, user.id)

        if not email_verified:
            self._send_verification(application, user)
        return self.store.get_user(application.id, user.id)

    # ------------------------------------------------------------------
    # Profile and status
    # ------------------------------------------------------------------

    def get_user(self, app_id: str, user_id: str) -> User:
        user = self.store.get_user(app_id, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def update_profile(self, application: Application, user: User, values: dict[str, Any]) -> User:
        """Merge values into the user's custom fields, re-validating against the current schema."""
        merged = clean_custom_fields(self.registry.fields_for(application.id), values, current=user.custom_fields)
        self.store.update_user(application.id, user.id, custom_fields=merged)
        return self.get_user(application.id, user.id)

    def set_status(self, app_id: str, user_id: str, status: UserStatus) -> User:
        """Set ACTIVE or BLOCKED. Idempotent; blocking revokes every session."""
        user = self.get_user(app_id, user_id)
        if user.status is not status:
            self.store.update_user(app_id, user_id, status=status)
            logger.warning("User status changed: app=%s user=%s %s -> %s", app_id, user_id, user.status.value, status.value)
        if status is UserStatus.BLOCKED:
            self.sessions.revoke_all(app_id, user_id)
        return self.get_user(app_id, user_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, application: Application, user: User, current_password: str, new_password: str) -> None:
        algorithm = application.auth_config.password_hash_algorithm
        if not verify_secret(current_password, user.password_hash, algorithm):
            raise AuthenticationError("Current password is incorrect.", code="invalid_credentials")
        check_password_policy(new_password)
        self.store.update_user(application.id, user.id, password_hash=hash_secret(new_password, algorithm))
        logger.info("Password changed: app=%s user=%s", application.id, user.id)

    def forgot_password(self, application: Application, email: str) -> None:
        user = self.store.get_user_by_email(application.id, normalize_email(email))
        if user is None or user.status is UserStatus.BLOCKED:
            return
        ttl = timedelta(hours=get_settings().password_reset_ttl_hours)
        raw = self.sessions.issue_challenge(application.id, user, TokenKind.PASSWORD_RESET, ttl)
        self.mailer.send_password_reset(user.email, raw, application.app_name)

    def reset_password(self, application: Application, raw_token: str, new_password: str) -> User:
        """Consume a reset token, rehash with the current algorithm and end every session."""
        # Policy first: a rejected password must not burn the token.
        check_password_policy(new_password)
        record = self.sessions.consume_challenge(application.id, TokenKind.PASSWORD_RESET, raw_token)
        user = self.get_user(application.id, record.user_id)
        algorithm = application.auth_config.password_hash_algorithm
        self.store.update_user(application.id, user.id, password_hash=hash_secret(new_password, algorithm))
        self.sessions.revoke_all(application.id, user.id)
        logger.info("Password reset: app=%s user=%s", application.id, user.id)
        return self.get_user(application.id, user.id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, raw_token: str) -> User:
        """Mark the token's user verified. The token names its own application."""
        record = self.sessions.consume_challenge(None, TokenKind.EMAIL_VERIFICATION, raw_token)
        user = self.get_user(record.application_id, record.user_id)
        if not user.email_verified:
            self.store.update_user(user.application_id, user.id, email_verified=True)
            application = self.registry.store.get_application(user.application_id)
            if application is not None:
                self.mailer.send_welcome(user.email, application.app_name)
        return self.get_user(user.application_id, user.id)

    def resend_verification(self, application: Application, email: str) -> None:
        user = self.store.get_user_by_email(application.id, normalize_email(email))
        if user is None or user.email_verified:
            return
        self._send_verification(application, user)

    def mark_verified(self, app_id: str, user: User) -> User:
        if not user.email_verified:
            self.store.update_user(app_id, user.id, email_verified=True)
            self.store.revoke_email_tokens(
                app_id, user.email, TokenKind.EMAIL_VERIFICATION, RevokeReason.SUPERSEDED.value
            )
        return self.get_user(app_id, user.id)

    def _send_verification(self, application: Application, user: User) -> None:
        ttl = timedelta(hours=get_settings().verification_token_ttl_hours)
        raw = self.sessions.issue_challenge(application.id, user, TokenKind.EMAIL_VERIFICATION, ttl)
        self.mailer.send_verification(user.email, raw, application.app_name)
