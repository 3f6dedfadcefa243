"""
auth/service.py -- End-user login orchestration and login history.

login() dispatches on the application's resolved flow. Only the configured
login method is accepted; credentials for any other method in the request
are ignored. Every outcome is written to login_attempts.

Post-credential checks, applied to every method in this order:
  1. BLOCKED user         -> AuthorizationError(account_blocked)
  2. unverified email when the application requires verification
                          -> AuthorizationError(email_not_verified)

Security:
  Unknown email and wrong password share message text and status
  ("Invalid email or password.", 401). An unknown email still runs a verify
  against a dummy digest of the application's algorithm.

  request_otp() / request_magic_link() return normally whether or not the
  email is registered; a code is only sent to existing, active users.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.delivery import EmailSender
from auth.flows import resolve_flow
from auth.hashing import dummy_digest, verify_secret
from auth.identity import IdentityService, normalize_email
from auth.models import FailureReason, LoginAttempt, TokenKind, User, UserStatus
from auth.oauth import IdTokenVerifier
from auth.sessions import IssuedTokens, SessionManager
from auth.store import IdentityStore
from core.config import get_settings
from core.errors import AuthenticationError, AuthorizationError, ConfigurationError, ValidationError
from tenants.models import Application, LoginMethod

logger = logging.getLogger("tokenly.auth")

_settings = get_settings()

_FAILURE_BY_CODE = {
    "invalid_credentials": FailureReason.INVALID_CREDENTIALS,
    "oauth_failed": FailureReason.OAUTH_FAILED,
}


@dataclass
class LoginRequestData:
    email: str | None = None
    password: str | None = None
    otp: str | None = None
    token: str | None = None  # magic-link token
    id_token: str | None = None  # Google ID token
    ip_address: str | None = None
    user_agent: str | None = None


class LoginService:
    def __init__(
        self,
        store: IdentityStore,
        identity: IdentityService,
        sessions: SessionManager,
        mailer: EmailSender,
        google: IdTokenVerifier,
    ) -> None:
        self.store = store
        self.identity = identity
        self.sessions = sessions
        self.mailer = mailer
        self.google = google

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, application: Application, data: LoginRequestData) -> tuple[User, IssuedTokens]:
        method = application.auth_config.login_method
        try:
            if method is LoginMethod.PASSWORD:
                user = self._password(application, data)
            elif method is LoginMethod.OTP:
                user = self._otp(application, data)
            elif method is LoginMethod.MAGIC_LINK:
                user = self._magic_link(application, data)
            else:
                user = self._oauth(application, data)
        except AuthenticationError as exc:
            self._record(application, data, None, _FAILURE_BY_CODE.get(exc.code, FailureReason.INVALID_TOKEN))
            raise

        if user.status is UserStatus.BLOCKED:
            self._record(application, data, user, FailureReason.USER_BLOCKED)
            logger.warning("Login attempt by blocked user: app=%s user=%s", application.id, user.id)
            raise AuthorizationError("This account has been blocked.", code="account_blocked")
        if resolve_flow(application.auth_config).verification_required and not user.email_verified:
            self._record(application, data, user, FailureReason.EMAIL_NOT_VERIFIED)
            raise AuthorizationError("Please verify your email address before logging in.", code="email_not_verified")

        self.store.update_last_login(application.id, user.id)
        self._record(application, data, user, None)
        tokens = self.sessions.issue(user, application, ip_address=data.ip_address, user_agent=data.user_agent)
        logger.info("Login: app=%s user=%s method=%s", application.id, user.id, method.value)
        return self.identity.get_user(application.id, user.id), tokens

    def _password(self, application: Application, data: LoginRequestData) -> User:
        if not data.email or not data.password:
            raise ValidationError("Email and password are required.")
        algorithm = application.auth_config.password_hash_algorithm
        user = self.store.get_user_by_email(application.id, data.email.strip().lower())
        if user is None:
            verify_secret(data.password, dummy_digest(algorithm), algorithm)
            raise AuthenticationError("Invalid email or password.", code="invalid_credentials")
        if not verify_secret(data.password, user.password_hash, algorithm):
            raise AuthenticationError("Invalid email or password.", code="invalid_credentials")
        return user

    def _otp(self, application: Application, data: LoginRequestData) -> User:
        if not data.email or not data.otp:
            raise ValidationError("Email and OTP are required.")
        email = data.email.strip().lower()
        record = self.sessions.consume_otp(application.id, email, data.otp)
        user = self.store.get_user_by_email(application.id, email)
        if user is None or user.id != record.user_id:
            raise AuthenticationError("Invalid or expired code.", code="invalid_token")
        return user

    def _magic_link(self, application: Application, data: LoginRequestData) -> User:
        if not data.token:
            raise ValidationError("Magic link token is required.")
        record = self.sessions.consume_challenge(application.id, TokenKind.MAGIC_LINK, data.token)
        user = self.store.get_user(application.id, record.user_id)
        if user is None:
            raise AuthenticationError("Invalid or expired token.", code="invalid_token")
        return user

    def _oauth(self, application: Application, data: LoginRequestData) -> User:
        client_id = application.auth_config.google_client_id
        if not client_id:
            raise ConfigurationError("Google sign-in is not configured for this application.", code="oauth_not_configured")
        if not data.id_token:
            raise ValidationError("Google ID token is required.")
        identity = self.google.verify(data.id_token, client_id)
        data.email = identity.email
        user = self.store.get_user_by_email(application.id, identity.email.strip().lower())
        if user is None:
            return self.identity.signup(application, identity.email, email_verified=True)
        return self.identity.mark_verified(application.id, user)

    def _record(
        self,
        application: Application,
        data: LoginRequestData,
        user: User | None,
        reason: FailureReason | None,
    ) -> None:
        self.store.record_attempt(
            LoginAttempt(
                application_id=application.id,
                success=reason is None,
                email_attempted=(data.email or "")[:255] or None,
                user_id=user.id if user else None,
                failure_reason=reason.value if reason else None,
                ip_address=data.ip_address,
                user_agent=(data.user_agent or "")[:255] or None,
            )
        )

    # ------------------------------------------------------------------
    # Passwordless challenges
    # ------------------------------------------------------------------

    def request_otp(self, application: Application, email: str) -> None:
        self._require_method(application, LoginMethod.OTP)
        user = self._deliverable_user(application, email)
        if user is None:
            return
        code = self.sessions.issue_otp(application.id, user, timedelta(minutes=_settings.otp_ttl_minutes))
        self.mailer.send_otp(user.email, code, application.app_name)

    def request_magic_link(self, application: Application, email: str) -> None:
        self._require_method(application, LoginMethod.MAGIC_LINK)
        user = self._deliverable_user(application, email)
        if user is None:
            return
        raw = self.sessions.issue_challenge(
            application.id, user, TokenKind.MAGIC_LINK, timedelta(minutes=_settings.magic_link_ttl_minutes)
        )
        self.mailer.send_magic_link(user.email, raw, application.id, application.app_name)

    def _require_method(self, application: Application, method: LoginMethod) -> None:
        if application.auth_config.login_method is not method:
            raise ConfigurationError(
                f"{method.value} login is not enabled for this application.", code="login_method_mismatch"
            )

    def _deliverable_user(self, application: Application, email: str) -> User | None:
        user = self.store.get_user_by_email(application.id, normalize_email(email))
        if user is None or user.status is UserStatus.BLOCKED:
            return None
        return user
