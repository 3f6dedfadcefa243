"""Unit tests for auth/identity.py and auth/service.py -- users and login.

Covers:
- signup validation order and per-application email uniqueness
- passwordless signup for OTP / MAGIC_LINK / OAUTH applications
- login for every method, failure recording, blocked and unverified users
- password change / forgot / reset, email verification
- hash algorithm switch locks out existing passwords until reset
"""

from datetime import timedelta

import pytest

from auth.models import FailureReason, TokenKind, UserStatus
from auth.service import LoginRequestData
from conftest import USER_PASSWORD
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenants.models import AuthMode, FieldDefinition, FieldType, HashAlgorithm, LoginMethod


def _password_login(services, application, email="jane@example.com", password=USER_PASSWORD):
    return services.login_service.login(application, LoginRequestData(email=email, password=password))


def _attempts(services, application):
    return services.identity_store.list_attempts(application.id, limit=50, offset=0)


class TestSignup:
    def test_signup_hashes_with_application_algorithm(self, services):
        application, _ = services.make_app(password_hash_algorithm=HashAlgorithm.ARGON2)
        user = services.identity.signup(application, " Jane@Example.com ", USER_PASSWORD)
        assert user.email == "jane@example.com"
        assert user.password_hash.startswith("$argon2")
        assert user.email_verified is False
        assert services.mailer.count("verification", "jane@example.com") == 1

    def test_same_email_in_two_applications(self, services):
        first, _ = services.make_app("First")
        second, _ = services.make_app("Second")
        a = services.identity.signup(first, "jane@example.com", USER_PASSWORD)
        b = services.identity.signup(second, "jane@example.com", USER_PASSWORD)
        assert a.id != b.id
        with pytest.raises(ConflictError):
            services.identity.signup(first, "JANE@example.com", USER_PASSWORD)

    def test_signup_disabled(self, services):
        application, _ = services.make_app(signup_enabled=False)
        with pytest.raises(ConfigurationError) as exc_info:
            services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        assert exc_info.value.status_code == 403

    def test_password_required_for_password_login(self, services):
        application, _ = services.make_app()
        with pytest.raises(ValidationError):
            services.identity.signup(application, "jane@example.com")

    def test_weak_password_rejected(self, services):
        application, _ = services.make_app()
        with pytest.raises(ValidationError) as exc_info:
            services.identity.signup(application, "jane@example.com", "password")
        assert exc_info.value.code == "weak_password"

    def test_invalid_email(self, services):
        application, _ = services.make_app()
        with pytest.raises(ValidationError):
            services.identity.signup(application, "not-an-email", USER_PASSWORD)

    def test_passwordless_signup(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OTP)
        user = services.identity.signup(application, "jane@example.com")
        assert user.password_hash is None

    def test_custom_fields_validated(self, services):
        application, _ = services.make_app()
        services.registry.add_field(
            services.client.id,
            application.id,
            FieldDefinition(application_id="", field_name="age", field_type=FieldType.NUMBER, required=True),
        )
        with pytest.raises(ValidationError):
            services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        with pytest.raises(ValidationError):
            services.identity.signup(application, "jane@example.com", USER_PASSWORD, {"age": "old"})
        user = services.identity.signup(application, "jane@example.com", USER_PASSWORD, {"age": "41"})
        assert user.custom_fields == {"age": 41}


class TestPasswordLogin:
    def test_success_records_attempt_and_issues_tokens(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        user, tokens = _password_login(services, application)
        assert user.last_login_at is not None
        assert tokens.access_token and tokens.refresh_token
        attempts = _attempts(services, application)
        assert attempts[0].success is True
        assert attempts[0].user_id == user.id

    def test_unknown_email_and_wrong_password_look_identical(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            _password_login(services, application, password="wrongpass1")
        with pytest.raises(AuthenticationError) as unknown:
            _password_login(services, application, email="ghost@example.com")
        assert (wrong.value.message, wrong.value.status_code) == (unknown.value.message, unknown.value.status_code)
        reasons = [a.failure_reason for a in _attempts(services, application)]
        assert reasons == [FailureReason.INVALID_CREDENTIALS.value] * 2

    def test_blocked_user(self, services):
        application, _ = services.make_app()
        user = services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        services.identity.set_status(application.id, user.id, UserStatus.BLOCKED)
        with pytest.raises(AuthorizationError) as exc_info:
            _password_login(services, application)
        assert exc_info.value.code == "account_blocked"
        assert _attempts(services, application)[0].failure_reason == FailureReason.USER_BLOCKED.value

    def test_unverified_user_when_verification_required(self, services):
        application, _ = services.make_app(email_verification_required=True)
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        with pytest.raises(AuthorizationError) as exc_info:
            _password_login(services, application)
        assert exc_info.value.code == "email_not_verified"

        token = services.mailer.last("verification", "jane@example.com").secret
        verified = services.identity.verify_email(token)
        assert verified.email_verified is True
        assert services.mailer.count("welcome", "jane@example.com") == 1
        _password_login(services, application)

    def test_verification_link_is_single_use(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        token = services.mailer.last("verification", "jane@example.com").secret
        services.identity.verify_email(token)
        with pytest.raises(AuthenticationError):
            services.identity.verify_email(token)

    def test_algorithm_switch_locks_out_until_reset(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        services.registry.update_auth_config(
            services.client.id, application.id, {"password_hash_algorithm": HashAlgorithm.PBKDF2}
        )
        application = services.registry.get_application(services.client.id, application.id)
        with pytest.raises(AuthenticationError):
            _password_login(services, application)

        services.identity.forgot_password(application, "jane@example.com")
        token = services.mailer.last("password_reset", "jane@example.com").secret
        user = services.identity.reset_password(application, token, "brandnew123")
        assert user.password_hash.startswith("pbkdf2_sha256$")
        _password_login(services, application, password="brandnew123")


class TestPasswordlessLogin:
    def test_otp_flow(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OTP)
        services.identity.signup(application, "jane@example.com")
        services.login_service.request_otp(application, "Jane@example.com")
        code = services.mailer.last("otp", "jane@example.com").secret
        user, _ = services.login_service.login(application, LoginRequestData(email="jane@example.com", otp=code))
        assert user.email == "jane@example.com"
        with pytest.raises(AuthenticationError):
            services.login_service.login(application, LoginRequestData(email="jane@example.com", otp=code))
        assert _attempts(services, application)[0].failure_reason == FailureReason.INVALID_TOKEN.value

    def test_new_otp_supersedes_old(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OTP)
        services.identity.signup(application, "jane@example.com")
        services.login_service.request_otp(application, "jane@example.com")
        first = services.mailer.last("otp", "jane@example.com").secret
        services.login_service.request_otp(application, "jane@example.com")
        second = services.mailer.last("otp", "jane@example.com").secret
        if first != second:
            with pytest.raises(AuthenticationError):
                services.login_service.login(application, LoginRequestData(email="jane@example.com", otp=first))
        services.login_service.login(application, LoginRequestData(email="jane@example.com", otp=second))

    def test_otp_for_unknown_email_is_silent(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OTP)
        services.login_service.request_otp(application, "ghost@example.com")
        assert services.mailer.count("otp", "ghost@example.com") == 0

    def test_otp_request_on_password_app(self, services):
        application, _ = services.make_app()
        with pytest.raises(ConfigurationError) as exc_info:
            services.login_service.request_otp(application, "jane@example.com")
        assert exc_info.value.code == "login_method_mismatch"

    def test_magic_link_flow(self, services):
        application, _ = services.make_app(login_method=LoginMethod.MAGIC_LINK)
        services.identity.signup(application, "jane@example.com")
        services.login_service.request_magic_link(application, "jane@example.com")
        mail = services.mailer.last("magic_link", "jane@example.com")
        assert mail.app_id == application.id
        user, _ = services.login_service.login(application, LoginRequestData(token=mail.secret))
        assert user.email == "jane@example.com"
        with pytest.raises(AuthenticationError):
            services.login_service.login(application, LoginRequestData(token=mail.secret))

    def test_magic_link_is_scoped_to_its_application(self, services):
        first, _ = services.make_app("First", login_method=LoginMethod.MAGIC_LINK)
        second, _ = services.make_app("Second", login_method=LoginMethod.MAGIC_LINK)
        services.identity.signup(first, "jane@example.com")
        services.login_service.request_magic_link(first, "jane@example.com")
        token = services.mailer.last("magic_link", "jane@example.com").secret
        with pytest.raises(AuthenticationError):
            services.login_service.login(second, LoginRequestData(token=token))

    def test_oauth_creates_verified_user(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OAUTH, google_client_id="gid")
        user, _ = services.login_service.login(application, LoginRequestData(id_token="google:New@Example.com"))
        assert user.email == "new@example.com"
        assert user.email_verified is True
        assert user.password_hash is None
        assert services.google.calls == [("google:New@Example.com", "gid")]

        again, _ = services.login_service.login(application, LoginRequestData(id_token="google:new@example.com"))
        assert again.id == user.id

    def test_oauth_failure_recorded(self, services):
        application, _ = services.make_app(login_method=LoginMethod.OAUTH, google_client_id="gid")
        with pytest.raises(AuthenticationError):
            services.login_service.login(application, LoginRequestData(id_token="forged"))
        assert _attempts(services, application)[0].failure_reason == FailureReason.OAUTH_FAILED.value

    def test_oauth_respects_signup_disabled(self, services):
        application, _ = services.make_app(
            login_method=LoginMethod.OAUTH, google_client_id="gid", signup_enabled=False
        )
        with pytest.raises(ConfigurationError):
            services.login_service.login(application, LoginRequestData(id_token="google:new@example.com"))


class TestAccount:
    def test_change_password_keeps_sessions(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        user, tokens = _password_login(services, application)
        with pytest.raises(AuthenticationError):
            services.identity.change_password(application, user, "wrongpass1", "newpass1234")
        services.identity.change_password(application, user, USER_PASSWORD, "newpass1234")
        _password_login(services, application, password="newpass1234")
        services.sessions.refresh(application, tokens.refresh_token)

    def test_reset_revokes_sessions_and_token_is_single_use(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        _, tokens = _password_login(services, application)
        services.identity.forgot_password(application, "jane@example.com")
        token = services.mailer.last("password_reset", "jane@example.com").secret

        with pytest.raises(ValidationError):
            services.identity.reset_password(application, token, "weak")
        services.identity.reset_password(application, token, "resetpass123")
        with pytest.raises(AuthenticationError):
            services.identity.reset_password(application, token, "resetpass456")
        with pytest.raises(AuthenticationError):
            services.sessions.refresh(application, tokens.refresh_token)

    def test_forgot_password_unknown_email_is_silent(self, services):
        application, _ = services.make_app()
        services.identity.forgot_password(application, "ghost@example.com")
        assert services.mailer.count("password_reset", "ghost@example.com") == 0

    def test_update_profile(self, services):
        application, _ = services.make_app()
        services.registry.add_field(
            services.client.id,
            application.id,
            FieldDefinition(application_id="", field_name="team", field_type=FieldType.STRING),
        )
        user = services.identity.signup(application, "jane@example.com", USER_PASSWORD, {"team": "red"})
        updated = services.identity.update_profile(application, user, {"team": "blue"})
        assert updated.custom_fields == {"team": "blue"}
        with pytest.raises(ValidationError):
            services.identity.update_profile(application, updated, {"unknown": 1})

    def test_set_status_is_idempotent_and_blocking_revokes(self, services):
        application, _ = services.make_app(auth_mode=AuthMode.SESSION)
        user = services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        _, tokens = _password_login(services, application)
        services.identity.set_status(application.id, user.id, UserStatus.BLOCKED)
        blocked = services.identity.set_status(application.id, user.id, UserStatus.BLOCKED)
        assert blocked.status is UserStatus.BLOCKED
        assert services.sessions.list_sessions(application.id, user.id) == []
        services.identity.set_status(application.id, user.id, UserStatus.ACTIVE)
        with pytest.raises(AuthenticationError):
            services.sessions.authenticate(application, tokens.access_token)

    def test_get_user_in_other_application(self, services):
        first, _ = services.make_app("First")
        second, _ = services.make_app("Second")
        user = services.identity.signup(first, "jane@example.com", USER_PASSWORD)
        with pytest.raises(NotFoundError):
            services.identity.get_user(second.id, user.id)

    def test_resend_verification(self, services):
        application, _ = services.make_app()
        services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        first = services.mailer.last("verification", "jane@example.com").secret
        services.identity.resend_verification(application, "jane@example.com")
        second = services.mailer.last("verification", "jane@example.com").secret
        with pytest.raises(AuthenticationError):
            services.identity.verify_email(first)
        services.identity.verify_email(second)
        services.identity.resend_verification(application, "jane@example.com")
        assert services.mailer.count("verification", "jane@example.com") == 2

    def test_expired_challenge(self, services):
        application, _ = services.make_app()
        user = services.identity.signup(application, "jane@example.com", USER_PASSWORD)
        raw = services.sessions.issue_challenge(application.id, user, TokenKind.PASSWORD_RESET, timedelta(seconds=-1))
        with pytest.raises(AuthenticationError):
            services.identity.reset_password(application, raw, "resetpass123")
