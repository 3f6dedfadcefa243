"""Unit tests for auth/flows.py -- AuthConfig -> AuthFlow resolution.

Every {authMode x loginMethod} pair resolves; refresh tokens exist only for
JWT applications with refresh enabled.
"""

import pytest

from auth.flows import resolve_flow
from auth.models import TokenKind
from tenants.models import AuthConfig, AuthMode, LoginMethod


@pytest.mark.parametrize("mode", list(AuthMode))
@pytest.mark.parametrize("method", list(LoginMethod))
def test_every_combination_resolves(mode, method):
    flow = resolve_flow(AuthConfig(auth_mode=mode, login_method=method, google_client_id="gid"))
    assert flow.name == f"{flow.token.name}+{flow.login.name}"
    assert flow.issues_refresh is (mode is AuthMode.JWT)


def test_jwt_without_refresh():
    flow = resolve_flow(AuthConfig(refresh_token_enabled=False))
    assert flow.token.access_jwt
    assert not flow.issues_refresh


def test_session_mode_uses_access_ttl():
    flow = resolve_flow(AuthConfig(auth_mode=AuthMode.SESSION))
    assert flow.token.bearer_kind is TokenKind.SESSION
    assert flow.token.ttl_source == "access"


def test_api_token_mode_uses_refresh_ttl():
    flow = resolve_flow(AuthConfig(auth_mode=AuthMode.API_TOKEN))
    assert flow.token.bearer_kind is TokenKind.API_TOKEN
    assert flow.token.ttl_source == "refresh"


@pytest.mark.parametrize(
    "method,password_required,challenge",
    [
        (LoginMethod.PASSWORD, True, None),
        (LoginMethod.OTP, False, TokenKind.OTP),
        (LoginMethod.MAGIC_LINK, False, TokenKind.MAGIC_LINK),
        (LoginMethod.OAUTH, False, None),
    ],
)
def test_login_shapes(method, password_required, challenge):
    flow = resolve_flow(AuthConfig(login_method=method))
    assert flow.login.password_required is password_required
    assert flow.login.challenge_kind is challenge
    assert flow.login.external is (method is LoginMethod.OAUTH)


def test_verification_flag_carried():
    assert resolve_flow(AuthConfig(email_verification_required=True)).verification_required
    assert not resolve_flow(AuthConfig()).verification_required
