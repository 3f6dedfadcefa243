"""
auth/flows.py -- Auth mode resolution: AuthConfig -> concrete authentication flow.

{authMode x loginMethod} is resolved by two pure lookup tables into an
immutable AuthFlow value. Nothing here touches storage; the session manager
and the login service branch on the flow's fields instead of on raw config.

  authMode   -> TokenShape   what a successful login hands back
  loginMethod -> LoginShape  how the user proves who they are

Refresh tokens exist only for JWT applications with refresh_token_enabled.
SESSION and API_TOKEN bearer tokens are looked up server-side on every request
and are ended by logout or expiry, not rotated.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.models import TokenKind
from tenants.models import AuthConfig, AuthMode, LoginMethod


@dataclass(frozen=True)
class TokenShape:
    name: str
    access_jwt: bool  # signed, stateless access token
    bearer_kind: TokenKind | None  # persisted opaque bearer token, if any
    ttl_source: str  # "access" or "refresh": which AuthConfig TTL applies to bearer_kind


@dataclass(frozen=True)
class LoginShape:
    name: str
    password_required: bool  # at signup
    challenge_kind: TokenKind | None  # single-use token delivered by email
    external: bool = False  # identity proven by a third party


_TOKEN_SHAPES: dict[AuthMode, TokenShape] = {
    AuthMode.JWT: TokenShape("jwt", access_jwt=True, bearer_kind=None, ttl_source="access"),
    AuthMode.SESSION: TokenShape("session", access_jwt=False, bearer_kind=TokenKind.SESSION, ttl_source="access"),
    AuthMode.API_TOKEN: TokenShape("api_token", access_jwt=False, bearer_kind=TokenKind.API_TOKEN, ttl_source="refresh"),
}

_LOGIN_SHAPES: dict[LoginMethod, LoginShape] = {
    LoginMethod.PASSWORD: LoginShape("password", password_required=True, challenge_kind=None),
    LoginMethod.OTP: LoginShape("otp", password_required=False, challenge_kind=TokenKind.OTP),
    LoginMethod.MAGIC_LINK: LoginShape("magic_link", password_required=False, challenge_kind=TokenKind.MAGIC_LINK),
    LoginMethod.OAUTH: LoginShape("oauth", password_required=False, challenge_kind=None, external=True),
}


@dataclass(frozen=True)
class AuthFlow:
    token: TokenShape
    login: LoginShape
    issues_refresh: bool
    verification_required: bool

    @property
    def name(self) -> str:
        return f"{self.token.name}+{self.login.name}"


def resolve_flow(config: AuthConfig) -> AuthFlow:
    """Return the flow an application's config selects. Pure; never raises for a valid config."""
    token = _TOKEN_SHAPES[config.auth_mode]
    return AuthFlow(
        token=token,
        login=_LOGIN_SHAPES[config.login_method],
        issues_refresh=token.access_jwt and config.refresh_token_enabled,
        verification_required=config.email_verification_required,
    )
