"""
api/routes/v1/auth.py -- End-user authentication endpoints, scoped by X-API-Key.

Routes:
  GET  /api/v1/auth/app-info             -- login method, Google client id, signup fields
  POST /api/v1/auth/signup               -- create a user in the key's application
  POST /api/v1/auth/login                -- log in with the application's login method
  POST /api/v1/auth/request-otp          -- ?email= ; mail a 6-digit code (OTP apps)
  POST /api/v1/auth/request-magic-link   -- ?email= ; mail a sign-in link (MAGIC_LINK apps)
  POST /api/v1/auth/refresh              -- rotate a refresh token (JWT apps)
  GET  /api/v1/auth/profile              -- current user
  PUT  /api/v1/auth/profile              -- merge custom field values
  PUT  /api/v1/auth/change-password      -- current password required
  POST /api/v1/auth/forgot-password      -- mail a reset link
  POST /api/v1/auth/reset-password       -- consume the reset token, set a new password
  POST /api/v1/auth/logout               -- end this session
  POST /api/v1/auth/logout-all           -- end every session of the user
  POST /api/v1/auth/resend-verification  -- ?email= ; mail a new verification link
  GET  /api/v1/auth/verify-email         -- ?token= ; public, redirects to the frontend

Security:
  The API key is resolved on every request (auth.dependencies.get_application);
  a revoked key fails before handler code runs.
  login, request-otp, request-magic-link, forgot-password and
  resend-verification are rate-limited per IP.
  request-otp, request-magic-link, forgot-password and resend-verification
  answer identically whether or not the email is registered.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import LOGIN_LIMIT, OTP_LIMIT, limiter
from api.models import (
    ApiResponse,
    AppInfoOut,
    FieldOut,
    ForgotPasswordRequest,
    LoginOut,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshRequest,
    ResetPasswordRequest,
    TokenOut,
    UserLoginRequest,
    UserOut,
    UserSignupRequest,
)
from auth.dependencies import bearer_token, get_application, get_current_user
from auth.flows import resolve_flow
from auth.identity import IdentityService
from auth.models import RevokeReason, User
from auth.service import LoginRequestData, LoginService
from auth.sessions import SessionManager
from core.config import get_settings
from core.errors import TokenlyError, ValidationError
from tenants.models import Application
from tenants.registry import ApplicationRegistry

logger = logging.getLogger("tokenly.api")

router = APIRouter()

_GENERIC_DELIVERY_MESSAGE = "If the email is registered, a message has been sent."


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Public (API key only)
# ---------------------------------------------------------------------------


@router.get("/auth/app-info", response_model=ApiResponse[AppInfoOut])
def app_info(request: Request, application: Application = Depends(get_application)) -> ApiResponse[AppInfoOut]:
    """Return what a login page needs to render. Nothing secret."""
    registry: ApplicationRegistry = request.app.state.registry
    fields = registry.fields_for(application.id)
    config = application.auth_config
    return ApiResponse(
        data=AppInfoOut(
            login_method=config.login_method,
            google_client_id=config.google_client_id,
            signup_enabled=config.signup_enabled,
            signup_fields=[FieldOut.from_domain(f) for f in fields if f.display_in_signup],
            login_fields=[FieldOut.from_domain(f) for f in fields if f.display_in_login],
        )
    )


@router.post("/auth/signup", response_model=ApiResponse[UserOut], status_code=201)
def signup(
    request: Request, body: UserSignupRequest, application: Application = Depends(get_application)
) -> ApiResponse[UserOut]:
    identity: IdentityService = request.app.state.identity
    user = identity.signup(application, body.email, body.password, body.field_values())
    message = "Signup successful."
    if application.auth_config.email_verification_required:
        message = "Signup successful. Please verify your email before logging in."
    return ApiResponse(message=message, data=UserOut.from_domain(user))


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/login", response_model=ApiResponse[LoginOut])
def login(
    request: Request,
    response: Response,
    body: UserLoginRequest,
    application: Application = Depends(get_application),
) -> ApiResponse[LoginOut]:
    service: LoginService = request.app.state.login_service
    user, tokens = service.login(
        application,
        LoginRequestData(
            email=body.email,
            password=body.password,
            otp=body.otp_code,
            token=body.magic_token,
            id_token=body.provider_token,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        ),
    )
    response.headers["Cache-Control"] = "no-store"
    return ApiResponse(
        message="Login successful.",
        data=LoginOut(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            user=UserOut.from_domain(user),
        ),
    )


@limiter.limit(OTP_LIMIT)
@router.post("/auth/request-otp", response_model=ApiResponse[None])
def request_otp(
    request: Request,
    email: str = Query(..., min_length=1, max_length=255),
    application: Application = Depends(get_application),
) -> ApiResponse[None]:
    service: LoginService = request.app.state.login_service
    service.request_otp(application, email)
    return ApiResponse(message=_GENERIC_DELIVERY_MESSAGE)


@limiter.limit(OTP_LIMIT)
@router.post("/auth/request-magic-link", response_model=ApiResponse[None])
def request_magic_link(
    request: Request,
    email: str = Query(..., min_length=1, max_length=255),
    application: Application = Depends(get_application),
) -> ApiResponse[None]:
    service: LoginService = request.app.state.login_service
    service.request_magic_link(application, email)
    return ApiResponse(message=_GENERIC_DELIVERY_MESSAGE)


@router.post("/auth/refresh", response_model=ApiResponse[TokenOut])
def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(default=None),
    application: Application = Depends(get_application),
) -> ApiResponse[TokenOut]:
    """Rotate a refresh token sent as refreshToken in the body or as a Bearer token."""
    raw = (body.refresh_token if body else None) or bearer_token(request)
    if not raw:
        raise ValidationError("refreshToken is required.")
    sessions: SessionManager = request.app.state.sessions
    tokens = sessions.refresh(application, raw)
    response.headers["Cache-Control"] = "no-store"
    return ApiResponse(
        data=TokenOut(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )
    )


@limiter.limit(OTP_LIMIT)
@router.post("/auth/forgot-password", response_model=ApiResponse[None])
def forgot_password(
    request: Request, body: ForgotPasswordRequest, application: Application = Depends(get_application)
) -> ApiResponse[None]:
    identity: IdentityService = request.app.state.identity
    identity.forgot_password(application, body.email)
    return ApiResponse(message=_GENERIC_DELIVERY_MESSAGE)


@router.post("/auth/reset-password", response_model=ApiResponse[None])
def reset_password(
    request: Request, body: ResetPasswordRequest, application: Application = Depends(get_application)
) -> ApiResponse[None]:
    identity: IdentityService = request.app.state.identity
    identity.reset_password(application, body.token, body.new_password)
    return ApiResponse(message="Password has been reset. Please log in again.")


@limiter.limit(OTP_LIMIT)
@router.post("/auth/resend-verification", response_model=ApiResponse[None])
def resend_verification(
    request: Request,
    email: str = Query(..., min_length=1, max_length=255),
    application: Application = Depends(get_application),
) -> ApiResponse[None]:
    identity: IdentityService = request.app.state.identity
    identity.resend_verification(application, email)
    return ApiResponse(message=_GENERIC_DELIVERY_MESSAGE)


@router.get("/auth/verify-email", include_in_schema=True)
def verify_email(request: Request, token: str = Query(..., min_length=1, max_length=512)) -> RedirectResponse:
    """Consume a verification link and redirect to the frontend result page.

    Public: the link is opened from an email client, so there is no API key.
    The token itself identifies the application and the user.
    """
    identity: IdentityService = request.app.state.identity
    base = get_settings().frontend_base_url.rstrip("/")
    try:
        identity.verify_email(token)
    except TokenlyError as exc:
        logger.info("Email verification failed: %s", exc.message)
        query = urlencode({"status": "error", "message": exc.message})
        return RedirectResponse(f"{base}/auth/verified?{query}", status_code=302)
    return RedirectResponse(f"{base}/auth/verified?status=success", status_code=302)


# ---------------------------------------------------------------------------
# Authenticated end user
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=ApiResponse[UserOut])
def get_profile(user: User = Depends(get_current_user)) -> ApiResponse[UserOut]:
    return ApiResponse(data=UserOut.from_domain(user))


@router.put("/auth/profile", response_model=ApiResponse[UserOut])
def update_profile(
    request: Request,
    values: dict[str, Any] = Body(...),
    application: Application = Depends(get_application),
    user: User = Depends(get_current_user),
) -> ApiResponse[UserOut]:
    """Merge custom field values. Body is a flat {fieldName: value} object."""
    identity: IdentityService = request.app.state.identity
    updated = identity.update_profile(application, user, values)
    return ApiResponse(message="Profile updated successfully.", data=UserOut.from_domain(updated))


@router.put("/auth/change-password", response_model=ApiResponse[None])
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    application: Application = Depends(get_application),
    user: User = Depends(get_current_user),
) -> ApiResponse[None]:
    identity: IdentityService = request.app.state.identity
    identity.change_password(application, user, body.current_password, body.new_password)
    return ApiResponse(message="Password changed successfully.")


@router.post("/auth/logout", response_model=ApiResponse[None])
def logout(
    request: Request,
    body: Optional[LogoutRequest] = Body(default=None),
    application: Application = Depends(get_application),
    user: User = Depends(get_current_user),
) -> ApiResponse[None]:
    """End the current session.

    JWT mode: the access token is stateless, so logout revokes the refresh
    token family given in the body, or every refresh token when none is given.
    SESSION / API_TOKEN mode: the bearer token itself is revoked.
    """
    sessions: SessionManager = request.app.state.sessions
    if resolve_flow(application.auth_config).token.access_jwt:
        refresh_token = body.refresh_token if body else None
        if refresh_token:
            sessions.revoke(application, user, refresh_token)
        else:
            sessions.revoke_all(application.id, user.id, RevokeReason.LOGOUT)
    else:
        sessions.revoke(application, user, bearer_token(request))
    return ApiResponse(message="Logged out successfully.")


@router.post("/auth/logout-all", response_model=ApiResponse[None])
def logout_all(
    request: Request,
    application: Application = Depends(get_application),
    user: User = Depends(get_current_user),
) -> ApiResponse[None]:
    sessions: SessionManager = request.app.state.sessions
    sessions.revoke_all(application.id, user.id)
    return ApiResponse(message="Logged out from all devices.")
