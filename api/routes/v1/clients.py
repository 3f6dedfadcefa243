"""
api/routes/v1/clients.py -- Tenant (client) account endpoints.

Routes:
  POST /api/v1/clients/signup       -- register a company account; returns a client token
  POST /api/v1/clients/login        -- exchange email + password for a client token
  GET  /api/v1/clients/me           -- current client profile
  PUT  /api/v1/clients/me           -- update company name / email
  PUT  /api/v1/clients/me/password  -- change password (current password required)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  Wrong password and unknown email return the same 401 body.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    ApiResponse,
    ClientAuthOut,
    ClientLoginRequest,
    ClientOut,
    ClientSignupRequest,
    ClientUpdateRequest,
    PasswordChangeRequest,
)
from auth.dependencies import get_current_client
from auth.tokens import create_client_token
from core.config import get_settings
from tenants.models import Client
from tenants.registry import ApplicationRegistry

router = APIRouter()


def _auth_payload(client: Client) -> ClientAuthOut:
    expires_in = get_settings().client_token_expire_seconds
    return ClientAuthOut(
        access_token=create_client_token(client.id, client.email, expires_in),
        expires_in=expires_in,
        client=ClientOut.from_domain(client),
    )


@router.post("/clients/signup", response_model=ApiResponse[ClientAuthOut], status_code=201)
def signup(request: Request, response: Response, body: ClientSignupRequest) -> ApiResponse[ClientAuthOut]:
    registry: ApplicationRegistry = request.app.state.registry
    client = registry.signup_client(body.company_name, body.email, body.password)
    response.headers["Cache-Control"] = "no-store"
    return ApiResponse(message="Account created.", data=_auth_payload(client))


@limiter.limit(LOGIN_LIMIT)
@router.post("/clients/login", response_model=ApiResponse[ClientAuthOut])
def login(request: Request, response: Response, body: ClientLoginRequest) -> ApiResponse[ClientAuthOut]:
    registry: ApplicationRegistry = request.app.state.registry
    client = registry.authenticate_client(body.email, body.password)
    response.headers["Cache-Control"] = "no-store"
    return ApiResponse(message="Login successful.", data=_auth_payload(client))


@router.get("/clients/me", response_model=ApiResponse[ClientOut])
def me(client: Client = Depends(get_current_client)) -> ApiResponse[ClientOut]:
    return ApiResponse(data=ClientOut.from_domain(client))


@router.put("/clients/me", response_model=ApiResponse[ClientOut])
def update_me(
    request: Request, body: ClientUpdateRequest, client: Client = Depends(get_current_client)
) -> ApiResponse[ClientOut]:
    registry: ApplicationRegistry = request.app.state.registry
    updated = registry.update_client(client.id, company_name=body.company_name, email=body.email)
    return ApiResponse(message="Profile updated.", data=ClientOut.from_domain(updated))


@router.put("/clients/me/password", response_model=ApiResponse[None])
def change_password(
    request: Request, body: PasswordChangeRequest, client: Client = Depends(get_current_client)
) -> ApiResponse[None]:
    registry: ApplicationRegistry = request.app.state.registry
    registry.change_client_password(client.id, body.current_password, body.new_password)
    return ApiResponse(message="Password changed.")
