"""
api/routes/v1/admin.py -- Per-application administration for the owning client.

Routes (all under /api/v1/admin/{app_id}):
  GET    /api-keys                        -- list keys (prefix only, never plaintext)
  POST   /api-keys                        -- create key; plaintext returned once
  DELETE /api-keys/{key_id}               -- revoke; takes effect on the next request
  GET    /auth-config                     -- current auth config
  PUT    /auth-config                     -- partial update (claims validated on save)
  GET    /fields                          -- custom field definitions
  POST   /fields                          -- add a definition
  PUT    /fields/{field_name}             -- change a definition
  DELETE /fields/{field_name}             -- remove a definition (stored values kept)
  GET    /users                           -- paginated, filter by email substring / status
  GET    /users/{user_id}                 -- one user
  PUT    /users/{user_id}/status          -- ?status=ACTIVE|BLOCKED (blocking revokes sessions)
  GET    /users/{user_id}/sessions        -- live refresh / session / API tokens
  POST   /users/{user_id}/revoke-sessions -- revoke all of them
  GET    /login-history                   -- recent login attempts

IDOR guard: every handler resolves the application through
registry.get_application(client.id, app_id) before touching anything under it,
so another tenant's app_id is a 404.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    ApiKeyCreatedOut,
    ApiKeyCreateRequest,
    ApiKeyOut,
    ApiResponse,
    AuthConfigOut,
    AuthConfigUpdate,
    FieldCreateRequest,
    FieldOut,
    FieldUpdateRequest,
    LoginAttemptOut,
    SessionOut,
    UserOut,
    UserPage,
)
from auth.dependencies import get_current_client
from auth.identity import IdentityService
from auth.models import UserStatus
from auth.sessions import SessionManager
from auth.store import IdentityStore
from tenants.models import Client
from tenants.registry import ApplicationRegistry

router = APIRouter(dependencies=[Depends(get_current_client)])


def _registry(request: Request) -> ApplicationRegistry:
    return request.app.state.registry


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


@router.get("/admin/{app_id}/api-keys", response_model=ApiResponse[list[ApiKeyOut]])
def list_api_keys(request: Request, app_id: str, client: Client = Depends(get_current_client)):
    keys = _registry(request).list_api_keys(client.id, app_id)
    return ApiResponse(data=[ApiKeyOut.from_domain(k) for k in keys])


@router.post("/admin/{app_id}/api-keys", response_model=ApiResponse[ApiKeyCreatedOut], status_code=201)
def create_api_key(
    request: Request,
    response: Response,
    app_id: str,
    body: ApiKeyCreateRequest,
    client: Client = Depends(get_current_client),
):
    record, raw_key = _registry(request).create_api_key(
        client.id,
        app_id,
        body.key_name,
        body.expires_at,
        allowed_origins=body.allowed_origins,
        rate_limit_per_minute=body.rate_limit_per_minute,
    )
    response.headers["Cache-Control"] = "no-store"
    data = ApiKeyCreatedOut(**ApiKeyOut.from_domain(record).model_dump(), public_key=raw_key)
    return ApiResponse(message="API key created. Store it now; it will not be shown again.", data=data)


@router.delete("/admin/{app_id}/api-keys/{key_id}", response_model=ApiResponse[None])
def revoke_api_key(request: Request, app_id: str, key_id: str, client: Client = Depends(get_current_client)):
    _registry(request).revoke_api_key(client.id, app_id, key_id)
    return ApiResponse(message="API key revoked.")


# ---------------------------------------------------------------------------
# Auth config
# ---------------------------------------------------------------------------


@router.get("/admin/{app_id}/auth-config", response_model=ApiResponse[AuthConfigOut])
def get_auth_config(request: Request, app_id: str, client: Client = Depends(get_current_client)):
    return ApiResponse(data=AuthConfigOut.from_domain(_registry(request).get_auth_config(client.id, app_id)))


@router.put("/admin/{app_id}/auth-config", response_model=ApiResponse[AuthConfigOut])
def update_auth_config(
    request: Request, app_id: str, body: AuthConfigUpdate, client: Client = Depends(get_current_client)
):
    config = _registry(request).update_auth_config(client.id, app_id, body.changes())
    return ApiResponse(message="Auth config updated.", data=AuthConfigOut.from_domain(config))


# ---------------------------------------------------------------------------
# Custom fields
# ---------------------------------------------------------------------------


@router.get("/admin/{app_id}/fields", response_model=ApiResponse[list[FieldOut]])
def list_fields(request: Request, app_id: str, client: Client = Depends(get_current_client)):
    return ApiResponse(data=[FieldOut.from_domain(f) for f in _registry(request).list_fields(client.id, app_id)])


@router.post("/admin/{app_id}/fields", response_model=ApiResponse[FieldOut], status_code=201)
def add_field(request: Request, app_id: str, body: FieldCreateRequest, client: Client = Depends(get_current_client)):
    definition = _registry(request).add_field(client.id, app_id, body.to_domain())
    return ApiResponse(message="Field created.", data=FieldOut.from_domain(definition))


@router.put("/admin/{app_id}/fields/{field_name}", response_model=ApiResponse[FieldOut])
def update_field(
    request: Request,
    app_id: str,
    field_name: str,
    body: FieldUpdateRequest,
    client: Client = Depends(get_current_client),
):
    definition = _registry(request).update_field(client.id, app_id, field_name, body.changes())
    return ApiResponse(message="Field updated.", data=FieldOut.from_domain(definition))


@router.delete("/admin/{app_id}/fields/{field_name}", response_model=ApiResponse[None])
def delete_field(request: Request, app_id: str, field_name: str, client: Client = Depends(get_current_client)):
    _registry(request).delete_field(client.id, app_id, field_name)
    return ApiResponse(message="Field deleted.")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/{app_id}/users", response_model=ApiResponse[UserPage])
def list_users(
    request: Request,
    app_id: str,
    email: Optional[str] = Query(default=None, max_length=255),
    status: Optional[UserStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    client: Client = Depends(get_current_client),
):
    _registry(request).get_application(client.id, app_id)
    store: IdentityStore = request.app.state.identity_store
    users, total = store.list_users(app_id, email=email, status=status, limit=limit, offset=offset)
    page = UserPage(items=[UserOut.from_domain(u) for u in users], total=total, limit=limit, offset=offset)
    return ApiResponse(data=page)


@router.get("/admin/{app_id}/users/{user_id}", response_model=ApiResponse[UserOut])
def get_user(request: Request, app_id: str, user_id: str, client: Client = Depends(get_current_client)):
    _registry(request).get_application(client.id, app_id)
    identity: IdentityService = request.app.state.identity
    return ApiResponse(data=UserOut.from_domain(identity.get_user(app_id, user_id)))


@router.put("/admin/{app_id}/users/{user_id}/status", response_model=ApiResponse[UserOut])
def set_user_status(
    request: Request,
    app_id: str,
    user_id: str,
    status: UserStatus = Query(...),
    client: Client = Depends(get_current_client),
):
    _registry(request).get_application(client.id, app_id)
    identity: IdentityService = request.app.state.identity
    user = identity.set_status(app_id, user_id, status)
    return ApiResponse(message=f"User status set to {status.value}.", data=UserOut.from_domain(user))


@router.get("/admin/{app_id}/users/{user_id}/sessions", response_model=ApiResponse[list[SessionOut]])
def list_user_sessions(request: Request, app_id: str, user_id: str, client: Client = Depends(get_current_client)):
    _registry(request).get_application(client.id, app_id)
    identity: IdentityService = request.app.state.identity
    identity.get_user(app_id, user_id)
    sessions: SessionManager = request.app.state.sessions
    return ApiResponse(data=[SessionOut.from_domain(r) for r in sessions.list_sessions(app_id, user_id)])


@router.post("/admin/{app_id}/users/{user_id}/revoke-sessions", response_model=ApiResponse[dict])
def revoke_user_sessions(request: Request, app_id: str, user_id: str, client: Client = Depends(get_current_client)):
    _registry(request).get_application(client.id, app_id)
    identity: IdentityService = request.app.state.identity
    identity.get_user(app_id, user_id)
    sessions: SessionManager = request.app.state.sessions
    count = sessions.revoke_all(app_id, user_id)
    return ApiResponse(message="Sessions revoked.", data={"revoked": count})


# ---------------------------------------------------------------------------
# Login history
# ---------------------------------------------------------------------------


@router.get("/admin/{app_id}/login-history", response_model=ApiResponse[list[LoginAttemptOut]])
def login_history(
    request: Request,
    app_id: str,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    client: Client = Depends(get_current_client),
):
    _registry(request).get_application(client.id, app_id)
    store: IdentityStore = request.app.state.identity_store
    attempts = store.list_attempts(app_id, user_id=user_id, limit=limit, offset=offset)
    return ApiResponse(data=[LoginAttemptOut.from_domain(a) for a in attempts])
