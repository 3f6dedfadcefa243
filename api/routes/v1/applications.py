"""
api/routes/v1/applications.py -- Application CRUD for the calling client.

Routes:
  POST   /api/v1/applications           -- create app + default auth config + first API key
  GET    /api/v1/applications           -- list the client's active applications
  GET    /api/v1/applications/{app_id}  -- one application (404 if not the caller's)
  PUT    /api/v1/applications/{app_id}  -- rename / change environment
  DELETE /api/v1/applications/{app_id}  -- soft delete; its API keys stop resolving

The plaintext API key is returned exactly once, in the POST response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    ApiResponse,
    ApplicationCreatedOut,
    ApplicationCreateRequest,
    ApplicationOut,
    ApplicationUpdateRequest,
)
from auth.dependencies import get_current_client
from tenants.models import AuthConfig, Client
from tenants.registry import ApplicationRegistry

# Auth policy: every route requires a client token. Router-level dependency
# enforces it; handlers that need the client repeat Depends to receive it.
router = APIRouter(dependencies=[Depends(get_current_client)])


@router.post("/applications", response_model=ApiResponse[ApplicationCreatedOut], status_code=201)
def create_application(
    request: Request,
    response: Response,
    body: ApplicationCreateRequest,
    client: Client = Depends(get_current_client),
) -> ApiResponse[ApplicationCreatedOut]:
    registry: ApplicationRegistry = request.app.state.registry
    config = AuthConfig()
    if body.auth_config is not None:
        for name, value in body.auth_config.changes().items():
            if value is not None:
                setattr(config, name, value)
    application, raw_key = registry.create_application(client.id, body.app_name, body.environment, config)
    response.headers["Cache-Control"] = "no-store"
    return ApiResponse(
        message="Application created. Store the API key now; it will not be shown again.",
        data=ApplicationCreatedOut(application=ApplicationOut.from_domain(application), api_key=raw_key),
    )


@router.get("/applications", response_model=ApiResponse[list[ApplicationOut]])
def list_applications(request: Request, client: Client = Depends(get_current_client)) -> ApiResponse[list[ApplicationOut]]:
    registry: ApplicationRegistry = request.app.state.registry
    return ApiResponse(data=[ApplicationOut.from_domain(a) for a in registry.list_applications(client.id)])


@router.get("/applications/{app_id}", response_model=ApiResponse[ApplicationOut])
def get_application(request: Request, app_id: str, client: Client = Depends(get_current_client)) -> ApiResponse[ApplicationOut]:
    registry: ApplicationRegistry = request.app.state.registry
    return ApiResponse(data=ApplicationOut.from_domain(registry.get_application(client.id, app_id)))


@router.put("/applications/{app_id}", response_model=ApiResponse[ApplicationOut])
def update_application(
    request: Request,
    app_id: str,
    body: ApplicationUpdateRequest,
    client: Client = Depends(get_current_client),
) -> ApiResponse[ApplicationOut]:
    registry: ApplicationRegistry = request.app.state.registry
    application = registry.update_application(client.id, app_id, app_name=body.app_name, environment=body.environment)
    return ApiResponse(message="Application updated.", data=ApplicationOut.from_domain(application))


@router.delete("/applications/{app_id}", response_model=ApiResponse[None])
def delete_application(request: Request, app_id: str, client: Client = Depends(get_current_client)) -> ApiResponse[None]:
    registry: ApplicationRegistry = request.app.state.registry
    registry.delete_application(client.id, app_id)
    return ApiResponse(message="Application deleted.")
