"""
auth/dependencies.py -- FastAPI Depends() helpers for the two caller scopes.

Tenant admin scope:
  get_current_client() -- Authorization: Bearer <client JWT>. Used by the
      /clients/me, /applications and /admin routes.

End-user scope:
  get_application() -- X-API-Key header resolved through the registry on every
      request. A revoked key, or a browser Origin the key does not allow, fails
      here before any route code runs. Each resolved request is then counted
      against the key's per-minute budget (429 rate_limited when spent).
  get_current_user() -- Authorization: Bearer <access/session/API token>,
      validated by the session manager according to the application's mode.

Failures raise core.errors types; api/main.py renders them as the error
envelope. Services live on app.state (wired by the lifespan in api/main.py).

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from api.limiter import api_key_limiter
from auth.models import User
from auth.tokens import decode_client_token
from core.errors import AuthenticationError, TokenlyError
from tenants.models import Application, Client


def bearer_token(request: Request) -> str | None:
    """Return the token from an Authorization: Bearer header, if present."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


def get_current_client(request: Request) -> Client:
    """Require a tenant admin token. Raises AuthenticationError (401) otherwise."""
    token = bearer_token(request)
    payload = decode_client_token(token) if token else None
    if payload is None:
        raise AuthenticationError("Authentication required.", code="unauthorized")
    client = request.app.state.tenant_store.get_client_by_id(payload["sub"])
    if client is None or client.status != "ACTIVE":
        raise AuthenticationError("Authentication required.", code="unauthorized")
    return client


def get_application(request: Request) -> Application:
    """Resolve the X-API-Key header to its Application (fails closed)."""
    key, application = request.app.state.registry.resolve_key(
        request.headers.get("X-API-Key"), request.headers.get("Origin")
    )
    if not api_key_limiter.hit(key.key_hash, key.rate_limit_per_minute):
        raise TokenlyError("Too many requests for this API key.", code="rate_limited", status_code=429)
    request.state.application = application
    return application


def get_current_user(request: Request, application: Application = Depends(get_application)) -> User:
    """Require an end-user bearer token valid for the resolved application."""
    token = bearer_token(request)
    if token is None:
        raise AuthenticationError("Authentication required.", code="unauthorized")
    return request.app.state.sessions.authenticate(application, token)
