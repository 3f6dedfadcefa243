"""
auth/oauth.py -- Google ID-token verification for OAUTH-mode applications.

The end user's frontend runs Google Sign-In itself and posts the resulting ID
token to /auth/login. We never see a Google client secret; the application's
google_client_id is the expected audience.

Verification (authlib JOSE):
  - signature against Google's published JWKS (fetched with requests, cached
    for an hour, refetched once when a token names an unknown kid)
  - iss is accounts.google.com, aud equals the application's client id
  - exp / iat checked by JWTClaims.validate()

Security notes:
  Email verification is mandatory. A token whose email_verified claim is not
  true is rejected -- an unverified Google address could belong to anyone.

The verifier is held on app.state so tests can substitute one that needs no
network.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import requests
from authlib.jose import JsonWebKey, jwt
from authlib.jose.errors import JoseError

from core.errors import AuthenticationError

logger = logging.getLogger("tokenly.auth.oauth")

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["https://accounts.google.com", "accounts.google.com"]
_JWKS_TTL_SECONDS = 3600


@dataclass(frozen=True)
class GoogleIdentity:
    email: str
    subject: str


class IdTokenVerifier(Protocol):
    def verify(self, id_token: str, client_id: str) -> GoogleIdentity: ...


class GoogleIdTokenVerifier:
    """Verify Google-issued ID tokens against Google's JWKS."""

    def __init__(self, jwks_url: str = GOOGLE_JWKS_URL) -> None:
        self.jwks_url = jwks_url
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._lock = threading.Lock()
        self._jwks: dict | None = None
        self._fetched_at = 0.0

    def verify(self, id_token: str, client_id: str) -> GoogleIdentity:
        try:
            claims = self._decode(id_token, client_id, force_refresh=False)
        except ValueError:
            # authlib raises ValueError for an unknown kid; Google may have rotated keys.
            try:
                claims = self._decode(id_token, client_id, force_refresh=True)
            except ValueError as exc:
                raise AuthenticationError("Invalid Google ID token.", code="oauth_failed") from exc

        if claims.get("email_verified") is not True:
            raise AuthenticationError("Google account email is not verified.", code="oauth_failed")
        email = claims.get("email")
        subject = claims.get("sub")
        if not email or not subject:
            raise AuthenticationError("Google token is missing email or subject.", code="oauth_failed")
        return GoogleIdentity(email=email, subject=subject)

    def _decode(self, id_token: str, client_id: str, force_refresh: bool):
        key_set = JsonWebKey.import_key_set(self._keys(force_refresh))
        options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "aud": {"essential": True, "value": client_id},
            "sub": {"essential": True},
        }
        try:
            claims = jwt.decode(id_token, key_set, claims_options=options)
            claims.validate()
        except JoseError as exc:
            logger.info("Google ID token rejected: %s", exc)
            raise AuthenticationError("Invalid Google ID token.", code="oauth_failed") from exc
        return claims

    def _keys(self, force_refresh: bool) -> dict:
        with self._lock:
            cached = self._jwks
            stale = time.monotonic() - self._fetched_at > _JWKS_TTL_SECONDS
        if cached is not None and not stale and not force_refresh:
            return cached

        # Fetch without holding the lock; only the swap below writes.
        try:
            resp = self._session.get(self.jwks_url, timeout=10)
            resp.raise_for_status()
            fresh = resp.json()
        except requests.RequestException as exc:
            logger.warning("Google JWKS fetch failed: %s", exc)
            if cached is None:
                raise AuthenticationError("Google sign-in is temporarily unavailable.", code="oauth_failed") from exc
            return cached

        with self._lock:
            self._jwks = fresh
            self._fetched_at = time.monotonic()
        return fresh
