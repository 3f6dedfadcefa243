"""Unit tests for auth/oauth.py -- Google JWKS caching.

The HTTP session is replaced with a MagicMock; no network access.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from auth.oauth import GoogleIdTokenVerifier
from core.errors import AuthenticationError

_JWKS = {"keys": [{"kty": "RSA", "kid": "k1", "n": "abc", "e": "AQAB"}]}
_ROTATED = {"keys": [{"kty": "RSA", "kid": "k2", "n": "def", "e": "AQAB"}]}


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestJwksCache:
    def test_fetch_happens_outside_the_lock(self):
        verifier = GoogleIdTokenVerifier()
        lock_held = []

        def fake_get(url, timeout):
            lock_held.append(verifier._lock.locked())
            return _response(_JWKS)

        with patch.object(verifier._session, "get", side_effect=fake_get):
            assert verifier._keys(force_refresh=False) == _JWKS
        assert lock_held == [False]

    def test_fresh_keys_are_reused(self):
        verifier = GoogleIdTokenVerifier()
        with patch.object(verifier._session, "get", return_value=_response(_JWKS)) as mock_get:
            verifier._keys(force_refresh=False)
            verifier._keys(force_refresh=False)
        assert mock_get.call_count == 1

    def test_force_refresh_swaps_keys(self):
        verifier = GoogleIdTokenVerifier()
        with patch.object(verifier._session, "get", side_effect=[_response(_JWKS), _response(_ROTATED)]):
            verifier._keys(force_refresh=False)
            assert verifier._keys(force_refresh=True) == _ROTATED
        assert verifier._jwks == _ROTATED

    def test_failed_refresh_keeps_cached_keys(self):
        verifier = GoogleIdTokenVerifier()
        with patch.object(
            verifier._session, "get", side_effect=[_response(_JWKS), requests.ConnectionError("down")]
        ):
            verifier._keys(force_refresh=False)
            assert verifier._keys(force_refresh=True) == _JWKS

    def test_first_fetch_failure_is_an_oauth_error(self):
        verifier = GoogleIdTokenVerifier()
        with patch.object(verifier._session, "get", side_effect=requests.Timeout("slow")):
            with pytest.raises(AuthenticationError) as exc_info:
                verifier._keys(force_refresh=False)
        assert exc_info.value.code == "oauth_failed"
