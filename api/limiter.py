"""
api/limiter.py -- Shared slowapi rate limiter instance and the per-API-key limiter.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply per-route limits with @limiter.limit().

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

api_key_limiter budgets end-user traffic per X-API-Key. It sits on the same
`limits` moving-window strategy slowapi uses, keyed on the stored key hash so
the plaintext key never becomes a counter name. auth/dependencies.py hits it
once per resolved request.

RATE_LIMIT_ENABLED=false turns every limit into a no-op (the test suite does
this so repeated logins from the TestClient host are never throttled).
"""

from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings
from tenants.models import DEFAULT_API_KEY_RATE_LIMIT

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", enabled=_settings.rate_limit_enabled)

LOGIN_LIMIT = _settings.login_rate_limit
OTP_LIMIT = _settings.otp_rate_limit


class ApiKeyLimiter:
    """Moving one-minute window per API key."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._window = MovingWindowRateLimiter(MemoryStorage())

    def hit(self, key_hash: str, per_minute: int | None) -> bool:
        """Count one request against the key. False once the budget is spent."""
        if not self.enabled:
            return True
        item = RateLimitItemPerMinute(per_minute or DEFAULT_API_KEY_RATE_LIMIT)
        return self._window.hit(item, "api_key", key_hash)


api_key_limiter = ApiKeyLimiter(enabled=_settings.rate_limit_enabled)
