"""
api/routes/v1/dashboard.py -- Aggregated metrics for the calling client's applications.

Returns a single payload suitable for driving dashboard widgets:
  - Application and user counts
  - Users with a login in the last 24 hours
  - Login attempts, failures and success rate from the login history
  - Trends: user growth over the last 7 days, and the change in success
    rate between the last 24 hours and the 24 hours before

This is a read-only aggregate route -- no mutations here. Registered before
the /admin/{app_id} routes so "dashboard" is never taken for an app id.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import ApiResponse, DashboardStatsOut
from auth.dependencies import get_current_client
from auth.store import IdentityStore
from tenants.models import Client
from tenants.registry import ApplicationRegistry

router = APIRouter(dependencies=[Depends(get_current_client)])


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def _success_rate(total: int, failed: int) -> float:
    """Percentage rounded to one decimal; 100.0 when nothing was attempted."""
    if total == 0:
        return 100.0
    return round(100.0 * (total - failed) / total, 1)


def _signed(value: float) -> str:
    return f"{value:+.1f}%"


def _user_trend(store: IdentityStore, app_ids: list[str], total_users: int, now: datetime) -> str:
    new_users = store.count_users(app_ids, created_since=_iso(now - timedelta(days=7)))
    previous = total_users - new_users
    if previous == 0:
        return _signed(100.0 if new_users else 0.0)
    return _signed(100.0 * new_users / previous)


def _success_rate_trend(store: IdentityStore, app_ids: list[str], now: datetime) -> str:
    """Percentage-point change between the last 24h and the 24h before.

    "+0.0%" when either window has no attempts.
    """
    day_ago = _iso(now - timedelta(hours=24))
    two_days_ago = _iso(now - timedelta(hours=48))
    recent = store.count_attempts(app_ids, since=day_ago)
    earlier = store.count_attempts(app_ids, since=two_days_ago, before=day_ago)
    if recent == 0 or earlier == 0:
        return _signed(0.0)
    recent_rate = _success_rate(recent, store.count_attempts(app_ids, success=False, since=day_ago))
    earlier_rate = _success_rate(
        earlier, store.count_attempts(app_ids, success=False, since=two_days_ago, before=day_ago)
    )
    return _signed(recent_rate - earlier_rate)


@limiter.limit("60/minute")
@router.get("/admin/dashboard/stats", response_model=ApiResponse[DashboardStatsOut])
def get_stats(request: Request, client: Client = Depends(get_current_client)) -> ApiResponse[DashboardStatsOut]:
    """Return aggregate counts across every active application of the client."""
    registry: ApplicationRegistry = request.app.state.registry
    store: IdentityStore = request.app.state.identity_store

    app_ids = [a.id for a in registry.list_applications(client.id)]
    now = datetime.now(timezone.utc)
    total_users = store.count_users(app_ids)
    total_logins = store.count_attempts(app_ids)
    failed_logins = store.count_attempts(app_ids, success=False)

    return ApiResponse(
        data=DashboardStatsOut(
            total_applications=len(app_ids),
            total_users=total_users,
            active_users_24h=store.count_users(app_ids, active_since=_iso(now - timedelta(hours=24))),
            total_logins=total_logins,
            failed_logins=failed_logins,
            api_success_rate=_success_rate(total_logins, failed_logins),
            user_trend=_user_trend(store, app_ids, total_users, now),
            success_rate_trend=_success_rate_trend(store, app_ids, now),
        )
    )
