"""
Authentication and service dependencies
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .middleware import get_auth_middleware
from services.rate_limiter import RequestRateLimiter
from services.reconciler import Reconciler
from services.record_store import SupabaseRecordStore, get_supabase_client
from services.stripe_service import StripeService

security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Get current authenticated user
    """
    auth_middleware = get_auth_middleware()
    return await auth_middleware.verify_token(credentials)


def get_record_store() -> SupabaseRecordStore:
    return SupabaseRecordStore(get_supabase_client())


def get_stripe_service() -> StripeService:
    return StripeService()


def get_reconciler(
    store: SupabaseRecordStore = Depends(get_record_store),
    provider: StripeService = Depends(get_stripe_service),
) -> Reconciler:
    return Reconciler(store, provider)


def get_settings_rate_limiter(request: Request) -> RequestRateLimiter:
    return request.app.state.settings_rate_limiter


async def enforce_settings_rate_limit(
    request: Request,
    limiter: RequestRateLimiter = Depends(get_settings_rate_limiter),
):
    """
    One settings request per second per client address
    """
    client_key = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
    if not limiter.allow(client_key):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests"
        )
