"""
Billing routes: Stripe webhook, drift correction, checkout and portal sessions
"""
from fastapi import APIRouter, HTTPException, status, Depends, Request
from fastapi.responses import JSONResponse
from typing import Optional
import logging

import stripe

from auth.dependencies import get_current_user, get_reconciler
from models.subscription import PlanType, SubscriptionResponse
from models.user import CheckoutRequest, CheckoutResponse, PortalResponse, RefreshResponse
from services.errors import (
    BillingError,
    IncompleteCheckoutError,
    MalformedEventError,
    SignatureInvalidError,
    StoreWriteError,
    TransientReadError,
    UnresolvedAccountError,
)
from services.reconciler import Reconciler

router = APIRouter(prefix="/api", tags=["Billing"])
logger = logging.getLogger(__name__)


def error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content = {"error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@router.post("/webhook")
async def stripe_webhook(request: Request, reconciler: Reconciler = Depends(get_reconciler)):
    """
    Handle Stripe webhook events
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing stripe-signature header")

    try:
        event = reconciler.provider.verify_event(payload, signature)
    except (SignatureInvalidError, MalformedEventError) as e:
        logger.warning(f"Rejected webhook: {e.message}")
        return error_response(status.HTTP_400_BAD_REQUEST, e.message, e.details)

    try:
        result = await reconciler.handle_event(event)
    except (UnresolvedAccountError, IncompleteCheckoutError) as e:
        # Acknowledge so Stripe stops redelivering; nothing was written
        logger.warning(f"Acknowledged {event.type} {event.id} without changes: {e.message} ({e.details})")
        return {"received": True, "status": "skipped", "event_type": event.type, "reason": e.message}
    except MalformedEventError as e:
        logger.warning(f"Malformed {event.type} {event.id}: {e.details}")
        return error_response(status.HTTP_400_BAD_REQUEST, e.message, e.details)
    except StoreWriteError as e:
        logger.error(f"Store write failed for {event.type} {event.id}: {e.details}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message, e.details)
    except Exception as e:
        logger.error(f"Webhook processing error for {event.type} {event.id}: {e}", exc_info=True)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook handler failed")

    return {"received": True, **result}


@router.get("/verify-session", response_model=RefreshResponse)
async def verify_session(session_id: Optional[str] = None, reconciler: Reconciler = Depends(get_reconciler)):
    """
    Post-checkout redirect: reconcile from the checkout session
    """
    if not session_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing session_id")

    try:
        success = await reconciler.refresh_from_checkout_session(session_id)
    except BillingError as e:
        logger.warning(f"Session {session_id} verification did not complete: {e.message}")
        return RefreshResponse(success=False)
    except Exception as e:
        logger.error(f"Error verifying session {session_id}: {str(e)}", exc_info=True)
        return RefreshResponse(success=False)

    return RefreshResponse(success=success)


@router.post("/subscription/refresh", response_model=RefreshResponse)
async def refresh_subscription(
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Drift correction for the current user
    """
    try:
        await reconciler.refresh_account(current_user["id"], current_user.get("email"))
    except (TransientReadError, StoreWriteError) as e:
        logger.warning(f"Refresh failed for user {current_user['id']}: {e.message}")
        return RefreshResponse(success=False)
    except Exception as e:
        logger.error(f"Error refreshing subscription for user {current_user['id']}: {str(e)}", exc_info=True)
        return RefreshResponse(success=False)

    return RefreshResponse(success=True)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription_details(
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Get current user's plan and authoritative subscription
    """
    try:
        store = reconciler.store
        projection = await store.get_plan_projection(current_user["id"])
        record = await store.query_active_subscription(current_user["id"])
        if record is None:
            record = await store.get_latest_subscription(current_user["id"])
    except Exception as e:
        logger.error(f"Error getting subscription details: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get subscription details"
        )

    plan = projection.plan if projection else PlanType.FREE
    return SubscriptionResponse(
        plan=plan,
        is_premium=plan == PlanType.PREMIUM,
        status=record.status if record else None,
        cancel_at_period_end=record.cancel_at_period_end if record else False,
        current_period_start=record.current_period_start if record else None,
        current_period_end=record.current_period_end if record else None,
    )


@router.post("/create-checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Create Stripe checkout session for subscription
    """
    try:
        session = await reconciler.provider.create_checkout_session(
            current_user["id"],
            current_user.get("email"),
            request.price_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error creating checkout session"
        )

    return CheckoutResponse(**session)


@router.post("/create-portal-session", response_model=PortalResponse)
async def create_portal_session(
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Create Stripe customer portal session, creating the customer if needed
    """
    try:
        record = await reconciler.store.get_latest_subscription(current_user["id"])
        customer_id = record.customer_id if record else None

        if not customer_id:
            if not current_user.get("email"):
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail="User not found"
                )
            customer_id = await reconciler.provider.create_customer(current_user["id"], current_user["email"])

        portal_url = await reconciler.provider.create_portal_session(customer_id)
        logger.info(f"Created portal session for user {current_user['id']}")
        return PortalResponse(url=portal_url)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating portal session: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error creating portal session"
        )
