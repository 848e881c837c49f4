"""
Stripe client for subscription reconciliation
"""
import stripe
import json
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
import logging

from config.billing_config import (
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE,
    STRIPE_PRICE_PREMIUM,
    FRONTEND_URL,
)
from models.subscription import BillingEvent, EventKind, STRIPE_EVENT_KINDS
from services.errors import SignatureInvalidError, MalformedEventError

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = STRIPE_SECRET_KEY


def _to_dict(obj) -> Optional[Dict[str, Any]]:
    """Turn a StripeObject into plain nested dicts."""
    if obj is None:
        return None
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def parse_event(body: Dict[str, Any]) -> BillingEvent:
    """Build a BillingEvent from a decoded Stripe event body."""
    if not isinstance(body, dict):
        raise MalformedEventError("Malformed event", details="Event body is not an object")

    event_id = body.get("id")
    event_type = body.get("type")
    created = body.get("created")
    data_object = (body.get("data") or {}).get("object")

    if not event_id or not event_type or created is None or not isinstance(data_object, dict):
        raise MalformedEventError("Malformed event", details="Missing id, type, created or data.object")

    try:
        created_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
    except (TypeError, ValueError):
        raise MalformedEventError("Malformed event", details="Invalid created timestamp")

    return BillingEvent(
        id=event_id,
        type=event_type,
        kind=STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN),
        created=created_at,
        data_object=data_object,
    )


class StripeService:
    def __init__(self, webhook_secret: Optional[str] = None, tolerance: int = STRIPE_WEBHOOK_TOLERANCE):
        self.webhook_secret = webhook_secret or STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance
        self.frontend_url = FRONTEND_URL
        self.premium_price_id = STRIPE_PRICE_PREMIUM

    def verify_event(self, payload: bytes, signature: str, secret: Optional[str] = None) -> BillingEvent:
        """
        Verify a webhook payload against its stripe-signature header and parse it.
        Rejects signatures whose timestamp falls outside the tolerance window.
        """
        secret = secret or self.webhook_secret
        if not signature or not secret:
            raise SignatureInvalidError("Invalid webhook signature")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise MalformedEventError("Malformed event", details="Payload is not UTF-8")

        try:
            stripe.WebhookSignature.verify_header(text, signature, secret, self.tolerance)
        except stripe.SignatureVerificationError:
            # Never report which part of the signature failed
            logger.warning("Webhook signature verification failed")
            raise SignatureInvalidError("Invalid webhook signature") from None

        try:
            body = json.loads(text)
        except ValueError:
            raise MalformedEventError("Malformed event", details="Payload is not valid JSON")

        return parse_event(body)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.Subscription.retrieve(subscription_id))

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.Customer.retrieve(customer_id))

    async def list_customers(self, email: str) -> List[Dict[str, Any]]:
        customers = stripe.Customer.list(email=email, limit=10)
        return [_to_dict(c) for c in customers.data]

    async def list_active_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=10)
        return [_to_dict(s) for s in subscriptions.data]

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.checkout.Session.retrieve(session_id))

    async def create_customer(self, account_id: str, email: str) -> str:
        """
        Create a Stripe customer tagged with the account id
        """
        customer = stripe.Customer.create(
            email=email,
            metadata={"userId": account_id}
        )
        logger.info(f"Created Stripe customer {customer.id} for user {account_id}")
        return customer.id

    async def create_checkout_session(self, account_id: str, email: Optional[str],
                                      price_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a subscription checkout session referencing the account
        """
        price_id = price_id or self.premium_price_id
        if not price_id:
            raise ValueError("No price configured for checkout")

        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self.frontend_url}/upgrade-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/",
            "client_reference_id": account_id,
            "metadata": {"userId": account_id},
            "subscription_data": {"metadata": {"userId": account_id}},
        }
        if email:
            params["customer_email"] = email

        session = stripe.checkout.Session.create(**params)
        logger.info(f"Created checkout session {session.id} for user {account_id}")
        return {"session_id": session.id, "url": session.url}

    async def create_portal_session(self, customer_id: str) -> str:
        """
        Create Stripe customer portal session
        """
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=self.frontend_url
        )
        return session.url
