"""
Subscription, plan projection and billing event models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum

from config.billing_config import get_plan_config


class PlanType(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


TERMINAL_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED}


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    CHECKOUT_COMPLETED = "checkout.completed"
    UNKNOWN = "unknown"


# Stripe event type -> recognized kind
STRIPE_EVENT_KINDS = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
}


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Convert provider epoch seconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BillingEvent(BaseModel):
    id: str
    type: str
    kind: EventKind
    created: datetime
    data_object: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionRecord(BaseModel):
    subscription_id: Optional[str] = None
    account_id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    price_id: Optional[str] = None
    quantity: Optional[int] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_stripe(cls, subscription: Dict[str, Any], account_id: str,
                    event_created: Optional[datetime] = None) -> "SubscriptionRecord":
        """Build a record from a Stripe subscription object (plain dict)."""
        items = (subscription.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # Newer API versions carry the billing period on the item instead of the subscription
        period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
        period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

        customer = subscription.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return cls(
            subscription_id=subscription.get("id"),
            account_id=account_id,
            customer_id=customer,
            status=subscription["status"],
            price_id=price.get("id"),
            quantity=first_item.get("quantity"),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            current_period_start=from_epoch(period_start),
            current_period_end=from_epoch(period_end),
            created_at=from_epoch(subscription.get("created")),
            ended_at=from_epoch(subscription.get("ended_at")),
            cancel_at=from_epoch(subscription.get("cancel_at")),
            canceled_at=from_epoch(subscription.get("canceled_at")),
            trial_start=from_epoch(subscription.get("trial_start")),
            trial_end=from_epoch(subscription.get("trial_end")),
            last_event_at=event_created,
        )


class PlanProjection(BaseModel):
    account_id: str
    plan: PlanType = PlanType.FREE
    is_premium: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def for_plan(cls, account_id: str, plan: PlanType) -> "PlanProjection":
        return cls(
            account_id=account_id,
            plan=plan,
            is_premium=get_plan_config(plan.value)["is_premium"],
            updated_at=datetime.now(timezone.utc),
        )


class ProjectionWriteMode(str, Enum):
    OVERWRITE = "overwrite"            # reconciler decisions from events
    INSERT_IF_ABSENT = "insert_if_absent"  # settings initialization
    UPGRADE_ONLY = "upgrade_only"      # manual refresh, never downgrades


class SubscriptionResponse(BaseModel):
    plan: PlanType
    is_premium: bool
    status: Optional[SubscriptionStatus] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
