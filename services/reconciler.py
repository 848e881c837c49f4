"""
Reconciler: keeps each account's plan projection consistent with Stripe.

Webhook events arrive unordered, duplicated and sometimes without the metadata
we need. Every write goes through merge_snapshot(), which orders snapshots by
(current_period_start, event time) so a redelivered older snapshot never rolls
back a newer one, and derive_plan(), which is the only place the free/premium
decision is made. Subscription rows are written compare-and-set, so a handler
that merged against a row a concurrent deletion has since canceled re-merges
instead of writing it back to active. Manual refresh is the pull-based path:
it can upgrade an account whose webhook was lost, but it never downgrades.
"""
import logging
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timezone

from pydantic import ValidationError

from config.billing_config import ACCOUNT_METADATA_KEYS, SUBSCRIPTION_WRITE_ATTEMPTS
from config.decorators import retry_with_backoff
from models.subscription import (
    BillingEvent,
    EventKind,
    PlanProjection,
    PlanType,
    ProjectionWriteMode,
    SubscriptionRecord,
    SubscriptionStatus,
)
from services.errors import (
    IncompleteCheckoutError,
    MalformedEventError,
    StoreWriteError,
    UnresolvedAccountError,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def account_from_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    for key in ACCOUNT_METADATA_KEYS:
        if metadata.get(key):
            return metadata[key]
    return None


def _ordering_key(record: SubscriptionRecord) -> Tuple[datetime, datetime]:
    return (record.current_period_start or _EPOCH, record.last_event_at or _EPOCH)


def merge_snapshot(stored: Optional[SubscriptionRecord], incoming: SubscriptionRecord) -> SubscriptionRecord:
    """
    Last-writer-wins by embedded timestamps, not arrival order.
    A stale snapshot never regresses status or period fields; its cancellation
    fields still apply when its event is newer than the last one applied.
    """
    if stored is None:
        return incoming

    if stored.is_terminal and not incoming.is_terminal:
        fill = {field: getattr(incoming, field) for field in ("canceled_at", "ended_at")
                if getattr(stored, field) is None and getattr(incoming, field) is not None}
        return stored.model_copy(update=fill) if fill else stored

    if _ordering_key(incoming) >= _ordering_key(stored):
        if incoming.customer_id is None and stored.customer_id is not None:
            return incoming.model_copy(update={"customer_id": stored.customer_id})
        return incoming

    if (incoming.last_event_at or _EPOCH) > (stored.last_event_at or _EPOCH):
        update = {
            "cancel_at_period_end": incoming.cancel_at_period_end,
            "cancel_at": incoming.cancel_at,
            "last_event_at": incoming.last_event_at,
        }
        for field in ("canceled_at", "ended_at"):
            if getattr(incoming, field) is not None:
                update[field] = getattr(incoming, field)
        return stored.model_copy(update=update)

    return stored


def derive_plan(record: Optional[SubscriptionRecord], now: Optional[datetime] = None) -> PlanType:
    """Premium while active; a pending cancellation keeps premium until the period is over."""
    if record is None or record.status != SubscriptionStatus.ACTIVE or record.ended_at is not None:
        return PlanType.FREE
    now = now or datetime.now(timezone.utc)
    if record.cancel_at_period_end and record.current_period_end and record.current_period_end <= now:
        return PlanType.FREE
    return PlanType.PREMIUM


class Reconciler:
    def __init__(self, store, provider):
        self.store = store
        self.provider = provider

    async def handle_event(self, event: BillingEvent) -> Dict[str, Any]:
        """
        Apply a verified event. Unknown kinds are acknowledged and ignored.
        """
        event_handlers = {
            EventKind.SUBSCRIPTION_CREATED: self._handle_subscription_changed,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
        }

        handler = event_handlers.get(event.kind)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type: {event.type}")
            return {"status": "ignored", "event_type": event.type}

        logger.info(f"Processing webhook event {event.id}: {event.type}")
        projection = await handler(event)
        return {"status": "processed", "event_type": event.type, "plan": projection.plan.value}

    async def resolve_account_id(self, subscription: Dict[str, Any]) -> str:
        """Subscription metadata first, then the customer's metadata."""
        account_id = account_from_metadata(subscription.get("metadata"))
        if account_id:
            return account_id

        customer = subscription.get("customer")
        if isinstance(customer, str):
            customer = await self.provider.retrieve_customer(customer)
        if isinstance(customer, dict):
            account_id = account_from_metadata(customer.get("metadata"))
        if account_id:
            return account_id

        raise UnresolvedAccountError(
            "Could not resolve account for subscription",
            details=f"subscription {subscription.get('id')} has no userId on itself or its customer",
        )

    def _snapshot(self, subscription: Dict[str, Any], account_id: str,
                  event_created: Optional[datetime]) -> SubscriptionRecord:
        if not subscription.get("id"):
            raise MalformedEventError("Malformed event", details="Subscription has no id")
        try:
            return SubscriptionRecord.from_stripe(subscription, account_id, event_created)
        except (ValidationError, KeyError) as e:
            raise MalformedEventError("Malformed event", details=f"Invalid subscription object: {e}")

    async def _commit_snapshot(self, incoming: SubscriptionRecord) -> SubscriptionRecord:
        """
        Merge incoming into the stored row and write it with compare-and-set,
        re-reading and re-merging whenever another writer committed in between.
        Returns the row as committed.
        """
        for attempt in range(SUBSCRIPTION_WRITE_ATTEMPTS):
            stored = await self.store.get_subscription(incoming.subscription_id)
            merged = merge_snapshot(stored, incoming)
            if merged == stored:
                return stored
            if await self.store.save_subscription(merged, expected=stored):
                return merged
            logger.info(f"Subscription {incoming.subscription_id} changed concurrently; re-merging "
                        f"(Attempt {attempt + 1}/{SUBSCRIPTION_WRITE_ATTEMPTS})")

        raise StoreWriteError(
            "Failed to update subscription",
            details=f"subscription {incoming.subscription_id} kept changing during the write",
        )

    async def _plan_for(self, record: Optional[SubscriptionRecord], account_id: str) -> PlanType:
        plan = derive_plan(record)
        if plan == PlanType.FREE:
            # Another active subscription on the same account still entitles it
            other = await self.store.query_active_subscription(account_id)
            if other and (record is None or other.subscription_id != record.subscription_id):
                plan = derive_plan(other)
        return plan

    async def _settle_premium(self, record: SubscriptionRecord, account_id: str) -> Optional[PlanProjection]:
        """
        Re-check the row after a premium write. A deletion committed in the
        meantime may have written free before our premium landed; put it back.
        """
        current = await self.store.get_subscription(record.subscription_id)
        if current is None or derive_plan(current) == PlanType.PREMIUM:
            return None
        if await self._plan_for(current, account_id) == PlanType.PREMIUM:
            return None
        logger.warning(f"Subscription {record.subscription_id} ended while user {account_id} was being upgraded; "
                       f"reverting to free")
        return await self.store.upsert_plan_projection(account_id, PlanType.FREE, ProjectionWriteMode.OVERWRITE)

    async def _apply_snapshot(self, subscription: Dict[str, Any], account_id: str,
                              event_created: Optional[datetime],
                              customer_id: Optional[str] = None) -> PlanProjection:
        incoming = self._snapshot(subscription, account_id, event_created)
        if incoming.customer_id is None and customer_id:
            incoming = incoming.model_copy(update={"customer_id": customer_id})

        committed = await self._commit_snapshot(incoming)
        plan = await self._plan_for(committed, account_id)

        projection = await self.store.upsert_plan_projection(account_id, plan, ProjectionWriteMode.OVERWRITE)
        if plan == PlanType.PREMIUM:
            projection = await self._settle_premium(committed, account_id) or projection
        logger.info(f"Subscription {committed.subscription_id} is {committed.status.value}; "
                    f"user {account_id} plan: {projection.plan.value}")
        return projection

    async def _handle_subscription_changed(self, event: BillingEvent) -> PlanProjection:
        subscription = event.data_object
        account_id = await self.resolve_account_id(subscription)
        return await self._apply_snapshot(subscription, account_id, event.created)

    async def _handle_subscription_deleted(self, event: BillingEvent) -> PlanProjection:
        """
        Deletion always wins: the row and every other live row of the account
        end up canceled and the projection goes to free.
        """
        subscription = event.data_object
        account_id = await self.resolve_account_id(subscription)
        incoming = self._snapshot(subscription, account_id, event.created)

        canceled_at = incoming.canceled_at or event.created
        ended_at = incoming.ended_at or canceled_at
        update = {
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": canceled_at,
            "ended_at": ended_at,
        }

        stored = await self.store.get_subscription(incoming.subscription_id)
        if stored is not None and incoming.customer_id is None:
            update["customer_id"] = stored.customer_id
        if stored is not None and stored.last_event_at and (incoming.last_event_at or _EPOCH) < stored.last_event_at:
            update["last_event_at"] = stored.last_event_at

        await self.store.upsert_subscription(incoming.model_copy(update=update))
        await self.store.cancel_account_subscriptions(account_id, canceled_at, ended_at)

        projection = await self.store.upsert_plan_projection(account_id, PlanType.FREE, ProjectionWriteMode.OVERWRITE)
        logger.info(f"Subscription {incoming.subscription_id} deleted; user {account_id} downgraded to free")
        return projection

    async def _handle_checkout_completed(self, event: BillingEvent) -> PlanProjection:
        return await self._apply_checkout_session(event.data_object, event.created)

    async def _apply_checkout_session(self, session: Dict[str, Any], event_created: datetime) -> PlanProjection:
        account_id = session.get("client_reference_id") or account_from_metadata(session.get("metadata"))
        if not account_id:
            raise UnresolvedAccountError(
                "Could not resolve account for checkout session",
                details=f"checkout session {session.get('id')} has no client_reference_id",
            )

        subscription = session.get("subscription")
        if not subscription:
            raise IncompleteCheckoutError(
                "Checkout session has no subscription yet",
                details=f"checkout session {session.get('id')} for user {account_id}",
            )
        if isinstance(subscription, str):
            subscription = await self.provider.retrieve_subscription(subscription)

        customer_id = session.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")

        return await self._apply_snapshot(subscription, account_id, event_created, customer_id=customer_id)

    # -- manual refresh ---------------------------------------------------

    @retry_with_backoff()
    async def _find_active_subscription(self, account_id: str,
                                        email: Optional[str]) -> Tuple[Optional[SubscriptionRecord], bool]:
        """Returns (record, found_on_provider)."""
        record = await self.store.query_active_subscription(account_id)
        if record is not None or not email:
            return record, False

        candidates = []
        for customer in await self.provider.list_customers(email):
            owner = account_from_metadata(customer.get("metadata"))
            if owner and owner != account_id:
                continue
            candidates.extend(await self.provider.list_active_subscriptions(customer["id"]))

        if not candidates:
            return None, False
        latest = max(candidates, key=lambda s: s.get("created") or 0)
        return self._snapshot(latest, account_id, datetime.now(timezone.utc)), True

    async def refresh_account(self, account_id: str, email: Optional[str] = None) -> Optional[PlanProjection]:
        """
        Re-derive the plan from the latest active subscription.
        Raises TransientReadError once retries run out; never downgrades.
        """
        record, from_provider = await self._find_active_subscription(account_id, email)
        return await self._upgrade_from(record, from_provider, account_id)

    @retry_with_backoff()
    async def _upgrade_from(self, record: Optional[SubscriptionRecord], from_provider: bool,
                            account_id: str) -> Optional[PlanProjection]:
        if from_provider:
            record = await self._commit_snapshot(record)

        if derive_plan(record) != PlanType.PREMIUM:
            logger.info(f"No active subscription found for user {account_id}; leaving plan unchanged")
            return None

        projection = await self.store.upsert_plan_projection(account_id, PlanType.PREMIUM, ProjectionWriteMode.UPGRADE_ONLY)
        projection = await self._settle_premium(record, account_id) or projection
        logger.info(f"Refreshed user {account_id}: plan {projection.plan.value}")
        return projection

    @retry_with_backoff()
    async def _retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self.provider.retrieve_checkout_session(session_id)

    @retry_with_backoff()
    async def _apply_paid_session(self, session: Dict[str, Any]) -> PlanProjection:
        subscription = session["subscription"]
        if isinstance(subscription, str):
            subscription = await self.provider.retrieve_subscription(subscription)
        return await self._apply_checkout_session({**session, "subscription": subscription},
                                                  datetime.now(timezone.utc))

    async def refresh_from_checkout_session(self, session_id: str) -> bool:
        """
        Post-checkout redirect: apply the paid session, then run drift correction.
        Provider and store reads are retried; exhaustion raises TransientReadError.
        """
        session = await self._retrieve_checkout_session(session_id)
        if session.get("payment_status") != "paid":
            logger.info(f"Checkout session {session_id} is not paid yet")
            return False

        account_id = session.get("client_reference_id") or account_from_metadata(session.get("metadata"))
        if not account_id:
            raise UnresolvedAccountError(
                "Could not resolve account for checkout session",
                details=f"checkout session {session_id} has no client_reference_id",
            )

        if session.get("subscription"):
            await self._apply_paid_session(session)

        email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
        await self.refresh_account(account_id, email)
        return True

    # -- settings ---------------------------------------------------------

    async def initialize_settings(self, account_id: str) -> PlanProjection:
        """Create the free projection on first access; an existing row is left alone."""
        projection = await self.store.upsert_plan_projection(account_id, PlanType.FREE, ProjectionWriteMode.INSERT_IF_ABSENT)
        logger.info(f"Settings initialized for user {account_id}: plan {projection.plan.value}")
        return projection

    async def save_settings(self, account_id: str, api_key: Optional[str] = None) -> PlanProjection:
        """Initialize the settings row, then store the API key if one was given; the plan is never touched."""
        projection = await self.initialize_settings(account_id)
        if api_key:
            await self.store.update_api_key(account_id, api_key)
            logger.info(f"Saved API key for user {account_id}")
        return projection
