"""
Supabase-backed store for subscription records and plan projections
"""
import os
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from dotenv import load_dotenv
from supabase import create_client, Client

from models.subscription import (
    SubscriptionRecord,
    SubscriptionStatus,
    PlanProjection,
    PlanType,
    ProjectionWriteMode,
    TERMINAL_STATUSES,
)
from services.errors import StoreWriteError

load_dotenv()

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"
SETTINGS_TABLE = "user_settings"

# Record field -> column name, where they differ
_COLUMN_NAMES = {
    "subscription_id": "id",
    "account_id": "user_id",
}
_FIELD_NAMES = {column: field for field, column in _COLUMN_NAMES.items()}


def record_to_row(record: SubscriptionRecord) -> Dict[str, Any]:
    row = {}
    for field, value in record.model_dump().items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, SubscriptionStatus):
            value = value.value
        row[_COLUMN_NAMES.get(field, field)] = value
    return row


def row_to_record(row: Dict[str, Any]) -> SubscriptionRecord:
    return SubscriptionRecord(**{_FIELD_NAMES.get(k, k): v for k, v in row.items()
                                 if _FIELD_NAMES.get(k, k) in SubscriptionRecord.model_fields})


def row_to_projection(row: Dict[str, Any]) -> PlanProjection:
    return PlanProjection(
        account_id=row["user_id"],
        plan=row.get("plan") or PlanType.FREE,
        is_premium=bool(row.get("is_premium", False)),
        updated_at=row.get("updated_at"),
    )


class SupabaseRecordStore:
    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    # -- subscriptions --------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        response = (self.supabase.table(SUBSCRIPTIONS_TABLE)
                    .select("*")
                    .eq("id", subscription_id)
                    .limit(1)
                    .execute())
        return row_to_record(response.data[0]) if response.data else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if not record.subscription_id:
            raise StoreWriteError("Subscription record has no id")
        try:
            (self.supabase.table(SUBSCRIPTIONS_TABLE)
                .upsert(record_to_row(record), on_conflict="id")
                .execute())
        except Exception as e:
            logger.error(f"Error upserting subscription {record.subscription_id}: {e}")
            raise StoreWriteError("Failed to update subscription", details=str(e)) from e
        return record

    async def save_subscription(self, record: SubscriptionRecord,
                                expected: Optional[SubscriptionRecord]) -> bool:
        """
        Compare-and-set write of a merged record. Inserts only when no row
        exists (expected is None); otherwise updates only while the row still
        has the status and last_event_at it was merged from. False means
        another writer got there first and the caller has to re-merge.
        """
        if not record.subscription_id:
            raise StoreWriteError("Subscription record has no id")
        row = record_to_row(record)
        try:
            if expected is None:
                query = (self.supabase.table(SUBSCRIPTIONS_TABLE)
                         .upsert(row, on_conflict="id", ignore_duplicates=True))
            else:
                query = (self.supabase.table(SUBSCRIPTIONS_TABLE)
                         .update(row)
                         .eq("id", record.subscription_id)
                         .eq("status", expected.status.value))
                if expected.last_event_at is None:
                    query = query.is_("last_event_at", "null")
                else:
                    query = query.eq("last_event_at", expected.last_event_at.isoformat())
            response = query.execute()
        except Exception as e:
            logger.error(f"Error saving subscription {record.subscription_id}: {e}")
            raise StoreWriteError("Failed to update subscription", details=str(e)) from e
        return bool(response.data)

    async def query_active_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        """Most recent active subscription for the account, if any."""
        response = (self.supabase.table(SUBSCRIPTIONS_TABLE)
                    .select("*")
                    .eq("user_id", account_id)
                    .eq("status", SubscriptionStatus.ACTIVE.value)
                    .order("created_at", desc=True)
                    .limit(1)
                    .execute())
        return row_to_record(response.data[0]) if response.data else None

    async def get_latest_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        response = (self.supabase.table(SUBSCRIPTIONS_TABLE)
                    .select("*")
                    .eq("user_id", account_id)
                    .order("created_at", desc=True)
                    .limit(1)
                    .execute())
        return row_to_record(response.data[0]) if response.data else None

    async def cancel_account_subscriptions(self, account_id: str, canceled_at: datetime,
                                           ended_at: Optional[datetime] = None) -> None:
        """Mark every non-terminal subscription row of the account canceled."""
        update_data = {
            "status": SubscriptionStatus.CANCELED.value,
            "canceled_at": canceled_at.isoformat(),
            "ended_at": (ended_at or canceled_at).isoformat(),
        }
        try:
            (self.supabase.table(SUBSCRIPTIONS_TABLE)
                .update(update_data)
                .eq("user_id", account_id)
                .not_.in_("status", [s.value for s in TERMINAL_STATUSES])
                .execute())
        except Exception as e:
            logger.error(f"Error canceling subscriptions for user {account_id}: {e}")
            raise StoreWriteError("Failed to cancel subscriptions", details=str(e)) from e

    # -- plan projection ------------------------------------------------------

    async def get_plan_projection(self, account_id: str) -> Optional[PlanProjection]:
        response = (self.supabase.table(SETTINGS_TABLE)
                    .select("user_id, plan, is_premium, updated_at")
                    .eq("user_id", account_id)
                    .limit(1)
                    .execute())
        return row_to_projection(response.data[0]) if response.data else None

    async def upsert_plan_projection(self, account_id: str, plan: PlanType,
                                     mode: ProjectionWriteMode = ProjectionWriteMode.OVERWRITE) -> PlanProjection:
        """
        Single write path for the projection.
        OVERWRITE sets the plan; INSERT_IF_ABSENT never touches an existing row;
        UPGRADE_ONLY writes premium but only inserts free when the row is missing.
        """
        projection = PlanProjection.for_plan(account_id, plan)
        row = {
            "user_id": account_id,
            "plan": projection.plan.value,
            "is_premium": projection.is_premium,
            "updated_at": projection.updated_at.isoformat(),
        }
        ignore_duplicates = (
            mode == ProjectionWriteMode.INSERT_IF_ABSENT
            or (mode == ProjectionWriteMode.UPGRADE_ONLY and plan != PlanType.PREMIUM)
        )
        try:
            (self.supabase.table(SETTINGS_TABLE)
                .upsert(row, on_conflict="user_id", ignore_duplicates=ignore_duplicates)
                .execute())
        except Exception as e:
            logger.error(f"Error updating user settings for user {account_id}: {e}")
            raise StoreWriteError("Failed to update user settings", details=str(e)) from e

        if ignore_duplicates:
            return await self.get_plan_projection(account_id) or projection
        return projection

    async def update_api_key(self, account_id: str, api_key: str) -> None:
        """Store the user's OpenAI key on an existing settings row; plan columns are untouched."""
        update_data = {
            "openai_api_key": api_key,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            (self.supabase.table(SETTINGS_TABLE)
                .update(update_data)
                .eq("user_id", account_id)
                .execute())
        except Exception as e:
            logger.error(f"Error saving API key for user {account_id}: {e}")
            raise StoreWriteError("Failed to save settings", details=str(e)) from e


# Shared Supabase client - created on first use
supabase_client = None


def get_supabase_client() -> Client:
    """Get or create the service-role Supabase client"""
    global supabase_client
    if supabase_client is None:
        supabase_url = os.getenv("SUPABASE_URL")
        supabase_key = os.getenv("SUPABASE_SERVICE_KEY")

        if not supabase_url:
            raise ValueError("SUPABASE_URL environment variable is required")
        if not supabase_key:
            raise ValueError("SUPABASE_SERVICE_KEY environment variable is required")

        supabase_client = create_client(supabase_url, supabase_key)
        logger.info("Supabase client initialized")
    return supabase_client
