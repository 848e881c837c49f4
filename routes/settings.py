"""
Settings routes: settings row initialization, API key storage and plan lookup
"""
from fastapi import APIRouter, HTTPException, status, Depends
from typing import Optional
import logging

from auth.dependencies import enforce_settings_rate_limit, get_current_user, get_reconciler
from config.billing_config import API_KEY_PREFIX
from models.user import SettingsRequest, SettingsResponse
from services.errors import StoreWriteError
from services.reconciler import Reconciler

router = APIRouter(prefix="/api/settings", tags=["Settings"])
logger = logging.getLogger(__name__)


@router.post("", dependencies=[Depends(enforce_settings_rate_limit)])
async def save_settings(
    request: Optional[SettingsRequest] = None,
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Ensure the user's settings row exists and save their OpenAI key if given;
    never changes the plan
    """
    api_key = request.api_key if request else None
    if api_key is not None and not api_key.startswith(API_KEY_PREFIX):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid API key format"
        )

    try:
        await reconciler.save_settings(current_user["id"], api_key)
    except StoreWriteError as e:
        logger.error(f"Settings initialization failed for user {current_user['id']}: {e.details}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save settings"
        )

    return {"success": True}


@router.get("", response_model=SettingsResponse)
async def get_settings(
    current_user: dict = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """
    Get the user's plan projection (free until initialized)
    """
    projection = await reconciler.store.get_plan_projection(current_user["id"])
    if projection is None:
        return SettingsResponse()
    return SettingsResponse(
        plan=projection.plan,
        is_premium=projection.is_premium,
        updated_at=projection.updated_at,
    )
