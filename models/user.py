"""
Account and settings models
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime

from models.subscription import PlanType


class Account(BaseModel):
    id: str
    email: Optional[str] = None


class SettingsResponse(BaseModel):
    plan: PlanType = PlanType.FREE
    is_premium: bool = False
    updated_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    price_id: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class RefreshResponse(BaseModel):
    success: bool


class SettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[str] = Field(None, alias="apiKey")
