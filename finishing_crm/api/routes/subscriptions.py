"""
Admin Subscription Routes - trials, price ratchet, cancellation.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.models.subscriptions import SubscriptionStatus
from finishing_crm.services.subscription_service import DEFAULT_TRIAL_DAYS, SubscriptionService

router = APIRouter(
    prefix="/api/admin/subscriptions",
    tags=["admin", "subscriptions"],
    dependencies=[Depends(get_current_user)],
)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    company_id: str
    contact_id: Optional[str] = None
    monthly_price: Decimal
    ratchet_max: Optional[Decimal] = None
    currency: str
    tools: Optional[List[str]] = None
    status: SubscriptionStatus
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class SubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]


class CreateSubscriptionRequest(BaseModel):
    company_id: str
    monthly_price: Decimal = Field(..., gt=0)
    tools: List[str] = Field(..., min_length=1)
    contact_id: Optional[str] = None
    currency: str = Field("GBP", min_length=3, max_length=3)
    trial_days: int = Field(DEFAULT_TRIAL_DAYS, ge=0, le=365)
    notes: Optional[str] = None


class UpdatePriceRequest(BaseModel):
    new_price: Decimal = Field(..., gt=0)


class UpdatePriceResponse(BaseModel):
    subscription: SubscriptionResponse
    ratchet_warning: bool


class AddToolRequest(BaseModel):
    tool_code: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/anomalies", response_model=SubscriptionListResponse)
def anomalies(db: Session = Depends(get_db)):
    """Live subscriptions priced below their historical maximum."""
    return {"subscriptions": SubscriptionService(db).anomalies()}


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(request: CreateSubscriptionRequest, db: Session = Depends(get_db)):
    return SubscriptionService(db).create(**request.model_dump())


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return SubscriptionService(db).get(subscription_id)


@router.post("/{subscription_id}/price", response_model=UpdatePriceResponse)
def update_price(subscription_id: str, request: UpdatePriceRequest, db: Session = Depends(get_db)):
    return SubscriptionService(db).update_price(subscription_id, request.new_price)


@router.post("/{subscription_id}/tools", response_model=SubscriptionResponse)
def add_tool(subscription_id: str, request: AddToolRequest, db: Session = Depends(get_db)):
    return SubscriptionService(db).add_tool(subscription_id, request.tool_code)


@router.post("/{subscription_id}/activate", response_model=SubscriptionResponse)
def activate(subscription_id: str, db: Session = Depends(get_db)):
    return SubscriptionService(db).activate(subscription_id)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel(subscription_id: str, request: CancelRequest, db: Session = Depends(get_db)):
    return SubscriptionService(db).cancel(subscription_id, reason=request.reason)
