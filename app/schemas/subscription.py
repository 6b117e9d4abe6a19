from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from app.models.plan import BillingInterval
from app.models.subscription import SubscriptionStatus
from app.schemas.discount import PendingDiscount, DiscountCalculation


class PlanResponse(BaseModel):
    id: str
    name: str
    display_name: str
    price: Decimal
    currency: str
    billing_interval: BillingInterval
    trial_days: int
    features: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class SubscribeRequest(BaseModel):
    plan_id: str
    discount_code: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    auto_renewal: bool = True


class CancelRequest(BaseModel):
    at_period_end: bool = True


class AutoRenewalRequest(BaseModel):
    enabled: bool
    payment_method_id: Optional[UUID] = None


class AttachDiscountRequest(BaseModel):
    code: str


class SubscriptionResponse(BaseModel):
    id: UUID
    business_id: UUID
    plan_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    auto_renewal: bool
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    payment_method_id: Optional[UUID] = None
    failed_payment_count: int
    next_retry_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    pending_discount: Optional[PendingDiscount] = None

    class Config:
        from_attributes = True


class SubscribeResponse(BaseModel):
    subscription: SubscriptionResponse
    payment_id: Optional[UUID] = None
    discount_applied: Optional[DiscountCalculation] = None
    message: str
