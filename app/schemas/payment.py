from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from app.models.payment import PaymentStatus, ChargeTrigger


class PaymentResponse(BaseModel):
    id: UUID
    subscription_id: UUID
    amount: Decimal
    original_amount: Optional[Decimal] = None
    currency: str
    status: PaymentStatus
    trigger: ChargeTrigger
    provider: str
    provider_payment_id: Optional[str] = None
    discount_code: Optional[str] = None
    failure_message: Optional[str] = None
    refunded_amount: Optional[Decimal] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None  # defaults to the full remaining amount
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    success: bool
    payment: PaymentResponse
    error: Optional[str] = None


class PaymentMethodCreate(BaseModel):
    provider_token: str
    last_four: str
    expiry_month: str
    expiry_year: str
    brand: Optional[str] = None
    cardholder_name: Optional[str] = None
    make_default: bool = False


class PaymentMethodResponse(BaseModel):
    id: UUID
    business_id: UUID
    last_four: str
    brand: Optional[str] = None
    expiry_month: str
    expiry_year: str
    cardholder_name: Optional[str] = None
    is_default: bool
    created_at: datetime

    class Config:
        from_attributes = True


class RetryStatistics(BaseModel):
    total_past_due: int
    pending_retry: int
    escalated: int
    canceled_after_retries: int
