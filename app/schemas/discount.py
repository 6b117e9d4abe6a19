from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID
import enum


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class PendingDiscount(BaseModel):
    """
    A validated discount waiting on a subscription for the next real charge.
    Recurring codes are consumed once per charge until remaining_uses hits 0.
    """
    discount_code_id: UUID
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    is_recurring: bool = False
    remaining_uses: int = 1
    applied_to_payments: List[str] = Field(default_factory=list)
    validated_at: datetime


class DiscountCalculation(BaseModel):
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal


class DiscountValidation(BaseModel):
    is_valid: bool
    discount: Optional[DiscountCalculation] = None
    reason: Optional[str] = None  # machine-readable rejection code
    message: Optional[str] = None
    discount_code_id: Optional[UUID] = None


class DiscountValidateRequest(BaseModel):
    code: str
    plan_id: str
    amount: Decimal
    user_id: Optional[UUID] = None


class DiscountCodeCreate(BaseModel):
    code: Optional[str] = None  # generated when omitted
    prefix: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_usages: Optional[int] = None
    per_user_limit: int = 1
    min_purchase_amount: Optional[Decimal] = None
    applicable_plans: List[str] = Field(default_factory=list)
    is_recurring: bool = False
    max_recurring_uses: Optional[int] = None


class DiscountCodeResponse(BaseModel):
    id: UUID
    code: str
    name: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    valid_from: datetime
    valid_until: Optional[datetime] = None
    max_usages: Optional[int] = None
    current_usages: int
    per_user_limit: int
    min_purchase_amount: Optional[Decimal] = None
    applicable_plans: List[str]
    is_recurring: bool
    max_recurring_uses: Optional[int] = None
    is_active: bool

    class Config:
        from_attributes = True


class DiscountUsageResponse(BaseModel):
    id: UUID
    discount_code_id: UUID
    user_id: UUID
    subscription_id: UUID
    payment_id: Optional[UUID] = None
    sequence: int
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    used_at: datetime

    class Config:
        from_attributes = True


class DiscountStatistics(BaseModel):
    total_codes: int
    active_codes: int
    total_usages: int
    total_discount_granted: Decimal
