from app.schemas.discount import (
    DiscountType, PendingDiscount, DiscountCalculation, DiscountValidation,
    DiscountValidateRequest, DiscountCodeCreate, DiscountCodeResponse,
)

__all__ = [
    "DiscountType", "PendingDiscount", "DiscountCalculation", "DiscountValidation",
    "DiscountValidateRequest", "DiscountCodeCreate", "DiscountCodeResponse",
]
