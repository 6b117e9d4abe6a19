"""
Discount code endpoints. Validation is public (rate limited per client);
creating, listing and deactivating codes requires the admin key.
"""
from fastapi import APIRouter, Depends, Request, status
from typing import List
from uuid import UUID

from app.api.deps import get_discount_engine, require_admin_key
from app.core.rate_limit import rate_limit
from app.schemas.discount import (
    DiscountCodeCreate, DiscountCodeResponse, DiscountStatistics, DiscountUsageResponse,
    DiscountValidateRequest, DiscountValidation,
)
from app.services.discount_engine import DiscountEngine

router = APIRouter()


@router.post("/validate", response_model=DiscountValidation)
@rate_limit(max_requests=30, window_seconds=300)  # 30 validations per 5 min per IP
def validate_discount_code(
    body: DiscountValidateRequest,
    request: Request,
    engine: DiscountEngine = Depends(get_discount_engine),
):
    """Check a code against a plan and amount without consuming it."""
    return engine.validate(body.code, body.plan_id, body.amount, user_id=body.user_id)


@router.post(
    "",
    response_model=DiscountCodeResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_key)],
)
def create_discount_code(body: DiscountCodeCreate, engine: DiscountEngine = Depends(get_discount_engine)):
    return engine.create_code(body)


@router.get("", response_model=List[DiscountCodeResponse], dependencies=[Depends(require_admin_key)])
def list_discount_codes(active_only: bool = False, engine: DiscountEngine = Depends(get_discount_engine)):
    return engine.list_codes(active_only=active_only)


@router.get("/statistics", response_model=DiscountStatistics, dependencies=[Depends(require_admin_key)])
def discount_statistics(engine: DiscountEngine = Depends(get_discount_engine)):
    return engine.statistics()


@router.post(
    "/{discount_code_id}/deactivate",
    response_model=DiscountCodeResponse,
    dependencies=[Depends(require_admin_key)],
)
def deactivate_discount_code(discount_code_id: UUID, engine: DiscountEngine = Depends(get_discount_engine)):
    return engine.deactivate(discount_code_id)


@router.get(
    "/{discount_code_id}/usages",
    response_model=List[DiscountUsageResponse],
    dependencies=[Depends(require_admin_key)],
)
def discount_code_usages(discount_code_id: UUID, engine: DiscountEngine = Depends(get_discount_engine)):
    return engine.usage_history(discount_code_id)
