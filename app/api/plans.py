from fastapi import APIRouter, Depends
from typing import List

from app.api.deps import get_subscription_service
from app.schemas.subscription import PlanResponse
from app.services.subscription_state import SubscriptionService

router = APIRouter()


@router.get("", response_model=List[PlanResponse])
def list_plans(service: SubscriptionService = Depends(get_subscription_service)):
    """Active plans, cheapest first"""
    return service.list_plans()


@router.get("/{plan_id}", response_model=PlanResponse)
def get_plan(plan_id: str, service: SubscriptionService = Depends(get_subscription_service)):
    return service.get_plan(plan_id)
