"""
Subscription endpoints for a business: subscribe, inspect, cancel,
reactivate, attach a discount, toggle auto-renewal and settle an
outstanding payment.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from typing import List, Optional
from uuid import UUID

from app.api.deps import get_notification_sender, get_subscription_service
from app.schemas.discount import PendingDiscount
from app.schemas.payment import PaymentResponse
from app.schemas.subscription import (
    AttachDiscountRequest, AutoRenewalRequest, CancelRequest, SubscribeRequest,
    SubscribeResponse, SubscriptionResponse,
)
from app.services.notifications import NotificationSender
from app.services.payment_retry import report_failed_payment
from app.services.subscription_state import SubscriptionService

router = APIRouter()


class PayOutstandingRequest(BaseModel):
    payment_method_id: Optional[UUID] = None


@router.post("/{business_id}", response_model=SubscribeResponse, status_code=status.HTTP_201_CREATED)
def subscribe(
    business_id: UUID,
    body: SubscribeRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Subscribe a business to a plan (trial or immediate charge)."""
    result = service.subscribe(
        business_id,
        body.plan_id,
        discount_code=body.discount_code,
        payment_method_id=body.payment_method_id,
        auto_renewal=body.auto_renewal,
    )
    return SubscribeResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        payment_id=result.payment.id if result.payment else None,
        discount_applied=result.discount,
        message=result.message,
    )


@router.get("/{business_id}", response_model=SubscriptionResponse)
def get_subscription(business_id: UUID, service: SubscriptionService = Depends(get_subscription_service)):
    return service.require(business_id)


@router.get("/{business_id}/history", response_model=List[PaymentResponse])
def get_payment_history(business_id: UUID, service: SubscriptionService = Depends(get_subscription_service)):
    """All charge attempts for the business's subscription, newest first."""
    return service.history(business_id)


@router.post("/{business_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    business_id: UUID,
    body: CancelRequest = CancelRequest(),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.cancel(business_id, at_period_end=body.at_period_end)


@router.post("/{business_id}/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(business_id: UUID, service: SubscriptionService = Depends(get_subscription_service)):
    return service.reactivate(business_id)


@router.post("/{business_id}/discount", response_model=PendingDiscount)
def attach_discount(
    business_id: UUID,
    body: AttachDiscountRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.attach_discount(business_id, body.code)


@router.patch("/{business_id}/auto-renewal", response_model=SubscriptionResponse)
def set_auto_renewal(
    business_id: UUID,
    body: AutoRenewalRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.set_auto_renewal(business_id, body.enabled, payment_method_id=body.payment_method_id)


@router.post("/{business_id}/pay", response_model=SubscribeResponse)
def pay_outstanding(
    business_id: UUID,
    body: PayOutstandingRequest = PayOutstandingRequest(),
    service: SubscriptionService = Depends(get_subscription_service),
    notifier: NotificationSender = Depends(get_notification_sender),
):
    """
    Charge an unpaid, incomplete or past due subscription now. A failed
    charge on a past due subscription counts as a retry attempt.
    """
    outcome = service.pay_outstanding(business_id, payment_method_id=body.payment_method_id)
    subscription = service.require(business_id)
    if not outcome.success and subscription.failed_payment_count > 0:
        report_failed_payment(service, notifier, business_id, outcome.error)
        subscription = service.require(business_id)
    return SubscribeResponse(
        subscription=SubscriptionResponse.model_validate(subscription),
        payment_id=outcome.payment.id if outcome.payment else None,
        discount_applied=outcome.discount,
        message="Payment succeeded" if outcome.success else f"Payment failed: {outcome.error or 'declined'}",
    )
