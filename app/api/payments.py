from fastapi import APIRouter, Depends
from typing import List
from uuid import UUID

from app.api.deps import get_payment_ledger, require_admin_key
from app.schemas.payment import PaymentResponse, RefundRequest, RefundResponse
from app.services.payment_ledger import PaymentLedger

router = APIRouter()


@router.get("/{subscription_id}", response_model=List[PaymentResponse])
def list_payments(subscription_id: UUID, ledger: PaymentLedger = Depends(get_payment_ledger)):
    """Ledger rows for a subscription, newest first"""
    return ledger.list_for_subscription(subscription_id)


@router.post("/{payment_id}/refund", response_model=RefundResponse, dependencies=[Depends(require_admin_key)])
def refund_payment(
    payment_id: UUID,
    body: RefundRequest = RefundRequest(),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    """
    Refund a succeeded payment (full by default). A gateway-side refund
    failure is reported with success=false and leaves the payment unchanged.
    """
    outcome = ledger.refund(payment_id, amount=body.amount, reason=body.reason)
    return RefundResponse(
        success=outcome.success,
        payment=PaymentResponse.model_validate(outcome.payment),
        error=outcome.error,
    )


@router.post("/{payment_id}/cancel", response_model=RefundResponse, dependencies=[Depends(require_admin_key)])
def cancel_payment(
    payment_id: UUID,
    body: RefundRequest = RefundRequest(),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    """Cancel a pending payment; a succeeded payment is refunded instead."""
    outcome = ledger.cancel(payment_id, reason=body.reason)
    return RefundResponse(
        success=outcome.success,
        payment=PaymentResponse.model_validate(outcome.payment),
        error=outcome.error,
    )
