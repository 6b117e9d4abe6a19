"""
Payment ledger: the durable record of every charge attempt.

A PENDING row is committed before the gateway is called, so a crash
mid-charge leaves an inspectable row instead of a silent gap. The row is then
completed as SUCCEEDED or FAILED from the normalized gateway result. Refund
and cancel operate on ledger rows and are serialized per payment.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.orm import Session
from typing import Callable, List, Optional
import logging
import uuid

from app.core.audit import log_billing_event
from app.core.errors import (
    AlreadyCanceled, AlreadyRefunded, ExceedsAmount, InvalidAmount, InvalidTransition, NotFound,
)
from app.core.locks import keyed_lock
from app.models.audit_log import AuditEventType
from app.models.payment import Payment, PaymentStatus, ChargeTrigger
from app.services.payment_gateway import ChargeRequest, GatewayResult, GatewayStatus, PaymentGateway
from app.utils.clock import utcnow
from app.utils.ids import generate_conversation_id
from app.utils.money import to_money

logger = logging.getLogger(__name__)

INTERNAL_PROVIDER = "internal"


@dataclass
class ChargeAttempt:
    business_id: uuid.UUID
    subscription_id: uuid.UUID
    request: ChargeRequest
    trigger: ChargeTrigger
    original_amount: Optional[Decimal] = None
    discount_code: Optional[str] = None
    payment_method_id: Optional[uuid.UUID] = None


@dataclass
class LedgerOutcome:
    success: bool
    payment: Payment
    error: Optional[str] = None


class PaymentLedger:
    def __init__(self, db: Session, gateway: PaymentGateway, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.gateway = gateway
        self.now = now

    def get(self, payment_id: uuid.UUID) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def list_for_subscription(self, subscription_id: uuid.UUID) -> List[Payment]:
        return self.db.query(Payment).filter(
            Payment.subscription_id == subscription_id
        ).order_by(Payment.created_at.desc()).all()

    def stale_pending(self, older_than_minutes: int = 30) -> List[Payment]:
        """PENDING rows left behind by an interrupted charge, for manual reconciliation."""
        cutoff = self.now() - timedelta(minutes=older_than_minutes)
        return self.db.query(Payment).filter(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < cutoff,
        ).all()

    def scrub_failed_metadata(self, older_than_days: int) -> int:
        """Drop gateway failure details from old FAILED rows; the row and its message stay."""
        cutoff = self.now() - timedelta(days=older_than_days)
        payments = self.db.query(Payment).filter(
            Payment.status == PaymentStatus.FAILED,
            Payment.created_at < cutoff,
        ).all()
        scrubbed = 0
        for payment in payments:
            if payment.failure_metadata:
                payment.failure_metadata = None
                scrubbed += 1
        if scrubbed:
            self.db.commit()
            logger.info("[LEDGER] Scrubbed failure metadata from %d old payments", scrubbed)
        return scrubbed

    # Charges

    def record(self, attempt: ChargeAttempt) -> Payment:
        """Write the attempt, call the gateway, and complete the row from its result."""
        request = attempt.request
        amount = to_money(request.amount)
        if amount < 0:
            raise InvalidAmount("Charge amount must not be negative")

        payment = Payment(
            subscription_id=attempt.subscription_id,
            amount=amount,
            original_amount=to_money(attempt.original_amount) if attempt.original_amount is not None else amount,
            currency=request.currency,
            status=PaymentStatus.PENDING,
            trigger=attempt.trigger,
            provider=self.gateway.provider,
            conversation_id=request.conversation_id,
            payment_method_id=attempt.payment_method_id,
            discount_code=attempt.discount_code,
            created_at=self.now(),
        )
        self.db.add(payment)
        self.db.commit()

        if amount == 0:
            # Fully discounted: nothing to collect
            payment.provider = INTERNAL_PROVIDER
            result = GatewayResult(status=GatewayStatus.SUCCESS, provider_status="no_charge")
        else:
            result = self._call_gateway(request)
        return self.complete(payment, result, business_id=attempt.business_id)

    def _call_gateway(self, request: ChargeRequest) -> GatewayResult:
        try:
            return self.gateway.charge(request)
        except Exception as e:
            logger.error("[LEDGER] Gateway adapter raised for %s: %s", request.conversation_id, e)
            return GatewayResult.failure(f"Payment gateway error: {e}", code="adapter_error")

    def complete(self, payment: Payment, result: GatewayResult, business_id: Optional[uuid.UUID] = None) -> Payment:
        now = self.now()
        payment.provider_payment_id = result.provider_payment_id
        payment.completed_at = now
        if result.succeeded:
            payment.status = PaymentStatus.SUCCEEDED
            event_type = AuditEventType.PAYMENT_SUCCEEDED
        else:
            payment.status = PaymentStatus.FAILED
            payment.failure_message = result.error_message
            payment.failure_metadata = {
                "error_code": result.error_code,
                "provider_status": result.provider_status,
            }
            event_type = AuditEventType.PAYMENT_FAILED

        log_billing_event(
            self.db,
            event_type,
            business_id=business_id,
            subscription_id=payment.subscription_id,
            payment_id=payment.id,
            details={
                "amount": payment.amount,
                "currency": payment.currency,
                "trigger": payment.trigger.value,
                "error": result.error_message,
            },
        )
        self.db.commit()
        logger.info("[LEDGER] Payment %s (%s) -> %s", payment.id, payment.trigger.value, payment.status.value)
        return payment

    # Refunds and cancellation

    def _lock_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = self.db.query(Payment).filter(
            Payment.id == payment_id
        ).with_for_update().populate_existing().one_or_none()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def refund(self, payment_id: uuid.UUID, amount=None, reason: Optional[str] = None) -> LedgerOutcome:
        """
        Refund a succeeded payment, fully or partially. A payment is refunded
        at most once; the amount may not exceed what is left to refund.
        """
        with keyed_lock("payment", payment_id):
            payment = self._lock_payment(payment_id)
            if payment.status == PaymentStatus.REFUNDED:
                raise AlreadyRefunded("Payment has already been refunded")
            if payment.status != PaymentStatus.SUCCEEDED:
                raise InvalidTransition(f"Cannot refund a {payment.status.value} payment")

            refundable = to_money(payment.amount) - to_money(payment.refunded_amount or 0)
            refund_amount = refundable if amount is None else to_money(amount)
            if refund_amount <= 0:
                raise InvalidAmount("Refund amount must be positive")
            if refund_amount > refundable:
                raise ExceedsAmount(f"Refund amount exceeds refundable amount {refundable}")

            if payment.provider == INTERNAL_PROVIDER:
                result = GatewayResult.failure("Nothing was collected for this payment", code="nothing_to_refund")
            else:
                try:
                    result = self.gateway.refund(
                        payment.provider_payment_id,
                        refund_amount,
                        payment.currency,
                        generate_conversation_id("refund"),
                        reason=reason,
                    )
                except Exception as e:
                    logger.error("[LEDGER] Gateway adapter raised refunding %s: %s", payment.id, e)
                    result = GatewayResult.failure(f"Payment gateway error: {e}", code="adapter_error")

            if not result.succeeded:
                logger.warning("[LEDGER] Refund of payment %s failed: %s", payment.id, result.error_message)
                self.db.rollback()
                return LedgerOutcome(success=False, payment=payment, error=result.error_message)

            payment.status = PaymentStatus.REFUNDED
            payment.refunded_amount = to_money(payment.refunded_amount or 0) + refund_amount
            payment.refund_reason = reason
            payment.refunded_at = self.now()
            log_billing_event(
                self.db,
                AuditEventType.PAYMENT_REFUNDED,
                subscription_id=payment.subscription_id,
                payment_id=payment.id,
                details={"amount": refund_amount, "reason": reason, "provider_refund_id": result.provider_payment_id},
            )
            self.db.commit()
            logger.info("[LEDGER] Refunded %s on payment %s", refund_amount, payment.id)
            return LedgerOutcome(success=True, payment=payment)

    def cancel(self, payment_id: uuid.UUID, reason: Optional[str] = None) -> LedgerOutcome:
        """
        Cancel a payment. A succeeded payment is refunded in full instead; a
        pending one is voided at the gateway when it has a provider id.
        """
        payment = self.get(payment_id)
        if payment.status == PaymentStatus.SUCCEEDED:
            return self.refund(payment_id, reason=reason or "canceled")

        with keyed_lock("payment", payment_id):
            payment = self._lock_payment(payment_id)
            if payment.status == PaymentStatus.CANCELED:
                raise AlreadyCanceled("Payment has already been canceled")
            if payment.status == PaymentStatus.REFUNDED:
                raise AlreadyRefunded("Payment has already been refunded")
            if payment.status != PaymentStatus.PENDING:
                raise InvalidTransition(f"Cannot cancel a {payment.status.value} payment")

            if payment.provider_payment_id:
                try:
                    result = self.gateway.cancel(payment.provider_payment_id, generate_conversation_id("cancel"))
                except Exception as e:
                    result = GatewayResult.failure(f"Payment gateway error: {e}", code="adapter_error")
                if not result.succeeded:
                    self.db.rollback()
                    return LedgerOutcome(success=False, payment=payment, error=result.error_message)

            payment.status = PaymentStatus.CANCELED
            payment.completed_at = self.now()
            log_billing_event(
                self.db,
                AuditEventType.PAYMENT_CANCELED,
                subscription_id=payment.subscription_id,
                payment_id=payment.id,
                details={"reason": reason},
            )
            self.db.commit()
            logger.info("[LEDGER] Canceled pending payment %s", payment.id)
            return LedgerOutcome(success=True, payment=payment)
