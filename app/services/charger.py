"""
Charges a subscription's plan price to its stored payment method.

Used for the initial charge, trial conversion, renewal and retries. Applies
the pending discount when it is still applicable, records the attempt in the
payment ledger and consumes the discount only after the money has moved.
The caller (SubscriptionService) owns every status transition.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Session
from typing import Callable, Optional
import logging

from app.core.audit import log_billing_event
from app.core.errors import InvalidDiscountCode, NoPaymentMethod
from app.models.audit_log import AuditEventType
from app.models.payment import ChargeTrigger, Payment, PaymentStatus
from app.models.payment_method import StoredPaymentMethod
from app.models.subscription import BusinessSubscription
from app.schemas.discount import DiscountCalculation
from app.services.business_lookup import get_business_contact
from app.services.discount_engine import DiscountEngine
from app.services.payment_gateway import ChargeRequest, PaymentGateway
from app.services.payment_ledger import ChargeAttempt, PaymentLedger
from app.services.payment_methods import get_default_payment_method
from app.utils.clock import utcnow
from app.utils.ids import generate_conversation_id
from app.utils.money import to_money

logger = logging.getLogger(__name__)


@dataclass
class ChargeOutcome:
    success: bool
    payment: Optional[Payment]
    amount: Decimal
    discount: Optional[DiscountCalculation] = None
    error: Optional[str] = None


class BillingCharger:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        discount_engine: Optional[DiscountEngine] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.now = now
        self.ledger = PaymentLedger(db, gateway, now=now)
        self.discounts = discount_engine or DiscountEngine(db, now=now)

    def resolve_payment_method(
        self,
        subscription: BusinessSubscription,
        payment_method: Optional[StoredPaymentMethod] = None,
    ) -> StoredPaymentMethod:
        method = (
            payment_method
            or get_default_payment_method(self.db, subscription.business_id)
            or subscription.payment_method
        )
        if method is None:
            raise NoPaymentMethod("No payment method on file for this business")
        return method

    def charge(
        self,
        subscription: BusinessSubscription,
        trigger: ChargeTrigger,
        payment_method: Optional[StoredPaymentMethod] = None,
    ) -> ChargeOutcome:
        """
        Charge the plan price (less any applicable pending discount).

        Raises NoPaymentMethod before anything is written when the business
        has no card on file. Gateway failures are returned, not raised.
        """
        method = self.resolve_payment_method(subscription, payment_method)
        plan = subscription.plan
        contact = get_business_contact(self.db, subscription.business_id)

        price = to_money(plan.price)
        pending = subscription.pending_discount
        discount = self.discounts.preview(pending, price)
        amount = discount.final_amount if discount else price

        request = ChargeRequest(
            conversation_id=generate_conversation_id(trigger.value),
            amount=amount,
            currency=plan.currency,
            payment_method_token=method.provider_token,
            customer_reference=str(subscription.business_id),
            description=f"{plan.display_name} ({trigger.value})",
            buyer_email=contact.email,
            buyer_name=contact.owner_name,
            metadata={"subscription_id": str(subscription.id), "plan_id": plan.id},
        )
        payment = self.ledger.record(ChargeAttempt(
            business_id=subscription.business_id,
            subscription_id=subscription.id,
            request=request,
            trigger=trigger,
            original_amount=price,
            discount_code=pending.code if discount else None,
            payment_method_id=method.id,
        ))

        if payment.status != PaymentStatus.SUCCEEDED:
            return ChargeOutcome(
                success=False,
                payment=payment,
                amount=amount,
                discount=discount,
                error=payment.failure_message,
            )

        if discount:
            self._consume_discount(subscription, payment, discount, contact.owner_id, trigger)
        return ChargeOutcome(success=True, payment=payment, amount=amount, discount=discount)

    def _consume_discount(self, subscription, payment, discount, user_id, trigger) -> None:
        # The money already moved: a failure here is flagged for reconciliation, never unwound
        try:
            self.discounts.apply(subscription, payment, discount, user_id, trigger)
        except Exception as e:
            self.db.rollback()
            logger.error(
                "[DISCOUNT] Could not record discount usage for payment %s: %s. Manual reconciliation required.",
                payment.id, e,
            )
            log_billing_event(
                self.db,
                AuditEventType.DISCOUNT_RECONCILIATION_REQUIRED,
                business_id=subscription.business_id,
                subscription_id=subscription.id,
                payment_id=payment.id,
                details={
                    "code": payment.discount_code,
                    "discount_amount": discount.discount_amount,
                    "error": str(e),
                },
            )
            if isinstance(e, InvalidDiscountCode):
                # Cap reached between validation and charge: stop granting it
                subscription.pending_discount = None
            self.db.commit()
