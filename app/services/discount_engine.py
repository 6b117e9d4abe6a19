"""
Discount code validation, calculation and consumption.

Validation is side-effect free and may happen long before the money moves
(a code entered at trial signup is charged at trial conversion). ``apply`` is
only called after a successful charge and is the single place where usage
caps are enforced and counters incremented, under a per-code lock.
"""
from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import logging
import secrets
import uuid

from app.core.audit import log_billing_event
from app.core.errors import InvalidAmount, InvalidDiscountCode, NotFound, ValidationFailure
from app.core.locks import discount_code_lock
from app.models.audit_log import AuditEventType
from app.models.discount_code import DiscountCode, DiscountCodeUsage
from app.models.payment import Payment, ChargeTrigger
from app.models.subscription import BusinessSubscription
from app.schemas.discount import (
    DiscountCalculation, DiscountCodeCreate, DiscountStatistics, DiscountType,
    DiscountValidation, PendingDiscount,
)
from app.utils.clock import utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
GENERATED_CODE_LENGTH = 8
DEFAULT_CODE_PREFIX = "SAVE"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def calculate_discount(discount_type: DiscountType, discount_value, amount) -> DiscountCalculation:
    """
    Compute the effect of a discount on ``amount``.

    The discount is clamped to the amount, so the final amount is never
    negative and ``final = original - discount`` holds exactly.
    """
    amount = to_money(amount)
    value = Decimal(discount_value)
    if discount_type == DiscountType.PERCENTAGE:
        percent = min(max(value, Decimal(0)), Decimal(100))
        discount = to_money(amount * percent / 100)
    else:
        discount = to_money(max(value, Decimal(0)))
    discount = min(discount, amount)
    return DiscountCalculation(
        original_amount=amount,
        discount_amount=discount,
        final_amount=amount - discount,
    )


class DiscountEngine:
    def __init__(
        self,
        db: Session,
        now: Callable[[], datetime] = utcnow,
        pending_ttl_hours: Optional[int] = None,
    ):
        self.db = db
        self.now = now
        self.pending_ttl_hours = pending_ttl_hours

    # Lookup

    def find_by_code(self, code: str) -> Optional[DiscountCode]:
        return self.db.query(DiscountCode).filter(DiscountCode.code == normalize_code(code)).first()

    def get(self, discount_code_id: uuid.UUID) -> DiscountCode:
        discount_code = self.db.get(DiscountCode, discount_code_id)
        if not discount_code:
            raise NotFound("Discount code not found")
        return discount_code

    def _redemptions_by_user(self, discount_code_id: uuid.UUID, user_id: uuid.UUID) -> int:
        return self.db.query(func.count(DiscountCodeUsage.id)).filter(
            DiscountCodeUsage.discount_code_id == discount_code_id,
            DiscountCodeUsage.user_id == user_id,
            DiscountCodeUsage.sequence == 1,
        ).scalar() or 0

    # Validation

    def validate(self, code: str, plan_id: str, amount, user_id: Optional[uuid.UUID] = None) -> DiscountValidation:
        """
        Check a code against a plan, amount and user. Checks run in a fixed
        order and stop at the first failure.
        """
        amount = to_money(amount)
        if amount < 0:
            raise InvalidAmount("Amount must not be negative")

        def reject(reason: str, message: str) -> DiscountValidation:
            return DiscountValidation(is_valid=False, reason=reason, message=message)

        discount_code = self.find_by_code(code)
        if not discount_code:
            return reject("not_found", "Discount code not found")
        if not discount_code.is_active:
            return reject("inactive", "Discount code is not active")

        now = self.now()
        if discount_code.valid_from and discount_code.valid_from > now:
            return reject("not_yet_valid", "Discount code is not yet valid")
        if discount_code.valid_until and discount_code.valid_until < now:
            return reject("expired", "Discount code has expired")

        if discount_code.max_usages is not None and discount_code.current_usages >= discount_code.max_usages:
            return reject("usage_limit_reached", "Discount code has reached its usage limit")

        if user_id is not None and self._redemptions_by_user(discount_code.id, user_id) >= discount_code.per_user_limit:
            return reject("user_limit_reached", "You have already used this discount code")

        if discount_code.applicable_plans and plan_id not in discount_code.applicable_plans:
            return reject("plan_not_applicable", "Discount code is not applicable to this plan")

        if discount_code.min_purchase_amount is not None and amount < discount_code.min_purchase_amount:
            return reject("below_minimum_purchase", f"Minimum purchase amount is {discount_code.min_purchase_amount}")

        return DiscountValidation(
            is_valid=True,
            discount=calculate_discount(discount_code.discount_type, discount_code.discount_value, amount),
            discount_code_id=discount_code.id,
        )

    def require_valid(self, code: str, plan_id: str, amount, user_id: Optional[uuid.UUID] = None) -> Tuple[DiscountCode, DiscountCalculation]:
        """Validate and raise InvalidDiscountCode on rejection."""
        result = self.validate(code, plan_id, amount, user_id)
        if not result.is_valid:
            raise InvalidDiscountCode(result.message, reason=result.reason)
        return self.get(result.discount_code_id), result.discount

    # Pending discounts

    def build_pending(self, discount_code: DiscountCode) -> PendingDiscount:
        remaining = 1
        if discount_code.is_recurring:
            remaining = discount_code.max_recurring_uses or 1
        return PendingDiscount(
            discount_code_id=discount_code.id,
            code=discount_code.code,
            discount_type=discount_code.discount_type,
            discount_value=Decimal(discount_code.discount_value),
            is_recurring=discount_code.is_recurring,
            remaining_uses=remaining,
            validated_at=self.now(),
        )

    def can_apply(self, pending: Optional[PendingDiscount]) -> bool:
        """
        A pending discount applies to the next charge while it has uses left.
        One-time codes apply once; recurring codes once per charge.
        """
        if pending is None or pending.remaining_uses <= 0:
            return False
        if not pending.is_recurring and pending.applied_to_payments:
            return False
        if self.pending_ttl_hours is not None:
            if self.now() - pending.validated_at > timedelta(hours=self.pending_ttl_hours):
                return False
        return True

    def preview(self, pending: Optional[PendingDiscount], amount) -> Optional[DiscountCalculation]:
        """The effect the pending discount would have on a charge of ``amount``."""
        if not self.can_apply(pending):
            return None
        return calculate_discount(pending.discount_type, pending.discount_value, amount)

    def apply(
        self,
        subscription: BusinessSubscription,
        payment: Payment,
        calculation: DiscountCalculation,
        user_id: uuid.UUID,
        trigger: ChargeTrigger,
    ) -> DiscountCodeUsage:
        """
        Consume the subscription's pending discount for a payment that has
        already succeeded: record the usage row, enforce and bump the usage
        caps on first redemption, and decrement the recurring counter.
        """
        pending = subscription.pending_discount
        if pending is None:
            raise ValidationFailure("No pending discount on subscription", reason="no_pending_discount")

        with discount_code_lock(pending.discount_code_id):
            discount_code = self.db.query(DiscountCode).filter(
                DiscountCode.id == pending.discount_code_id
            ).with_for_update().one_or_none()
            if not discount_code:
                raise NotFound("Discount code not found")

            sequence = len(pending.applied_to_payments) + 1
            if sequence == 1:
                if discount_code.max_usages is not None and discount_code.current_usages >= discount_code.max_usages:
                    raise InvalidDiscountCode("Discount code has reached its usage limit", reason="usage_limit_reached")
                if self._redemptions_by_user(discount_code.id, user_id) >= discount_code.per_user_limit:
                    raise InvalidDiscountCode("Discount code already used by this user", reason="user_limit_reached")
                discount_code.current_usages += 1

            usage = DiscountCodeUsage(
                discount_code_id=discount_code.id,
                user_id=user_id,
                subscription_id=subscription.id,
                payment_id=payment.id,
                sequence=sequence,
                original_amount=calculation.original_amount,
                discount_amount=calculation.discount_amount,
                final_amount=calculation.final_amount,
                trigger=trigger.value,
                used_at=self.now(),
            )
            self.db.add(usage)

            pending.remaining_uses -= 1
            pending.applied_to_payments.append(str(payment.id))
            subscription.pending_discount = pending if pending.remaining_uses > 0 else None

            log_billing_event(
                self.db,
                AuditEventType.DISCOUNT_APPLIED,
                business_id=subscription.business_id,
                subscription_id=subscription.id,
                payment_id=payment.id,
                details={
                    "code": pending.code,
                    "sequence": sequence,
                    "discount_amount": calculation.discount_amount,
                    "remaining_uses": pending.remaining_uses,
                },
            )
            self.db.commit()

        logger.info(
            "[DISCOUNT] Applied %s to payment %s (use %s, %s remaining)",
            pending.code, payment.id, sequence, max(pending.remaining_uses, 0),
        )
        return usage

    # Administration

    def generate_code(self, prefix: str = DEFAULT_CODE_PREFIX) -> str:
        prefix = normalize_code(prefix)
        while True:
            suffix_length = max(GENERATED_CODE_LENGTH - len(prefix), 4)
            code = prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(suffix_length))
            if not self.find_by_code(code):
                return code

    def create_code(self, data: DiscountCodeCreate) -> DiscountCode:
        if data.discount_value <= 0:
            raise ValidationFailure("Discount value must be positive", reason="invalid_discount_value")
        if data.discount_type == DiscountType.PERCENTAGE and data.discount_value > 100:
            raise ValidationFailure("Percentage discount cannot exceed 100%", reason="invalid_discount_value")
        valid_from = data.valid_from or self.now()
        if data.valid_until and data.valid_until <= valid_from:
            raise ValidationFailure("Valid until date must be after valid from date", reason="invalid_validity_window")
        if data.per_user_limit < 1:
            raise ValidationFailure("Per-user limit must be at least 1", reason="invalid_usage_limit")

        code = normalize_code(data.code) if data.code else self.generate_code(data.prefix or DEFAULT_CODE_PREFIX)
        if self.find_by_code(code):
            raise ValidationFailure("Discount code already exists", reason="duplicate_code")

        discount_code = DiscountCode(
            code=code,
            name=data.name,
            description=data.description,
            discount_type=data.discount_type,
            discount_value=to_money(data.discount_value),
            valid_from=valid_from,
            valid_until=data.valid_until,
            max_usages=data.max_usages,
            per_user_limit=data.per_user_limit,
            min_purchase_amount=to_money(data.min_purchase_amount) if data.min_purchase_amount is not None else None,
            applicable_plans=list(data.applicable_plans),
            is_recurring=data.is_recurring,
            max_recurring_uses=data.max_recurring_uses,
        )
        self.db.add(discount_code)
        self.db.commit()
        self.db.refresh(discount_code)
        logger.info("[DISCOUNT] Created code %s", discount_code.code)
        return discount_code

    def list_codes(self, active_only: bool = False) -> List[DiscountCode]:
        query = self.db.query(DiscountCode)
        if active_only:
            query = query.filter(DiscountCode.is_active.is_(True))
        return query.order_by(DiscountCode.created_at.desc()).all()

    def deactivate(self, discount_code_id: uuid.UUID) -> DiscountCode:
        discount_code = self.get(discount_code_id)
        discount_code.is_active = False
        self.db.commit()
        return discount_code

    def deactivate_expired(self) -> int:
        """Deactivate active codes whose validity window has closed."""
        expired = self.db.query(DiscountCode).filter(
            DiscountCode.is_active.is_(True),
            DiscountCode.valid_until.isnot(None),
            DiscountCode.valid_until < self.now(),
        ).all()
        for discount_code in expired:
            discount_code.is_active = False
        if expired:
            self.db.commit()
            logger.info("[DISCOUNT] Deactivated %d expired codes", len(expired))
        return len(expired)

    def usage_history(self, discount_code_id: uuid.UUID) -> List[DiscountCodeUsage]:
        self.get(discount_code_id)
        return self.db.query(DiscountCodeUsage).filter(
            DiscountCodeUsage.discount_code_id == discount_code_id
        ).order_by(DiscountCodeUsage.used_at.desc()).all()

    def statistics(self) -> DiscountStatistics:
        total_codes = self.db.query(func.count(DiscountCode.id)).scalar() or 0
        active_codes = self.db.query(func.count(DiscountCode.id)).filter(DiscountCode.is_active.is_(True)).scalar() or 0
        total_usages = self.db.query(func.count(DiscountCodeUsage.id)).scalar() or 0
        total_discount = self.db.query(func.sum(DiscountCodeUsage.discount_amount)).scalar() or 0
        return DiscountStatistics(
            total_codes=total_codes,
            active_codes=active_codes,
            total_usages=total_usages,
            total_discount_granted=to_money(total_discount),
        )
