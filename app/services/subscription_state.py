"""
Subscription lifecycle.

Owns every status transition of a BusinessSubscription. All mutations for a
business run under its subscription lock and re-read the row FOR UPDATE;
commits are compare-and-set on the row version, so a lost race surfaces as
ConcurrentModification instead of a silent overwrite.

    TRIAL       -> ACTIVE | PAST_DUE | CANCELED | INCOMPLETE_EXPIRED
    UNPAID      -> ACTIVE | CANCELED
    INCOMPLETE  -> ACTIVE | INCOMPLETE_EXPIRED | CANCELED
    ACTIVE      -> PAST_DUE | CANCELED
    PAST_DUE    -> ACTIVE | CANCELED
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from typing import Callable, List, Optional
import logging
import uuid

from app.core.audit import log_billing_event
from app.core.config import settings
from app.core.errors import (
    AlreadyCanceled, AlreadySubscribed, ConcurrentModification, InvalidTransition,
    NoPaymentMethod, NotFound,
)
from app.core.locks import subscription_lock
from app.models.audit_log import AuditEventType
from app.models.payment import ChargeTrigger, Payment
from app.models.plan import BillingInterval, SubscriptionPlan
from app.models.subscription import (
    BusinessSubscription, LIVE_STATUSES, SubscriptionStatus, TERMINAL_STATUSES,
)
from app.schemas.discount import DiscountCalculation, PendingDiscount
from app.services.business_lookup import get_business_contact
from app.services.charger import BillingCharger, ChargeOutcome
from app.services.discount_engine import DiscountEngine
from app.services.payment_gateway import PaymentGateway
from app.services.payment_methods import PaymentMethodService, get_default_payment_method
from app.services.retry_policy import RetryPolicy
from app.utils.clock import add_months, utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS = {
    S.TRIAL: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED, S.INCOMPLETE_EXPIRED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.INCOMPLETE: frozenset({S.ACTIVE, S.INCOMPLETE_EXPIRED, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    return target == current or target in ALLOWED_TRANSITIONS[current]


def period_end_for(start: datetime, plan: SubscriptionPlan) -> datetime:
    months = 12 if plan.billing_interval == BillingInterval.YEARLY else 1
    return add_months(start, months)


@dataclass
class SubscribeResult:
    subscription: BusinessSubscription
    message: str
    payment: Optional[Payment] = None
    discount: Optional[DiscountCalculation] = None


class SubscriptionService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        now: Callable[[], datetime] = utcnow,
        policy: Optional[RetryPolicy] = None,
        pending_ttl_hours: Optional[int] = settings.PENDING_DISCOUNT_TTL_HOURS,
    ):
        self.db = db
        self.now = now
        self.policy = policy or RetryPolicy.from_settings()
        self.discounts = DiscountEngine(db, now=now, pending_ttl_hours=pending_ttl_hours)
        self.charger = BillingCharger(db, gateway, self.discounts, now=now)

    # Queries

    def list_plans(self) -> List[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).filter(
            SubscriptionPlan.is_active.is_(True)
        ).order_by(SubscriptionPlan.price).all()

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.db.get(SubscriptionPlan, plan_id)
        if not plan or not plan.is_active:
            raise NotFound("Subscription plan not found")
        return plan

    def get(self, business_id: uuid.UUID) -> Optional[BusinessSubscription]:
        return self.db.query(BusinessSubscription).filter(
            BusinessSubscription.business_id == business_id
        ).first()

    def require(self, business_id: uuid.UUID) -> BusinessSubscription:
        subscription = self.get(business_id)
        if not subscription:
            raise NotFound("No subscription for this business")
        return subscription

    def history(self, business_id: uuid.UUID) -> List[Payment]:
        subscription = self.require(business_id)
        return self.charger.ledger.list_for_subscription(subscription.id)

    def due_trial_business_ids(self) -> List[uuid.UUID]:
        rows = self.db.query(BusinessSubscription.business_id).filter(
            BusinessSubscription.status == S.TRIAL,
            BusinessSubscription.trial_end <= self.now(),
        ).all()
        return [row[0] for row in rows]

    def due_renewal_business_ids(self, lookahead_hours: int = 0) -> List[uuid.UUID]:
        horizon = self.now() + timedelta(hours=lookahead_hours)
        rows = self.db.query(BusinessSubscription.business_id).filter(
            BusinessSubscription.status == S.ACTIVE,
            BusinessSubscription.current_period_end <= horizon,
        ).all()
        return [row[0] for row in rows]

    def trials_ending_business_ids(self, days_ahead: int) -> List[uuid.UUID]:
        now = self.now()
        rows = self.db.query(BusinessSubscription.business_id).filter(
            BusinessSubscription.status == S.TRIAL,
            BusinessSubscription.trial_end > now,
            BusinessSubscription.trial_end <= now + timedelta(days=days_ahead),
            or_(
                BusinessSubscription.reminder_sent_for.is_(None),
                BusinessSubscription.reminder_sent_for != BusinessSubscription.trial_end,
            ),
        ).all()
        return [row[0] for row in rows]

    def expiring_business_ids(self, days_ahead: int) -> List[uuid.UUID]:
        """ACTIVE subscriptions that will not renew and whose period ends soon."""
        now = self.now()
        rows = self.db.query(BusinessSubscription.business_id).filter(
            BusinessSubscription.status == S.ACTIVE,
            BusinessSubscription.auto_renewal.is_(False),
            BusinessSubscription.current_period_end >= now,
            BusinessSubscription.current_period_end <= now + timedelta(days=days_ahead),
            or_(
                BusinessSubscription.reminder_sent_for.is_(None),
                BusinessSubscription.reminder_sent_for != BusinessSubscription.current_period_end,
            ),
        ).all()
        return [row[0] for row in rows]

    # Internals

    def _lock_row(self, business_id: uuid.UUID) -> BusinessSubscription:
        subscription = self.db.query(BusinessSubscription).filter(
            BusinessSubscription.business_id == business_id
        ).with_for_update().populate_existing().one_or_none()
        if not subscription:
            raise NotFound("No subscription for this business")
        return subscription

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrentModification("Subscription was modified concurrently, retry the request")

    def _transition(self, subscription: BusinessSubscription, target: SubscriptionStatus, reason: str) -> None:
        current = subscription.status
        if not can_transition(current, target):
            raise InvalidTransition(f"Cannot move subscription from {current.value} to {target.value}")
        if current == target:
            return
        subscription.status = target
        log_billing_event(
            self.db,
            AuditEventType.SUBSCRIPTION_STATUS_CHANGED,
            business_id=subscription.business_id,
            subscription_id=subscription.id,
            details={"from": current.value, "to": target.value, "reason": reason},
        )
        logger.info("[SUBSCRIPTION] %s: %s -> %s (%s)", subscription.business_id, current.value, target.value, reason)

    def _start_period(self, subscription: BusinessSubscription, start: datetime) -> None:
        end = period_end_for(start, subscription.plan)
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.next_billing_date = end

    def _cancel_now(self, subscription: BusinessSubscription, reason: str) -> None:
        self._transition(subscription, S.CANCELED, reason)
        subscription.canceled_at = self.now()
        subscription.auto_renewal = False
        subscription.cancel_at_period_end = False
        subscription.next_retry_at = None
        subscription.next_billing_date = None

    def _record_success(self, subscription: BusinessSubscription, trigger: ChargeTrigger) -> None:
        # Renewals and retries continue from the unpaid period's end; first payments start now
        if trigger == ChargeTrigger.INITIAL or subscription.current_period_end is None:
            start = self.now()
        else:
            start = subscription.current_period_end
        self._transition(subscription, S.ACTIVE, f"{trigger.value}_succeeded")
        self._start_period(subscription, start)
        subscription.failed_payment_count = 0
        subscription.last_failure_at = None
        subscription.next_retry_at = None
        subscription.escalated_at = None

    def _record_failure(self, subscription: BusinessSubscription, trigger: ChargeTrigger, error: Optional[str]) -> None:
        now = self.now()
        if subscription.status in LIVE_STATUSES:
            self._transition(subscription, S.PAST_DUE, f"{trigger.value}_failed")
        subscription.last_failure_at = now
        if subscription.status == S.PAST_DUE:
            subscription.failed_payment_count += 1
            subscription.next_retry_at = self.policy.next_retry_date(now, subscription.failed_payment_count)
        logger.warning(
            "[SUBSCRIPTION] %s charge failed for %s (failed count %s): %s",
            trigger.value, subscription.business_id, subscription.failed_payment_count, error,
        )
        # The counter never passes the retry cap while the subscription is still open
        if subscription.status == S.PAST_DUE and self.policy.should_cancel(subscription.failed_payment_count):
            self._cancel_now(subscription, "payment_retries_exhausted")

    def _apply_outcome(self, subscription: BusinessSubscription, outcome: ChargeOutcome, trigger: ChargeTrigger) -> None:
        if outcome.success:
            self._record_success(subscription, trigger)
        else:
            self._record_failure(subscription, trigger, outcome.error)

    def _charge_or_record_missing_method(self, subscription: BusinessSubscription, trigger: ChargeTrigger) -> ChargeOutcome:
        """Charge; a missing payment method counts as a failed attempt without a ledger row."""
        try:
            outcome = self.charger.charge(subscription, trigger)
        except NoPaymentMethod as e:
            logger.error("[SUBSCRIPTION] %s for %s: %s", trigger.value, subscription.business_id, e.message)
            log_billing_event(
                self.db,
                AuditEventType.PAYMENT_FAILED,
                business_id=subscription.business_id,
                subscription_id=subscription.id,
                details={"trigger": trigger.value, "reason": e.reason, "error": e.message},
            )
            outcome = ChargeOutcome(
                success=False,
                payment=None,
                amount=to_money(subscription.plan.price),
                error=e.message,
            )
        self._apply_outcome(subscription, outcome, trigger)
        return outcome

    # Lifecycle operations

    def subscribe(
        self,
        business_id: uuid.UUID,
        plan_id: str,
        discount_code: Optional[str] = None,
        payment_method_id: Optional[uuid.UUID] = None,
        auto_renewal: bool = True,
    ) -> SubscribeResult:
        """
        Start a subscription. Plans with a trial start in TRIAL without a
        charge; otherwise the first period is charged immediately. A supplied
        discount code must be valid now and is held as the pending discount
        for the first real charge.
        """
        with subscription_lock(business_id):
            contact = get_business_contact(self.db, business_id)
            plan = self.get_plan(plan_id)

            subscription = self.get(business_id)
            if subscription is not None:
                subscription = self._lock_row(business_id)
                if subscription.status in LIVE_STATUSES:
                    raise AlreadySubscribed("Business already has an active subscription")
                if subscription.status == S.PAST_DUE:
                    raise InvalidTransition("Business has a past due subscription, settle the outstanding payment first")

            pending = None
            if discount_code:
                code, _ = self.discounts.require_valid(discount_code, plan.id, plan.price, contact.owner_id)
                pending = self.discounts.build_pending(code)

            if payment_method_id:
                method = PaymentMethodService(self.db).get(business_id, payment_method_id)
            else:
                method = get_default_payment_method(self.db, business_id)

            now = self.now()
            if subscription is None:
                subscription = BusinessSubscription(business_id=business_id)
                self.db.add(subscription)
            subscription.plan = plan
            subscription.auto_renewal = auto_renewal
            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
            subscription.payment_method_id = method.id if method else None
            subscription.failed_payment_count = 0
            subscription.last_failure_at = None
            subscription.next_retry_at = None
            subscription.escalated_at = None
            subscription.trial_start = None
            subscription.trial_end = None
            subscription.current_period_start = None
            subscription.current_period_end = None
            subscription.next_billing_date = None
            subscription.pending_discount = pending
            subscription.updated_at = now

            if plan.trial_days > 0:
                subscription.status = S.TRIAL
                subscription.trial_start = now
                subscription.trial_end = now + timedelta(days=plan.trial_days)
                subscription.current_period_start = now
                subscription.current_period_end = subscription.trial_end
                subscription.next_billing_date = subscription.trial_end
                message = f"Trial started, first charge on {subscription.trial_end:%Y-%m-%d}"
            elif method is None:
                subscription.status = S.INCOMPLETE
                message = "Subscription created, add a payment method to activate it"
            else:
                subscription.status = S.UNPAID
                message = None

            self.db.flush()
            log_billing_event(
                self.db,
                AuditEventType.SUBSCRIPTION_CREATED,
                business_id=business_id,
                subscription_id=subscription.id,
                details={"plan_id": plan.id, "status": subscription.status.value, "discount_code": pending.code if pending else None},
            )
            self._commit()
            logger.info("[SUBSCRIPTION] %s subscribed to %s (%s)", business_id, plan.id, subscription.status.value)

            if message:
                return SubscribeResult(subscription=subscription, message=message)

            outcome = self.charger.charge(subscription, ChargeTrigger.INITIAL, method)
            self._apply_outcome(subscription, outcome, ChargeTrigger.INITIAL)
            self._commit()
            if outcome.success:
                message = "Subscription activated"
            else:
                message = f"Payment failed: {outcome.error or 'declined'}"
            return SubscribeResult(
                subscription=subscription,
                message=message,
                payment=outcome.payment,
                discount=outcome.discount,
            )

    def pay_outstanding(self, business_id: uuid.UUID, payment_method_id: Optional[uuid.UUID] = None) -> ChargeOutcome:
        """
        Charge an UNPAID, INCOMPLETE or PAST_DUE subscription on demand. A
        failed PAST_DUE charge counts against the retry cap like a scheduled
        retry and cancels the subscription once the cap is reached.
        """
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.status in (S.UNPAID, S.INCOMPLETE):
                trigger = ChargeTrigger.INITIAL
            elif subscription.status == S.PAST_DUE:
                trigger = ChargeTrigger.RETRY
            else:
                raise InvalidTransition(f"Nothing outstanding on a {subscription.status.value} subscription")

            method = None
            if payment_method_id:
                method = PaymentMethodService(self.db).get(business_id, payment_method_id)
                subscription.payment_method_id = method.id
            outcome = self.charger.charge(subscription, trigger, method)
            self._apply_outcome(subscription, outcome, trigger)
            self._commit()
            return outcome

    def convert_trial(self, business_id: uuid.UUID) -> Optional[ChargeOutcome]:
        """
        Charge a trial that has ended. Returns None when the trial was set to
        cancel at period end instead. Without a payment method the
        subscription expires and NoPaymentMethod is raised to the caller.
        """
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.status != S.TRIAL:
                raise InvalidTransition(f"Subscription is {subscription.status.value}, not in trial")

            if subscription.cancel_at_period_end:
                self._cancel_now(subscription, "trial_ended")
                self._commit()
                return None

            try:
                outcome = self.charger.charge(subscription, ChargeTrigger.TRIAL_CONVERSION)
            except NoPaymentMethod:
                self._transition(subscription, S.INCOMPLETE_EXPIRED, "no_payment_method")
                subscription.auto_renewal = False
                subscription.canceled_at = self.now()
                subscription.next_billing_date = None
                self._commit()
                raise
            self._apply_outcome(subscription, outcome, ChargeTrigger.TRIAL_CONVERSION)
            self._commit()
            return outcome

    def renew(self, business_id: uuid.UUID) -> Optional[ChargeOutcome]:
        """
        Charge the next period of an ACTIVE subscription. A subscription not
        renewing is canceled once its period has ended; returns None then.
        """
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.status != S.ACTIVE:
                raise InvalidTransition(f"Cannot renew a {subscription.status.value} subscription")

            if subscription.cancel_at_period_end or not subscription.auto_renewal:
                period_end = subscription.current_period_end
                if period_end is not None and period_end <= self.now():
                    self._cancel_now(subscription, "period_ended")
                    self._commit()
                return None

            outcome = self._charge_or_record_missing_method(subscription, ChargeTrigger.RENEWAL)
            self._commit()
            return outcome

    def retry_payment(self, business_id: uuid.UUID) -> ChargeOutcome:
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.status != S.PAST_DUE:
                raise InvalidTransition(f"Cannot retry payment on a {subscription.status.value} subscription")
            outcome = self._charge_or_record_missing_method(subscription, ChargeTrigger.RETRY)
            self._commit()
            return outcome

    def cancel(self, business_id: uuid.UUID, at_period_end: bool = True) -> BusinessSubscription:
        """
        Cancel a subscription. A paid-up or trialing subscription canceled at
        period end keeps running until then; anything else ends now.
        """
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.is_terminal:
                raise AlreadyCanceled("Subscription is already canceled")

            if at_period_end and subscription.status in LIVE_STATUSES:
                subscription.cancel_at_period_end = True
                subscription.auto_renewal = False
                logger.info("[SUBSCRIPTION] %s will cancel at period end", business_id)
            else:
                self._cancel_now(subscription, "requested")
            self._commit()
            return subscription

    def cancel_for_nonpayment(self, business_id: uuid.UUID) -> BusinessSubscription:
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if not subscription.is_terminal:
                self._cancel_now(subscription, "payment_retries_exhausted")
                self._commit()
            return subscription

    def mark_escalated(self, business_id: uuid.UUID) -> BusinessSubscription:
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            subscription.escalated_at = self.now()
            log_billing_event(
                self.db,
                AuditEventType.PAYMENT_ESCALATED,
                business_id=business_id,
                subscription_id=subscription.id,
                details={"failed_payment_count": subscription.failed_payment_count},
            )
            self._commit()
            return subscription

    def claim_reminder(self, business_id: uuid.UUID, status: SubscriptionStatus) -> Optional[BusinessSubscription]:
        """
        Mark the current period as reminded. Returns None when the subscription
        left ``status`` or this period was already reminded, so each period
        gets at most one reminder.
        """
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.status != status:
                return None
            period_end = subscription.trial_end if status == S.TRIAL else subscription.current_period_end
            if period_end is None or subscription.reminder_sent_for == period_end:
                return None
            subscription.reminder_sent_for = period_end
            self._commit()
            return subscription

    def reactivate(self, business_id: uuid.UUID) -> BusinessSubscription:
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.is_terminal:
                raise InvalidTransition("Canceled subscriptions cannot be reactivated, subscribe again")
            if not subscription.cancel_at_period_end:
                raise InvalidTransition("Subscription is not scheduled for cancellation")
            subscription.cancel_at_period_end = False
            subscription.auto_renewal = True
            self._commit()
            logger.info("[SUBSCRIPTION] %s reactivated", business_id)
            return subscription

    def set_auto_renewal(
        self,
        business_id: uuid.UUID,
        enabled: bool,
        payment_method_id: Optional[uuid.UUID] = None,
    ) -> BusinessSubscription:
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.is_terminal:
                raise InvalidTransition("Subscription is canceled")
            if enabled:
                if payment_method_id:
                    method = PaymentMethodService(self.db).get(business_id, payment_method_id)
                else:
                    method = subscription.payment_method or get_default_payment_method(self.db, business_id)
                if method is None:
                    raise NoPaymentMethod("Add a payment method before enabling auto-renewal")
                subscription.payment_method_id = method.id
                subscription.cancel_at_period_end = False
            subscription.auto_renewal = enabled
            self._commit()
            return subscription

    def attach_discount(self, business_id: uuid.UUID, code: str) -> PendingDiscount:
        """Validate a code and hold it for the subscription's next charge."""
        with subscription_lock(business_id):
            subscription = self._lock_row(business_id)
            if subscription.is_terminal:
                raise InvalidTransition("Subscription is canceled")
            contact = get_business_contact(self.db, business_id)
            discount_code, _ = self.discounts.require_valid(
                code, subscription.plan_id, subscription.plan.price, contact.owner_id,
            )
            pending = self.discounts.build_pending(discount_code)
            subscription.pending_discount = pending
            self._commit()
            logger.info("[DISCOUNT] %s attached to subscription of %s", pending.code, business_id)
            return pending

    def expire_incomplete(self, max_age_hours: int) -> int:
        """Expire INCOMPLETE subscriptions that were never paid within the window."""
        cutoff = self.now() - timedelta(hours=max_age_hours)
        rows = self.db.query(BusinessSubscription.business_id).filter(
            BusinessSubscription.status == S.INCOMPLETE,
            BusinessSubscription.updated_at < cutoff,
        ).all()
        expired = 0
        for (business_id,) in rows:
            with subscription_lock(business_id):
                subscription = self._lock_row(business_id)
                if subscription.status != S.INCOMPLETE:
                    continue
                self._transition(subscription, S.INCOMPLETE_EXPIRED, "payment_window_elapsed")
                subscription.auto_renewal = False
                self._commit()
                expired += 1
        return expired
