"""
Retry and escalation of failed subscription payments.

A pass picks PAST_DUE subscriptions whose backoff has elapsed, retries each in
its own session, and then notifies, escalates to support and finally cancels
according to the RetryPolicy. Rows already at the retry cap are canceled
without another charge.
"""
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker
from typing import Callable, Dict, List, Optional
import logging
import uuid

from app.core.config import settings
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.schemas.payment import RetryStatistics
from app.services.business_lookup import get_business_contact
from app.services.notifications import NotificationSender, notify
from app.services.payment_gateway import PaymentGateway
from app.services.retry_policy import RetryPolicy
from app.services.subscription_state import SubscriptionService
from app.services.workers import run_isolated
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    business_id: uuid.UUID
    status: str  # skipped | succeeded | failed | canceled
    failed_payment_count: int = 0
    next_retry_at: Optional[datetime] = None
    escalated: bool = False
    canceled: bool = False
    error: Optional[str] = None


def report_failed_payment(
    service: SubscriptionService,
    notifier: NotificationSender,
    business_id: uuid.UUID,
    error: Optional[str] = None,
) -> RetryResult:
    """
    Follow up a counted payment failure: tell the owner, escalate to support
    past the threshold and cancel once the retry cap is reached.
    """
    policy = service.policy
    subscription = service.require(business_id)
    contact = get_business_contact(service.db, business_id)
    plan_name = subscription.plan.display_name
    failed_count = subscription.failed_payment_count

    will_cancel = subscription.is_terminal or policy.should_cancel(failed_count)
    next_retry_at = None if will_cancel else subscription.next_retry_at
    notify(notifier.send_payment_retry_failure, contact, failed_count, policy.max_retries, next_retry_at)

    escalated = False
    if policy.should_escalate(failed_count):
        logger.warning("[RETRY] Escalating %s after %s failed payments", business_id, failed_count)
        notify(notifier.send_payment_escalation, contact, plan_name, failed_count, subscription.current_period_end)
        service.mark_escalated(business_id)
        escalated = True

    if will_cancel:
        logger.warning("[RETRY] Canceling %s after %s failed payments", business_id, failed_count)
        service.cancel_for_nonpayment(business_id)
        notify(notifier.send_subscription_cancellation, contact, plan_name, failed_count)

    return RetryResult(
        business_id=business_id,
        status="failed",
        failed_payment_count=failed_count,
        next_retry_at=next_retry_at,
        escalated=escalated,
        canceled=will_cancel,
        error=error,
    )


class PaymentRetryService:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        notifier: NotificationSender,
        policy: Optional[RetryPolicy] = None,
        now: Callable[[], datetime] = utcnow,
        max_workers: int = settings.SCHEDULER_MAX_WORKERS,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.policy = policy or RetryPolicy.from_settings()
        self.now = now
        self.max_workers = max_workers

    def due_business_ids(self) -> List[uuid.UUID]:
        now = self.now()
        with self.session_factory() as db:
            rows = db.query(
                BusinessSubscription.business_id,
                BusinessSubscription.last_failure_at,
                BusinessSubscription.failed_payment_count,
            ).filter(
                BusinessSubscription.status == SubscriptionStatus.PAST_DUE,
            ).all()
        return [
            business_id for business_id, last_failure_at, failed_count in rows
            if self.policy.should_cancel(failed_count) or self.policy.is_due(now, last_failure_at, failed_count)
        ]

    def process_failed_payments(self) -> Dict[str, int]:
        """Run one retry pass over every due subscription."""
        business_ids = self.due_business_ids()
        summary = {"processed": len(business_ids), "succeeded": 0, "failed": 0, "escalated": 0, "canceled": 0, "errors": 0}
        for result in run_isolated(business_ids, self.process_subscription, self.max_workers, "retry"):
            if not result.ok:
                summary["errors"] += 1
                continue
            retry = result.value
            if retry.status == "succeeded":
                summary["succeeded"] += 1
            elif retry.status == "failed":
                summary["failed"] += 1
            summary["escalated"] += int(retry.escalated)
            summary["canceled"] += int(retry.canceled)
        logger.info("[RETRY] Pass complete: %s", summary)
        return summary

    def process_subscription(self, business_id: uuid.UUID) -> RetryResult:
        with self.session_factory() as db:
            service = SubscriptionService(db, self.gateway, now=self.now, policy=self.policy)
            subscription = service.require(business_id)
            failed_count = subscription.failed_payment_count
            if subscription.status != SubscriptionStatus.PAST_DUE:
                return RetryResult(business_id=business_id, status="skipped", failed_payment_count=failed_count)

            if self.policy.should_cancel(failed_count):
                logger.warning("[RETRY] %s is past the retry cap (%s failures), canceling", business_id, failed_count)
                service.cancel_for_nonpayment(business_id)
                contact = get_business_contact(db, business_id)
                notify(self.notifier.send_subscription_cancellation, contact, subscription.plan.display_name, failed_count)
                return RetryResult(
                    business_id=business_id, status="canceled", failed_payment_count=failed_count, canceled=True,
                )

            if not self.policy.is_due(self.now(), subscription.last_failure_at, failed_count):
                return RetryResult(business_id=business_id, status="skipped", failed_payment_count=failed_count)

            outcome = service.retry_payment(business_id)
            if outcome.success:
                subscription = service.require(business_id)
                logger.info("[RETRY] Payment recovered for %s", business_id)
                contact = get_business_contact(db, business_id)
                notify(
                    self.notifier.send_renewal_confirmation,
                    contact, subscription.plan.display_name, subscription.current_period_end,
                )
                return RetryResult(business_id=business_id, status="succeeded")

            return report_failed_payment(service, self.notifier, business_id, outcome.error)


def retry_statistics(db: Session, policy: Optional[RetryPolicy] = None) -> RetryStatistics:
    policy = policy or RetryPolicy.from_settings()

    def count(*criteria) -> int:
        return db.query(func.count(BusinessSubscription.id)).filter(*criteria).scalar() or 0

    past_due = BusinessSubscription.status == SubscriptionStatus.PAST_DUE
    return RetryStatistics(
        total_past_due=count(past_due),
        pending_retry=count(
            past_due,
            BusinessSubscription.failed_payment_count > 0,
            BusinessSubscription.failed_payment_count < policy.max_retries,
        ),
        escalated=count(past_due, BusinessSubscription.failed_payment_count >= policy.escalation_threshold),
        canceled_after_retries=count(
            BusinessSubscription.status == SubscriptionStatus.CANCELED,
            BusinessSubscription.failed_payment_count >= policy.max_retries,
        ),
    )
