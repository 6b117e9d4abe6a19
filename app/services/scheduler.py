"""
Background billing scheduler.

One pass runs, in order: trial conversions, renewals, failed-payment
retries, expiry reminders and maintenance (expiring INCOMPLETE subscriptions
and discount codes, flagging stuck PENDING payments, scrubbing old failure
details). Jobs are isolated from each other and so are the subscriptions
inside a job. PeriodicTicker drives passes on a daemon thread at a jittered
interval.
"""
from datetime import datetime
from sqlalchemy.orm import sessionmaker
from typing import Callable, Dict, Optional
import logging
import random
import threading
import uuid

from app.core.config import settings
from app.core.errors import NoPaymentMethod
from app.models.subscription import SubscriptionStatus
from app.services.business_lookup import get_business_contact
from app.services.discount_engine import DiscountEngine
from app.services.notifications import NotificationSender, notify
from app.services.payment_gateway import PaymentGateway
from app.services.payment_ledger import PaymentLedger
from app.services.payment_retry import PaymentRetryService, report_failed_payment
from app.services.retry_policy import RetryPolicy
from app.services.subscription_state import SubscriptionService
from app.services.workers import run_isolated
from app.utils.clock import utcnow
from app.utils.money import to_money

logger = logging.getLogger(__name__)


def _tally(results, keys) -> Dict[str, int]:
    summary = {key: 0 for key in keys}
    summary["processed"] = len(results)
    summary["errors"] = 0
    for result in results:
        if not result.ok:
            summary["errors"] += 1
        elif result.value in summary:
            summary[result.value] += 1
    return summary


class BillingScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        notifier: NotificationSender,
        policy: Optional[RetryPolicy] = None,
        now: Callable[[], datetime] = utcnow,
        max_workers: int = settings.SCHEDULER_MAX_WORKERS,
        renewal_lookahead_hours: int = settings.RENEWAL_LOOKAHEAD_HOURS,
        incomplete_expiry_hours: int = settings.INCOMPLETE_EXPIRY_HOURS,
        reminder_days_ahead: int = settings.REMINDER_DAYS_AHEAD,
        failed_payment_retention_days: int = settings.FAILED_PAYMENT_RETENTION_DAYS,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.policy = policy or RetryPolicy.from_settings()
        self.now = now
        self.max_workers = max_workers
        self.renewal_lookahead_hours = renewal_lookahead_hours
        self.incomplete_expiry_hours = incomplete_expiry_hours
        self.reminder_days_ahead = reminder_days_ahead
        self.failed_payment_retention_days = failed_payment_retention_days
        self.retries = PaymentRetryService(
            session_factory, gateway, notifier, policy=self.policy, now=now, max_workers=max_workers,
        )
        self._pass_lock = threading.Lock()
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[dict] = None

    def _service(self, db) -> SubscriptionService:
        return SubscriptionService(db, self.gateway, now=self.now, policy=self.policy)

    def run_once(self) -> dict:
        """Run one full pass. A pass already in progress makes this a no-op."""
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("[SCHEDULER] Previous pass still running, skipping")
            return {"skipped": True}
        try:
            logger.info("[SCHEDULER] Billing pass started")
            summary = {}
            jobs = (
                ("trial_conversions", self.process_trial_conversions),
                ("renewals", self.process_renewals),
                ("retries", self.retries.process_failed_payments),
                ("reminders", self.send_reminders),
                ("maintenance", self.run_maintenance),
            )
            for name, job in jobs:
                try:
                    summary[name] = job()
                except Exception as e:
                    logger.exception("[SCHEDULER] Job %s failed: %s", name, e)
                    summary[name] = {"error": str(e)}
            self.last_run_at = self.now()
            self.last_summary = summary
            logger.info("[SCHEDULER] Billing pass finished: %s", summary)
            return summary
        finally:
            self._pass_lock.release()

    # Trial conversions

    def process_trial_conversions(self) -> Dict[str, int]:
        with self.session_factory() as db:
            business_ids = self._service(db).due_trial_business_ids()
        results = run_isolated(business_ids, self.convert_trial, self.max_workers, "trial")
        return _tally(results, ("converted", "failed", "canceled", "expired"))

    def convert_trial(self, business_id: uuid.UUID) -> str:
        with self.session_factory() as db:
            service = self._service(db)
            try:
                outcome = service.convert_trial(business_id)
            except NoPaymentMethod:
                logger.error("[SCHEDULER] Trial of %s ended without a payment method, expiring", business_id)
                subscription = service.require(business_id)
                notify(
                    self.notifier.send_subscription_cancellation,
                    get_business_contact(db, business_id), subscription.plan.display_name, 0,
                )
                return "expired"
            if outcome is None:
                return "canceled"

            subscription = service.require(business_id)
            contact = get_business_contact(db, business_id)
            if outcome.success:
                notify(
                    self.notifier.send_renewal_confirmation,
                    contact, subscription.plan.display_name, subscription.current_period_end,
                )
                return "converted"
            report_failed_payment(service, self.notifier, business_id, outcome.error)
            return "failed"

    # Renewals

    def process_renewals(self) -> Dict[str, int]:
        with self.session_factory() as db:
            business_ids = self._service(db).due_renewal_business_ids(self.renewal_lookahead_hours)
        results = run_isolated(business_ids, self.renew, self.max_workers, "renewal")
        return _tally(results, ("renewed", "failed", "canceled", "skipped"))

    def renew(self, business_id: uuid.UUID) -> str:
        with self.session_factory() as db:
            service = self._service(db)
            outcome = service.renew(business_id)
            subscription = service.require(business_id)
            if outcome is None:
                return "canceled" if subscription.status == SubscriptionStatus.CANCELED else "skipped"

            contact = get_business_contact(db, business_id)
            if outcome.success:
                notify(
                    self.notifier.send_renewal_confirmation,
                    contact, subscription.plan.display_name, subscription.current_period_end,
                )
                return "renewed"
            report_failed_payment(service, self.notifier, business_id, outcome.error)
            return "failed"

    # Reminders

    def send_reminders(self) -> Dict[str, int]:
        """Trial-ending and expiry reminders, at most one per period."""
        with self.session_factory() as db:
            service = self._service(db)
            trials = service.trials_ending_business_ids(self.reminder_days_ahead)
            expiring = service.expiring_business_ids(self.reminder_days_ahead)
        trial_results = run_isolated(trials, self.remind_trial_ending, self.max_workers, "trial-reminder")
        expiry_results = run_isolated(expiring, self.remind_expiry, self.max_workers, "expiry-reminder")
        return {
            "trial_ending": sum(1 for result in trial_results if result.ok and result.value),
            "renewal": sum(1 for result in expiry_results if result.ok and result.value),
            "errors": sum(1 for result in trial_results + expiry_results if not result.ok),
        }

    def remind_trial_ending(self, business_id: uuid.UUID) -> bool:
        with self.session_factory() as db:
            service = self._service(db)
            subscription = service.claim_reminder(business_id, SubscriptionStatus.TRIAL)
            if subscription is None:
                return False
            price = subscription.plan.price
            preview = service.discounts.preview(subscription.pending_discount, price)
            amount = preview.final_amount if preview else to_money(price)
            return notify(
                self.notifier.send_trial_ending,
                get_business_contact(db, business_id), subscription.plan.display_name, subscription.trial_end, amount,
            )

    def remind_expiry(self, business_id: uuid.UUID) -> bool:
        with self.session_factory() as db:
            subscription = self._service(db).claim_reminder(business_id, SubscriptionStatus.ACTIVE)
            if subscription is None:
                return False
            return notify(
                self.notifier.send_renewal_reminder,
                get_business_contact(db, business_id), subscription.plan.display_name, subscription.current_period_end,
            )

    # Maintenance

    def run_maintenance(self) -> Dict[str, int]:
        with self.session_factory() as db:
            expired_subscriptions = self._service(db).expire_incomplete(self.incomplete_expiry_hours)
            deactivated_codes = DiscountEngine(db, now=self.now).deactivate_expired()
            ledger = PaymentLedger(db, self.gateway, now=self.now)
            scrubbed = ledger.scrub_failed_metadata(self.failed_payment_retention_days)
            stale = ledger.stale_pending()
            if stale:
                logger.warning(
                    "[SCHEDULER] %d payments stuck in PENDING need reconciliation: %s",
                    len(stale), ", ".join(str(payment.id) for payment in stale),
                )
        return {
            "expired_incomplete": expired_subscriptions,
            "deactivated_discount_codes": deactivated_codes,
            "stale_pending_payments": len(stale),
            "scrubbed_failed_payments": scrubbed,
        }

    def status(self) -> dict:
        return {
            "last_run_at": self.last_run_at,
            "last_summary": self.last_summary,
            "running": self._pass_lock.locked(),
        }


class PeriodicTicker:
    """Calls ``job`` every ``interval_seconds`` (+/- jitter) on a daemon thread."""

    def __init__(
        self,
        job: Callable[[], object],
        interval_seconds: float,
        jitter_seconds: float = 0.0,
        name: str = "billing-scheduler",
    ):
        self.job = job
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_delay(self) -> float:
        jitter = random.uniform(-self.jitter_seconds, self.jitter_seconds) if self.jitter_seconds else 0.0
        return max(0.0, self.interval_seconds + jitter)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("[SCHEDULER] Ticker %s started (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[SCHEDULER] Ticker %s stopped", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.next_delay()):
            self.tick()

    def tick(self) -> None:
        try:
            self.job()
            self.last_error = None
        except Exception as e:
            logger.exception("[SCHEDULER] Ticker %s job failed: %s", self.name, e)
            self.last_error = str(e)
        finally:
            self.runs += 1
            self.last_run_at = utcnow()

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "jitter_seconds": self.jitter_seconds,
            "runs": self.runs,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }
