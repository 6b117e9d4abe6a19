"""Billing scheduler passes and the periodic ticker"""
from datetime import timedelta
from decimal import Decimal
import threading

from app.models.payment import PaymentStatus
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.services.scheduler import PeriodicTicker
from app.utils.clock import add_months

S = SubscriptionStatus


def reload(db, business):
    db.expire_all()
    return db.query(BusinessSubscription).filter(BusinessSubscription.business_id == business.id).one()


def test_pass_converts_due_trials(db, scheduler, notifier, business, payment_method, trial_plan, make_subscription, clock):
    trial_end = clock()
    make_subscription(
        business, trial_plan, status=S.TRIAL,
        trial_start=clock() - timedelta(days=7), trial_end=trial_end, current_period_end=trial_end,
    )

    summary = scheduler.run_once()

    assert summary["trial_conversions"]["converted"] == 1
    subscription = reload(db, business)
    assert subscription.status == S.ACTIVE
    assert subscription.current_period_end == add_months(trial_end, 1)
    assert len(notifier.of("renewal_confirmation")) == 1
    assert scheduler.status()["last_summary"] == summary


def test_trial_without_payment_method_expires(db, scheduler, notifier, business, trial_plan, make_subscription, clock):
    make_subscription(business, trial_plan, status=S.TRIAL, trial_end=clock() - timedelta(minutes=5))

    summary = scheduler.run_once()

    assert summary["trial_conversions"]["expired"] == 1
    assert reload(db, business).status == S.INCOMPLETE_EXPIRED
    assert len(notifier.of("cancellation")) == 1


def test_renewal_within_lookahead(db, scheduler, gateway, business, payment_method, monthly_plan, make_subscription, clock):
    period_end = clock() + timedelta(hours=12)
    make_subscription(business, monthly_plan, current_period_end=period_end)

    summary = scheduler.run_once()

    assert summary["renewals"]["renewed"] == 1
    assert len(gateway.charges) == 1
    subscription = reload(db, business)
    assert subscription.current_period_start == period_end

    # Renewed period is outside the window: a second pass charges nothing
    scheduler.run_once()
    assert len(gateway.charges) == 1


def test_declined_renewal_is_not_retried_in_same_pass(db, scheduler, gateway, notifier, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(business, monthly_plan, current_period_end=clock())
    gateway.charge_succeeds = False

    summary = scheduler.run_once()

    assert summary["renewals"]["failed"] == 1
    assert summary["retries"]["processed"] == 0
    subscription = reload(db, business)
    assert subscription.status == S.PAST_DUE
    assert subscription.failed_payment_count == 1
    assert len(notifier.of("retry_failure")) == 1


def test_cancel_at_period_end_is_applied(db, scheduler, gateway, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(
        business, monthly_plan,
        current_period_end=clock() - timedelta(hours=1), cancel_at_period_end=True, auto_renewal=False,
    )

    summary = scheduler.run_once()

    assert summary["renewals"]["canceled"] == 1
    assert reload(db, business).status == S.CANCELED
    assert gateway.charges == []


def test_maintenance(db, scheduler, business, monthly_plan, make_subscription, make_discount_code, make_payment, clock):
    subscription = make_subscription(business, monthly_plan, status=S.INCOMPLETE)
    make_discount_code(code="SUMMER", valid_until=clock() + timedelta(hours=1))
    make_payment(subscription, status=PaymentStatus.PENDING)
    failure = {"error_code": "card_declined", "provider_status": "requires_payment_method"}
    old_failed = make_payment(
        subscription, status=PaymentStatus.FAILED, failure_message="Your card was declined.",
        failure_metadata=failure, created_at=clock() - timedelta(days=40),
    )
    recent_failed = make_payment(subscription, status=PaymentStatus.FAILED, failure_metadata=failure)

    clock.advance(hours=24)
    summary = scheduler.run_once()

    assert summary["maintenance"] == {
        "expired_incomplete": 1,
        "deactivated_discount_codes": 1,
        "stale_pending_payments": 1,
        "scrubbed_failed_payments": 1,
    }
    assert reload(db, business).status == S.INCOMPLETE_EXPIRED
    db.refresh(old_failed)
    db.refresh(recent_failed)
    assert old_failed.failure_metadata is None
    assert old_failed.failure_message == "Your card was declined."
    assert recent_failed.failure_metadata == failure


def test_failing_job_does_not_stop_the_pass(scheduler, monkeypatch):
    def broken():
        raise RuntimeError("renewal query failed")

    monkeypatch.setattr(scheduler, "process_renewals", broken)

    summary = scheduler.run_once()

    assert summary["renewals"] == {"error": "renewal query failed"}
    assert "processed" in summary["retries"]
    assert "expired_incomplete" in summary["maintenance"]


def test_overlapping_pass_is_skipped(scheduler):
    scheduler._pass_lock.acquire()
    try:
        assert scheduler.run_once() == {"skipped": True}
    finally:
        scheduler._pass_lock.release()


def test_ticker_runs_job_until_stopped():
    fired = threading.Event()
    ticker = PeriodicTicker(fired.set, interval_seconds=0.01, name="test-ticker")

    ticker.start()
    assert fired.wait(2)
    ticker.stop()

    assert not ticker.is_running
    assert ticker.runs >= 1
    assert ticker.status()["last_error"] is None


def test_ticker_records_job_errors():
    def job():
        raise ValueError("gateway down")

    ticker = PeriodicTicker(job, interval_seconds=60)
    ticker.tick()

    assert ticker.runs == 1
    assert ticker.last_error == "gateway down"


def test_ticker_jitter_bounds():
    ticker = PeriodicTicker(lambda: None, interval_seconds=10, jitter_seconds=2)
    for _ in range(50):
        assert 8 <= ticker.next_delay() <= 12


def test_trial_ending_reminder_sent_once(db, scheduler, notifier, business, payment_method, trial_plan, make_subscription, make_discount_code, service, clock):
    make_discount_code()
    trial_end = clock() + timedelta(days=2)
    make_subscription(
        business, trial_plan, status=S.TRIAL,
        trial_start=clock() - timedelta(days=5), trial_end=trial_end, current_period_end=trial_end,
    )
    service.attach_discount(business.id, "WELCOME20")

    summary = scheduler.run_once()

    assert summary["reminders"]["trial_ending"] == 1
    reminders = notifier.of("trial_ending")
    assert len(reminders) == 1
    assert reminders[0]["trial_end"] == trial_end
    assert reminders[0]["amount"] == Decimal("759.20")
    assert reload(db, business).reminder_sent_for == trial_end

    clock.advance(hours=6)
    assert scheduler.run_once()["reminders"]["trial_ending"] == 0
    assert len(notifier.of("trial_ending")) == 1


def test_trial_ending_outside_window_is_not_reminded(scheduler, notifier, business, trial_plan, make_subscription, clock):
    trial_end = clock() + timedelta(days=5)
    make_subscription(business, trial_plan, status=S.TRIAL, trial_end=trial_end, current_period_end=trial_end)

    scheduler.run_once()

    assert notifier.of("trial_ending") == []


def test_renewal_reminder_only_for_non_renewing(db, scheduler, notifier, make_business, monthly_plan, make_subscription, clock):
    period_end = clock() + timedelta(days=2)
    manual = make_business(name="Manual", email="manual@example.com")
    automatic = make_business(name="Automatic", email="auto@example.com")
    make_subscription(manual, monthly_plan, current_period_end=period_end, auto_renewal=False)
    make_subscription(automatic, monthly_plan, current_period_end=period_end + timedelta(days=10))

    summary = scheduler.run_once()

    assert summary["reminders"]["renewal"] == 1
    reminders = notifier.of("renewal_reminder")
    assert [r["business_id"] for r in reminders] == [manual.id]
    assert reminders[0]["period_end"] == period_end

    clock.advance(days=1)
    scheduler.run_once()
    assert len(notifier.of("renewal_reminder")) == 1
