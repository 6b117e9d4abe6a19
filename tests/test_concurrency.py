"""Keyed locks and concurrent billing work on shared rows"""
from datetime import timedelta
from decimal import Decimal
import threading

from app.core.locks import active_lock_count, keyed_lock, subscription_lock
from app.models.audit_log import AuditEventType, BillingAuditLog
from app.models.discount_code import DiscountCode, DiscountCodeUsage
from app.models.payment import Payment, PaymentStatus
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.services.scheduler import BillingScheduler
from app.services.subscription_state import SubscriptionService

S = SubscriptionStatus


def test_lock_entries_are_released():
    baseline = active_lock_count()
    with keyed_lock("subscription", "biz-1"):
        with keyed_lock("subscription", "biz-1"):
            assert active_lock_count() == baseline + 1
        with keyed_lock("discount_code", "code-1"):
            assert active_lock_count() == baseline + 2
    assert active_lock_count() == baseline


def test_lock_entry_released_after_error():
    baseline = active_lock_count()
    try:
        with keyed_lock("payment", "pay-1"):
            raise RuntimeError("gateway down")
    except RuntimeError:
        pass
    assert active_lock_count() == baseline


def test_same_key_is_mutually_exclusive():
    inside = threading.Event()
    release = threading.Event()
    order = []

    def holder():
        with subscription_lock("biz-2"):
            order.append("holder")
            inside.set()
            release.wait(5)

    def waiter():
        with subscription_lock("biz-2"):
            order.append("waiter")

    first = threading.Thread(target=holder)
    first.start()
    assert inside.wait(5)
    second = threading.Thread(target=waiter)
    second.start()
    second.join(0.2)
    assert second.is_alive()

    release.set()
    first.join(5)
    second.join(5)
    assert order == ["holder", "waiter"]


def test_capped_code_redeemed_once_across_concurrent_conversions(
    db, session_factory, gateway, notifier, policy, clock, service,
    make_business, make_payment_method, trial_plan, make_subscription, make_discount_code,
):
    code = make_discount_code(max_usages=1)
    trial_end = clock()
    for index in range(4):
        business = make_business(name=f"Salon {index}", email=f"salon{index}@example.com")
        make_payment_method(business)
        make_subscription(
            business, trial_plan, status=S.TRIAL,
            trial_start=trial_end - timedelta(days=7), trial_end=trial_end, current_period_end=trial_end,
        )
        service.attach_discount(business.id, "WELCOME20")

    # All four charges reach the gateway before any of them completes
    barrier = threading.Barrier(4, timeout=10)
    gateway.on_charge = lambda request: barrier.wait()
    scheduler = BillingScheduler(
        session_factory, gateway, notifier, policy=policy, now=clock, max_workers=4,
    )

    summary = scheduler.process_trial_conversions()

    assert summary["converted"] == 4
    assert summary["errors"] == 0
    db.expire_all()
    assert db.query(DiscountCodeUsage).count() == 1
    assert db.get(DiscountCode, code.id).current_usages == 1
    assert db.query(BillingAuditLog).filter(
        BillingAuditLog.event_type == AuditEventType.DISCOUNT_RECONCILIATION_REQUIRED
    ).count() == 3
    payments = db.query(Payment).all()
    assert len(payments) == 4
    assert all(payment.status == PaymentStatus.SUCCEEDED for payment in payments)
    assert all(payment.amount == Decimal("759.20") for payment in payments)
    assert all(
        subscription.status == S.ACTIVE and subscription.pending_discount is None
        for subscription in db.query(BusinessSubscription).all()
    )


def test_cancel_waits_for_running_renewal(db, session_factory, gateway, policy, clock, business, payment_method, monthly_plan, make_subscription):
    period_end = clock()
    make_subscription(business, monthly_plan, current_period_start=period_end - timedelta(days=31), current_period_end=period_end)
    outcome = {}

    def cancel_now():
        with session_factory() as other_db:
            other = SubscriptionService(other_db, gateway, now=clock, policy=policy)
            outcome["status"] = other.cancel(business.id, at_period_end=False).status

    canceler = threading.Thread(target=cancel_now)

    def cancel_during_charge(request):
        canceler.start()
        canceler.join(0.2)
        outcome["blocked"] = canceler.is_alive()

    gateway.on_charge = cancel_during_charge
    with session_factory() as renew_db:
        renewal = SubscriptionService(renew_db, gateway, now=clock, policy=policy).renew(business.id)
    canceler.join(5)

    assert renewal.success
    assert outcome["blocked"] is True
    assert outcome["status"] == S.CANCELED
    db.expire_all()
    subscription = db.query(BusinessSubscription).filter(BusinessSubscription.business_id == business.id).one()
    assert subscription.status == S.CANCELED
    assert subscription.current_period_start == period_end
    assert db.query(Payment).filter(Payment.status == PaymentStatus.SUCCEEDED).count() == 1
