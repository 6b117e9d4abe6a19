"""Failed payment retries, escalation and cancellation"""
from datetime import timedelta

import pytest

from app.models.payment import ChargeTrigger, Payment
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.services.payment_retry import PaymentRetryService, retry_statistics
from app.services.retry_policy import RetryPolicy
from app.services.subscription_state import SubscriptionService

S = SubscriptionStatus


@pytest.fixture
def retries(session_factory, gateway, notifier, policy, clock):
    return PaymentRetryService(session_factory, gateway, notifier, policy=policy, now=clock, max_workers=1)


def reload(db, business):
    db.expire_all()
    return db.query(BusinessSubscription).filter(BusinessSubscription.business_id == business.id).one()


def test_policy_schedule():
    policy = RetryPolicy()
    assert policy.delay_for(0) == timedelta(0)
    assert policy.delay_for(1) == timedelta(days=1)
    assert policy.delay_for(4) == timedelta(days=14)
    assert policy.delay_for(9) == timedelta(days=14)
    assert not policy.should_escalate(2)
    assert policy.should_escalate(3)
    assert policy.should_cancel(5)


def test_retries_exhaust_and_cancel(db, retries, gateway, notifier, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(business, monthly_plan, status=S.PAST_DUE)
    gateway.charge_succeeds = False

    counts = []
    for advance_days in (1, 3, 7, 14, None):
        summary = retries.process_failed_payments()
        assert summary["processed"] == 1
        assert summary["failed"] == 1
        subscription = reload(db, business)
        counts.append(subscription.failed_payment_count)
        if advance_days:
            assert subscription.status == S.PAST_DUE
            clock.advance(days=advance_days)

    assert counts == [1, 2, 3, 4, 5]
    subscription = reload(db, business)
    assert subscription.status == S.CANCELED
    assert not subscription.auto_renewal
    assert [n["attempt"] for n in notifier.of("retry_failure")] == [1, 2, 3, 4, 5]
    assert notifier.of("retry_failure")[-1]["next_retry_date"] is None
    assert [n["failed_count"] for n in notifier.of("escalation")] == [3, 4, 5]
    assert len(notifier.of("cancellation")) == 1

    # Nothing left to retry
    clock.advance(days=30)
    assert retries.process_failed_payments()["processed"] == 0
    assert len(gateway.charges) == 5
    assert all(p.trigger == ChargeTrigger.RETRY for p in db.query(Payment).all())


def test_retry_waits_for_backoff(db, retries, gateway, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(
        business, monthly_plan, status=S.PAST_DUE,
        failed_payment_count=2, last_failure_at=clock(),
    )

    clock.advance(days=2)
    assert retries.process_failed_payments()["processed"] == 0
    assert gateway.charges == []

    clock.advance(days=1)
    summary = retries.process_failed_payments()

    assert summary["succeeded"] == 1
    subscription = reload(db, business)
    assert subscription.status == S.ACTIVE
    assert subscription.failed_payment_count == 0


def test_recovered_payment_sends_confirmation(db, retries, notifier, business, payment_method, monthly_plan, make_subscription):
    make_subscription(business, monthly_plan, status=S.PAST_DUE, failed_payment_count=3)

    result = retries.process_subscription(business.id)

    assert result.status == "succeeded"
    assert len(notifier.of("renewal_confirmation")) == 1
    assert notifier.of("escalation") == []
    assert reload(db, business).escalated_at is None


def test_escalation_marks_subscription(db, retries, gateway, notifier, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(business, monthly_plan, status=S.PAST_DUE, failed_payment_count=2)
    gateway.charge_succeeds = False

    result = retries.process_subscription(business.id)

    assert result.escalated
    assert not result.canceled
    subscription = reload(db, business)
    assert subscription.escalated_at == clock()
    assert subscription.status == S.PAST_DUE


def test_retry_without_payment_method(db, retries, gateway, business, monthly_plan, make_subscription):
    make_subscription(business, monthly_plan, status=S.PAST_DUE)

    result = retries.process_subscription(business.id)

    assert result.status == "failed"
    assert result.failed_payment_count == 1
    assert gateway.charges == []
    assert db.query(Payment).count() == 0


def test_one_failing_subscription_does_not_stop_the_pass(db, retries, make_business, make_payment_method, monthly_plan, make_subscription, monkeypatch):
    broken = make_business(name="Broken", email="broken@example.com")
    healthy = make_business(name="Healthy", email="healthy@example.com")
    for business in (broken, healthy):
        make_payment_method(business)
        make_subscription(business, monthly_plan, status=S.PAST_DUE)
    broken_id = broken.id

    original = SubscriptionService.retry_payment

    def flaky(self, business_id):
        if business_id == broken_id:
            raise RuntimeError("database hiccup")
        return original(self, business_id)

    monkeypatch.setattr(SubscriptionService, "retry_payment", flaky)

    summary = retries.process_failed_payments()

    assert summary["processed"] == 2
    assert summary["errors"] == 1
    assert summary["succeeded"] == 1
    assert reload(db, healthy).status == S.ACTIVE


def test_retry_statistics(db, make_business, monthly_plan, make_subscription, policy):
    counts = [(S.PAST_DUE, 0), (S.PAST_DUE, 1), (S.PAST_DUE, 3), (S.CANCELED, 5), (S.ACTIVE, 0)]
    for index, (status, failed) in enumerate(counts):
        business = make_business(name=f"Business {index}", email=f"b{index}@example.com")
        make_subscription(business, monthly_plan, status=status, failed_payment_count=failed)

    stats = retry_statistics(db, policy)

    assert stats.total_past_due == 3
    assert stats.pending_retry == 2
    assert stats.escalated == 1
    assert stats.canceled_after_retries == 1


def test_subscription_at_retry_cap_is_canceled_without_charge(db, retries, gateway, notifier, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(
        business, monthly_plan, status=S.PAST_DUE,
        failed_payment_count=7, last_failure_at=clock() - timedelta(days=1),
    )

    summary = retries.process_failed_payments()

    assert summary["processed"] == 1
    assert summary["canceled"] == 1
    assert gateway.charges == []
    subscription = reload(db, business)
    assert subscription.status == S.CANCELED
    assert [n["failed_count"] for n in notifier.of("cancellation")] == [7]
    assert retries.process_failed_payments()["processed"] == 0


def test_manual_payment_then_retry_pass_never_exceeds_cap(db, service, retries, gateway, notifier, business, payment_method, monthly_plan, make_subscription, clock):
    make_subscription(
        business, monthly_plan, status=S.PAST_DUE,
        failed_payment_count=4, last_failure_at=clock() - timedelta(days=14),
    )
    gateway.charge_succeeds = False

    service.pay_outstanding(business.id)
    clock.advance(days=60)
    summary = retries.process_failed_payments()

    subscription = reload(db, business)
    assert subscription.status == S.CANCELED
    assert subscription.failed_payment_count == 5
    assert summary["processed"] == 0
    assert len(gateway.charges) == 1
