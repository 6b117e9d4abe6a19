"""Shared fixtures: a throwaway SQLite database per test, a scripted gateway,
a recording notification sender and a controllable clock."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.db.session import Base
from app.models.business import Business
from app.models.discount_code import DiscountCode
from app.models.payment import ChargeTrigger, Payment, PaymentStatus
from app.models.payment_method import StoredPaymentMethod
from app.models.plan import BillingInterval, SubscriptionPlan
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.schemas.discount import DiscountType
from app.services.notifications import NotificationSender
from app.services.payment_gateway import GatewayResult, GatewayStatus, PaymentGateway
from app.services.retry_policy import RetryPolicy
from app.services.scheduler import BillingScheduler
from app.services.subscription_state import SubscriptionService
from app.utils.clock import add_months
from app.utils.ids import generate_conversation_id


class Clock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeGateway(PaymentGateway):
    """Gateway double. Charges succeed unless scripted otherwise."""

    provider = "fake"

    def __init__(self):
        self.charges = []
        self.refunds = []
        self.cancels = []
        self.charge_succeeds = True
        self.refund_succeeds = True
        self.on_charge = None
        self._scripted = deque()

    def script(self, *outcomes):
        """Queue outcomes for the next charges: True, False, a GatewayResult or an exception."""
        self._scripted.extend(outcomes)

    def charge(self, request):
        self.charges.append(request)
        if self.on_charge:
            self.on_charge(request)
        outcome = self._scripted.popleft() if self._scripted else self.charge_succeeds
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, GatewayResult):
            return outcome
        if outcome:
            return GatewayResult(
                status=GatewayStatus.SUCCESS,
                provider_payment_id=f"pi_fake_{len(self.charges)}",
                provider_status="succeeded",
            )
        return GatewayResult.failure("Your card was declined.", code="card_declined")

    def refund(self, provider_payment_id, amount, currency, conversation_id, reason=None):
        self.refunds.append((provider_payment_id, amount))
        if self.refund_succeeds:
            return GatewayResult(status=GatewayStatus.SUCCESS, provider_payment_id=f"re_fake_{len(self.refunds)}")
        return GatewayResult.failure("Refund rejected", code="refund_failed")

    def cancel(self, provider_payment_id, conversation_id):
        self.cancels.append(provider_payment_id)
        return GatewayResult(status=GatewayStatus.SUCCESS, provider_payment_id=provider_payment_id, provider_status="canceled")

    def retrieve(self, provider_payment_id):
        return GatewayResult(status=GatewayStatus.SUCCESS, provider_payment_id=provider_payment_id, provider_status="succeeded")


class RecordingNotifier(NotificationSender):
    def __init__(self):
        self.sent = []

    def of(self, kind):
        return [payload for sent_kind, payload in self.sent if sent_kind == kind]

    def send_renewal_confirmation(self, contact, plan_name, period_end):
        self.sent.append(("renewal_confirmation", {"business_id": contact.business_id, "period_end": period_end}))
        return True

    def send_payment_retry_failure(self, contact, attempt, max_retries, next_retry_date):
        self.sent.append(("retry_failure", {
            "business_id": contact.business_id,
            "attempt": attempt,
            "max_retries": max_retries,
            "next_retry_date": next_retry_date,
        }))
        return True

    def send_payment_escalation(self, contact, plan_name, failed_count, period_end):
        self.sent.append(("escalation", {"business_id": contact.business_id, "failed_count": failed_count}))
        return True

    def send_subscription_cancellation(self, contact, plan_name, failed_count):
        self.sent.append(("cancellation", {"business_id": contact.business_id, "failed_count": failed_count}))
        return True

    def send_renewal_reminder(self, contact, plan_name, period_end):
        self.sent.append(("renewal_reminder", {"business_id": contact.business_id, "period_end": period_end}))
        return True

    def send_trial_ending(self, contact, plan_name, trial_end, amount):
        self.sent.append(("trial_ending", {"business_id": contact.business_id, "trial_end": trial_end, "amount": amount}))
        return True


@pytest.fixture
def clock():
    return Clock(datetime(2026, 1, 15, 9, 0, 0))


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=5, schedule_days=(0, 1, 3, 7, 14), escalation_threshold=3)


@pytest.fixture
def service(db, gateway, clock, policy):
    return SubscriptionService(db, gateway, now=clock, policy=policy, pending_ttl_hours=None)


@pytest.fixture
def scheduler(session_factory, gateway, notifier, clock, policy):
    return BillingScheduler(
        session_factory, gateway, notifier,
        policy=policy, now=clock, max_workers=1,
        renewal_lookahead_hours=24, incomplete_expiry_hours=23,
    )


@pytest.fixture
def trial_plan(db):
    plan = SubscriptionPlan(
        id="plan_basic_tier1",
        name="basic_tier1",
        display_name="Basic Plan - Tier 1",
        price=Decimal("949.00"),
        currency="TRY",
        billing_interval=BillingInterval.MONTHLY,
        trial_days=7,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def monthly_plan(db):
    plan = SubscriptionPlan(
        id="plan_premium_tier1",
        name="premium_tier1",
        display_name="Premium Plan - Tier 1",
        price=Decimal("1499.00"),
        currency="TRY",
        billing_interval=BillingInterval.MONTHLY,
        trial_days=0,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def make_business(db):
    def _make(name="Salon Ayşe", email="ayse@example.com"):
        business = Business(
            name=name,
            owner_id=uuid.uuid4(),
            owner_first_name="Ayşe",
            owner_last_name="Yılmaz",
            email=email,
            phone="+905551112233",
            city="Istanbul",
            country="Turkey",
        )
        db.add(business)
        db.commit()
        return business
    return _make


@pytest.fixture
def business(make_business):
    return make_business()


@pytest.fixture
def make_payment_method(db, clock):
    def _make(business, token="pm_card_visa", last_four="4242", is_default=True, created_at=None):
        method = StoredPaymentMethod(
            business_id=business.id,
            provider_token=token,
            cardholder_name="Ayse Yilmaz",
            last_four=last_four,
            brand="visa",
            expiry_month="12",
            expiry_year="2030",
            is_default=is_default,
            created_at=created_at or clock(),
        )
        db.add(method)
        db.commit()
        return method
    return _make


@pytest.fixture
def payment_method(business, make_payment_method):
    return make_payment_method(business)


@pytest.fixture
def make_subscription(db, clock):
    def _make(business, plan, status=SubscriptionStatus.ACTIVE, **fields):
        now = clock()
        values = dict(
            business_id=business.id,
            plan_id=plan.id,
            status=status,
            current_period_start=now,
            current_period_end=add_months(now, 1),
            next_billing_date=add_months(now, 1),
            auto_renewal=True,
            failed_payment_count=0,
            created_at=now,
            updated_at=now,
        )
        values.update(fields)
        subscription = BusinessSubscription(**values)
        db.add(subscription)
        db.commit()
        return subscription
    return _make


@pytest.fixture
def make_payment(db, clock):
    def _make(subscription, amount="949.00", status=PaymentStatus.SUCCEEDED, **fields):
        values = dict(
            subscription_id=subscription.id,
            amount=Decimal(amount),
            original_amount=Decimal(amount),
            currency="TRY",
            status=status,
            trigger=ChargeTrigger.RENEWAL,
            provider="fake",
            provider_payment_id="pi_existing",
            conversation_id=generate_conversation_id(),
            created_at=clock(),
        )
        values.update(fields)
        payment = Payment(**values)
        db.add(payment)
        db.commit()
        return payment
    return _make


@pytest.fixture
def make_discount_code(db, clock):
    def _make(code="WELCOME20", discount_type=DiscountType.PERCENTAGE, value="20", **fields):
        values = dict(
            code=code,
            name=code,
            discount_type=discount_type,
            discount_value=Decimal(value),
            valid_from=clock() - timedelta(days=1),
            applicable_plans=[],
        )
        values.update(fields)
        discount_code = DiscountCode(**values)
        db.add(discount_code)
        db.commit()
        return discount_code
    return _make
