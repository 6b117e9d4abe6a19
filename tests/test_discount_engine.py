"""Discount code validation, calculation and consumption"""
from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.errors import InvalidAmount, InvalidDiscountCode, ValidationFailure
from app.models.discount_code import DiscountCodeUsage
from app.models.payment import ChargeTrigger
from app.schemas.discount import DiscountCodeCreate, DiscountType
from app.services.discount_engine import DiscountEngine, calculate_discount, normalize_code


@pytest.fixture
def discounts(db, clock):
    return DiscountEngine(db, now=clock)


def test_percentage_discount_on_plan_price():
    result = calculate_discount(DiscountType.PERCENTAGE, Decimal("20"), Decimal("949.00"))
    assert result.discount_amount == Decimal("189.80")
    assert result.final_amount == Decimal("759.20")


def test_percentage_over_100_is_clamped():
    result = calculate_discount(DiscountType.PERCENTAGE, Decimal("150"), Decimal("949.00"))
    assert result.discount_amount == Decimal("949.00")
    assert result.final_amount == Decimal("0.00")


def test_fixed_discount_never_exceeds_amount():
    result = calculate_discount(DiscountType.FIXED_AMOUNT, Decimal("1000"), Decimal("749.00"))
    assert result.discount_amount == Decimal("749.00")
    assert result.final_amount == Decimal("0.00")


def test_final_amount_is_exact_difference():
    cases = [
        (DiscountType.PERCENTAGE, "15", "1299.00"),
        (DiscountType.PERCENTAGE, "33.33", "799.99"),
        (DiscountType.FIXED_AMOUNT, "100", "949.00"),
        (DiscountType.FIXED_AMOUNT, "0.01", "0.00"),
    ]
    for discount_type, value, amount in cases:
        result = calculate_discount(discount_type, Decimal(value), Decimal(amount))
        assert result.final_amount == result.original_amount - result.discount_amount
        assert result.final_amount >= 0
        assert result.discount_amount <= result.original_amount


def test_normalize_code():
    assert normalize_code("  welcome20 ") == "WELCOME20"


def test_validate_valid_code(discounts, make_discount_code):
    make_discount_code()

    result = discounts.validate("welcome20", "plan_basic_tier1", Decimal("949.00"))

    assert result.is_valid
    assert result.discount.final_amount == Decimal("759.20")


def test_validate_unknown_code(discounts):
    result = discounts.validate("NOPE", "plan_basic_tier1", Decimal("949.00"))
    assert not result.is_valid
    assert result.reason == "not_found"


def test_validate_inactive_code(discounts, make_discount_code):
    make_discount_code(is_active=False)
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "inactive"


def test_validate_not_yet_valid(discounts, make_discount_code, clock):
    make_discount_code(valid_from=clock() + timedelta(days=2))
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "not_yet_valid"


def test_validate_expired(discounts, make_discount_code, clock):
    make_discount_code(valid_until=clock() - timedelta(minutes=1))
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "expired"


def test_validate_usage_limit(discounts, make_discount_code):
    make_discount_code(max_usages=10, current_usages=10)
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "usage_limit_reached"


def test_validate_plan_restriction(discounts, make_discount_code):
    make_discount_code(applicable_plans=["plan_premium_tier1"])
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "plan_not_applicable"
    assert discounts.validate("WELCOME20", "plan_premium_tier1", 1499).is_valid


def test_validate_minimum_purchase(discounts, make_discount_code):
    make_discount_code(min_purchase_amount=Decimal("1000.00"))
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "below_minimum_purchase"


def test_validate_checks_run_in_order(discounts, make_discount_code, clock):
    # Expired and over the usage cap: the first failing check wins
    make_discount_code(valid_until=clock() - timedelta(days=1), max_usages=1, current_usages=1)
    assert discounts.validate("WELCOME20", "plan_basic_tier1", 949).reason == "expired"


def test_validate_rejects_negative_amount(discounts, make_discount_code):
    make_discount_code()
    with pytest.raises(InvalidAmount):
        discounts.validate("WELCOME20", "plan_basic_tier1", Decimal("-1"))


def test_require_valid_raises_with_reason(discounts):
    with pytest.raises(InvalidDiscountCode) as exc:
        discounts.require_valid("MISSING", "plan_basic_tier1", 949)
    assert exc.value.reason == "not_found"


def test_apply_one_time_code(db, discounts, business, trial_plan, make_subscription, make_payment, make_discount_code):
    code = make_discount_code()
    subscription = make_subscription(business, trial_plan)
    subscription.pending_discount = discounts.build_pending(code)
    db.commit()
    payment = make_payment(subscription, amount="759.20")
    calculation = discounts.preview(subscription.pending_discount, Decimal("949.00"))

    usage = discounts.apply(subscription, payment, calculation, business.owner_id, ChargeTrigger.INITIAL)

    assert usage.sequence == 1
    assert usage.final_amount == Decimal("759.20")
    assert code.current_usages == 1
    assert subscription.pending_discount is None
    assert db.query(DiscountCodeUsage).count() == 1


def test_per_user_limit_after_redemption(db, discounts, business, trial_plan, make_subscription, make_payment, make_discount_code):
    code = make_discount_code()
    subscription = make_subscription(business, trial_plan)
    subscription.pending_discount = discounts.build_pending(code)
    db.commit()
    payment = make_payment(subscription, amount="759.20")
    discounts.apply(subscription, payment, discounts.preview(subscription.pending_discount, 949), business.owner_id, ChargeTrigger.INITIAL)

    result = discounts.validate("WELCOME20", trial_plan.id, 949, user_id=business.owner_id)

    assert result.reason == "user_limit_reached"


def test_apply_recurring_code_counts_one_redemption(db, discounts, business, monthly_plan, make_subscription, make_payment, make_discount_code):
    code = make_discount_code(code="LOYAL10", value="10", is_recurring=True, max_recurring_uses=3)
    subscription = make_subscription(business, monthly_plan)
    subscription.pending_discount = discounts.build_pending(code)
    db.commit()

    for expected_remaining in (2, 1):
        payment = make_payment(subscription, amount="1349.10")
        discounts.apply(
            subscription, payment,
            discounts.preview(subscription.pending_discount, Decimal("1499.00")),
            business.owner_id, ChargeTrigger.RENEWAL,
        )
        assert subscription.pending_discount.remaining_uses == expected_remaining

    assert code.current_usages == 1
    sequences = sorted(u.sequence for u in db.query(DiscountCodeUsage).all())
    assert sequences == [1, 2]


def test_apply_refuses_when_cap_reached_since_validation(db, discounts, business, trial_plan, make_subscription, make_payment, make_discount_code):
    code = make_discount_code(max_usages=1)
    subscription = make_subscription(business, trial_plan)
    subscription.pending_discount = discounts.build_pending(code)
    code.current_usages = 1
    db.commit()
    payment = make_payment(subscription, amount="759.20")

    with pytest.raises(InvalidDiscountCode) as exc:
        discounts.apply(subscription, payment, discounts.preview(subscription.pending_discount, 949), business.owner_id, ChargeTrigger.INITIAL)

    assert exc.value.reason == "usage_limit_reached"


def test_can_apply_respects_ttl(db, clock, make_discount_code):
    code = make_discount_code()
    engine = DiscountEngine(db, now=clock, pending_ttl_hours=24)
    pending = engine.build_pending(code)
    assert engine.can_apply(pending)

    clock.advance(hours=25)

    assert not engine.can_apply(pending)
    assert engine.preview(pending, 949) is None


def test_can_apply_without_uses_left(discounts, make_discount_code):
    pending = discounts.build_pending(make_discount_code())
    pending.remaining_uses = 0
    assert not discounts.can_apply(pending)
    assert not discounts.can_apply(None)


def test_create_code_generates_when_omitted(discounts):
    code = discounts.create_code(DiscountCodeCreate(discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("15")))
    assert code.code.startswith("SAVE")
    assert len(code.code) == 8
    assert code.is_active


def test_create_code_rejects_duplicates(discounts, make_discount_code):
    make_discount_code()
    with pytest.raises(ValidationFailure) as exc:
        discounts.create_code(DiscountCodeCreate(code="welcome20", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("5")))
    assert exc.value.reason == "duplicate_code"


def test_create_code_rejects_bad_values(discounts, clock):
    with pytest.raises(ValidationFailure):
        discounts.create_code(DiscountCodeCreate(code="BIG", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("120")))
    with pytest.raises(ValidationFailure):
        discounts.create_code(DiscountCodeCreate(
            code="WINDOW", discount_type=DiscountType.FIXED_AMOUNT, discount_value=Decimal("50"),
            valid_from=clock(), valid_until=clock() - timedelta(days=1),
        ))


def test_deactivate_expired_codes(db, discounts, make_discount_code, clock):
    make_discount_code(code="OLD", valid_until=clock() - timedelta(days=1))
    make_discount_code(code="CURRENT", valid_until=clock() + timedelta(days=1))

    assert discounts.deactivate_expired() == 1
    assert not discounts.find_by_code("OLD").is_active
    assert discounts.find_by_code("CURRENT").is_active


def test_statistics(db, discounts, make_discount_code):
    make_discount_code(code="A")
    make_discount_code(code="B", is_active=False)

    stats = discounts.statistics()

    assert stats.total_codes == 2
    assert stats.active_codes == 1
    assert stats.total_usages == 0
    assert stats.total_discount_granted == Decimal("0.00")
