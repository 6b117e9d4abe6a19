#!/usr/bin/env python3
"""Seed script to create the subscription plan catalog"""
import sys
import os
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from sqlalchemy.orm import Session
from app.db.session import SessionLocal
from app.models.plan import SubscriptionPlan, BillingInterval

PLANS = [
    ("plan_basic_tier1", "basic_tier1", "Basic Plan - Tier 1", "949.00", {"pricing_tier": "TIER_1", "sms_quota": 1000}),
    ("plan_premium_tier1", "premium_tier1", "Premium Plan - Tier 1", "1499.00", {"pricing_tier": "TIER_1", "sms_quota": 3000}),
    ("plan_basic_tier2", "basic_tier2", "Basic Plan - Tier 2", "799.00", {"pricing_tier": "TIER_2", "sms_quota": 1000}),
    ("plan_premium_tier2", "premium_tier2", "Premium Plan - Tier 2", "1299.00", {"pricing_tier": "TIER_2", "sms_quota": 3000}),
    ("plan_basic_tier3", "basic_tier3", "Basic Plan - Tier 3", "749.00", {"pricing_tier": "TIER_3", "sms_quota": 1000}),
    ("plan_premium_tier3", "premium_tier3", "Premium Plan - Tier 3", "1199.00", {"pricing_tier": "TIER_3", "sms_quota": 3000}),
]

TRIAL_DAYS = 7


def seed_plans():
    db: Session = SessionLocal()
    try:
        created = 0
        for plan_id, name, display_name, price, features in PLANS:
            if db.get(SubscriptionPlan, plan_id):
                print(f"Plan {plan_id} already exists")
                continue
            db.add(SubscriptionPlan(
                id=plan_id,
                name=name,
                display_name=display_name,
                price=Decimal(price),
                currency="TRY",
                billing_interval=BillingInterval.MONTHLY,
                trial_days=TRIAL_DAYS,
                features=features,
            ))
            created += 1
        db.commit()
        print(f"Created {created} plans")
    except Exception as e:
        db.rollback()
        print(f"Error seeding plans: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_plans()
