from sqlalchemy import Column, String, DateTime, Integer, Numeric, Boolean, JSON, Enum as SQLEnum
from app.utils.clock import utcnow
import enum
from app.db.session import Base


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionPlan(Base):
    """
    Immutable catalog entry. New pricing means a new plan id; rows referenced
    by subscriptions are never edited.
    """
    __tablename__ = "subscription_plans"

    id = Column(String(64), primary_key=True)  # e.g. plan_starter_monthly
    name = Column(String(64), nullable=False, index=True)
    display_name = Column(String(128), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="TRY", nullable=False)
    billing_interval = Column(SQLEnum(BillingInterval, native_enum=False, length=16), nullable=False)
    trial_days = Column(Integer, default=0, nullable=False)  # 0 = no trial
    features = Column(JSON, nullable=True)  # feature limits: max staff, sms quota, ...
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
