from sqlalchemy import Column, String, DateTime, Integer, Boolean, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from app.utils.clock import utcnow
import enum
from typing import Optional
from app.db.session import Base
from app.schemas.discount import PendingDiscount


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE_EXPIRED = "incomplete_expired"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})

# Statuses that block a new subscribe attempt for the same business
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})


class BusinessSubscription(Base):
    """
    One row per business. Canceled rows are kept for history and reused on
    re-subscribe. Mutated only through SubscriptionService transitions.
    """
    __tablename__ = "business_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, unique=True, index=True)
    plan_id = Column(String(64), ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(SQLEnum(SubscriptionStatus, native_enum=False, length=32), nullable=False, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True, index=True)
    auto_renewal = Column(Boolean, default=True, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    payment_method_id = Column(UUID(as_uuid=True), ForeignKey("stored_payment_methods.id"), nullable=True)
    failed_payment_count = Column(Integer, default=0, nullable=False)  # reset to 0 on any successful charge
    last_failure_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    reminder_sent_for = Column(DateTime, nullable=True)  # period end the last expiry reminder covered
    pending_discount_data = Column(JSON, nullable=True)  # serialized PendingDiscount
    version = Column(Integer, nullable=False)  # compare-and-set on every UPDATE
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("SubscriptionPlan")
    business = relationship("Business")
    payment_method = relationship("StoredPaymentMethod")

    __mapper_args__ = {"version_id_col": version}

    @property
    def pending_discount(self) -> Optional[PendingDiscount]:
        if not self.pending_discount_data:
            return None
        return PendingDiscount.model_validate(self.pending_discount_data)

    @pending_discount.setter
    def pending_discount(self, value: Optional[PendingDiscount]) -> None:
        # Always assign a fresh dict so the JSON column is flagged dirty
        self.pending_discount_data = value.model_dump(mode="json") if value else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
