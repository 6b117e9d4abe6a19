from sqlalchemy import Column, String, DateTime, Integer, Numeric, Boolean, ForeignKey, JSON, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from app.utils.clock import utcnow
from app.db.session import Base
from app.schemas.discount import DiscountType


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)  # stored upper-case
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    discount_type = Column(SQLEnum(DiscountType, native_enum=False, length=16), nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    valid_from = Column(DateTime, default=utcnow, nullable=False)
    valid_until = Column(DateTime, nullable=True)
    max_usages = Column(Integer, nullable=True)  # global cap; null = unlimited
    current_usages = Column(Integer, default=0, nullable=False)
    per_user_limit = Column(Integer, default=1, nullable=False)
    min_purchase_amount = Column(Numeric(12, 2), nullable=True)
    applicable_plans = Column(JSON, nullable=False, default=list)  # empty = all plans
    is_recurring = Column(Boolean, default=False, nullable=False)
    max_recurring_uses = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    usages = relationship("DiscountCodeUsage", back_populates="discount_code")


class DiscountCodeUsage(Base):
    """
    Durable proof that a code was consumed by a payment. ``sequence`` is 1 for
    the redemption that counts toward the usage caps and 2.. for further
    applications of a recurring code to the same subscription.
    """
    __tablename__ = "discount_code_usages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    discount_code_id = Column(UUID(as_uuid=True), ForeignKey("discount_codes.id"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("business_subscriptions.id"), nullable=False, index=True)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True, index=True)
    sequence = Column(Integer, default=1, nullable=False)
    original_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    final_amount = Column(Numeric(12, 2), nullable=False)
    trigger = Column(String(32), nullable=True)
    used_at = Column(DateTime, default=utcnow, nullable=False)

    discount_code = relationship("DiscountCode", back_populates="usages")
