from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey, JSON, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
from app.utils.clock import utcnow
import enum
from app.db.session import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class ChargeTrigger(str, enum.Enum):
    INITIAL = "initial"
    TRIAL_CONVERSION = "trial_conversion"
    RENEWAL = "renewal"
    RETRY = "retry"


class Payment(Base):
    """
    Append-only ledger row. Written as PENDING before the gateway is called;
    only status/outcome columns change afterwards.
    """
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("business_subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # amount actually charged
    original_amount = Column(Numeric(12, 2), nullable=True)  # list price before discount
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(PaymentStatus, native_enum=False, length=16), nullable=False, index=True)
    trigger = Column(SQLEnum(ChargeTrigger, native_enum=False, length=32), nullable=False)
    provider = Column(String(32), nullable=False)
    provider_payment_id = Column(String, nullable=True, index=True)
    conversation_id = Column(String, nullable=False, unique=True)  # gateway idempotency key
    payment_method_id = Column(UUID(as_uuid=True), nullable=True)
    discount_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)
    failure_metadata = Column(JSON, nullable=True)
    refunded_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
