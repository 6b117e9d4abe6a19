from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text
from sqlalchemy.dialects.postgresql import UUID
import uuid
from app.utils.clock import utcnow
import enum
from app.db.session import Base


class AuditEventType(str, enum.Enum):
    """Billing events kept for audit and manual reconciliation"""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_STATUS_CHANGED = "subscription_status_changed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_CANCELED = "payment_canceled"
    DISCOUNT_APPLIED = "discount_applied"
    DISCOUNT_RECONCILIATION_REQUIRED = "discount_reconciliation_required"
    PAYMENT_ESCALATED = "payment_escalated"


class BillingAuditLog(Base):
    __tablename__ = "billing_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(SQLEnum(AuditEventType, native_enum=False, length=48), nullable=False, index=True)
    business_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    subscription_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    payment_id = Column(UUID(as_uuid=True), nullable=True)
    details = Column(Text, nullable=True)  # JSON string with additional details
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
