from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from app.utils.clock import utcnow
from app.db.session import Base


class StoredPaymentMethod(Base):
    """Tokenized card reference. Raw card data never reaches this table."""
    __tablename__ = "stored_payment_methods"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    provider_token = Column(String, nullable=False)  # gateway payment method id
    cardholder_name = Column(String, nullable=True)
    last_four = Column(String(4), nullable=False)
    brand = Column(String(32), nullable=True)
    expiry_month = Column(String(2), nullable=False)
    expiry_year = Column(String(4), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
