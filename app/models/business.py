from sqlalchemy import Column, String, DateTime
from sqlalchemy.dialects.postgresql import UUID
import uuid
from app.utils.clock import utcnow
from app.db.session import Base


class Business(Base):
    """
    Read-only view of the tenant business (owned by the business profile
    service). Billing only needs owner contact details.
    """
    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)  # owning user; per-user discount caps key on it
    owner_first_name = Column(String, nullable=True)
    owner_last_name = Column(String, nullable=True)
    owner_phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    city = Column(String, nullable=True)
    country = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
