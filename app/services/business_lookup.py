"""
Read-only access to business owner contact details, used for per-user
discount caps, gateway buyer info and notifications.
"""
from dataclasses import dataclass
from typing import Optional
from sqlalchemy.orm import Session
import uuid

from app.core.errors import NotFound
from app.models.business import Business


@dataclass
class BusinessContact:
    business_id: uuid.UUID
    business_name: str
    owner_id: uuid.UUID
    owner_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


def get_business(db: Session, business_id: uuid.UUID) -> Business:
    business = db.get(Business, business_id)
    if not business:
        raise NotFound("Business not found")
    return business


def get_business_contact(db: Session, business_id: uuid.UUID) -> BusinessContact:
    business = get_business(db, business_id)
    owner_name = " ".join(
        part for part in (business.owner_first_name, business.owner_last_name) if part
    ) or business.name
    return BusinessContact(
        business_id=business.id,
        business_name=business.name,
        owner_id=business.owner_id,
        owner_name=owner_name,
        email=business.email,
        phone=business.owner_phone or business.phone,
        city=business.city,
        country=business.country,
    )
