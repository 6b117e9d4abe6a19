"""
Stored (tokenized) payment methods per business.

The first stored method becomes the default. Deleting the default promotes
the most recently added remaining method.
"""
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
import uuid

from app.core.errors import NotFound
from app.models.payment_method import StoredPaymentMethod
from app.models.subscription import BusinessSubscription
from app.schemas.payment import PaymentMethodCreate
from app.services.business_lookup import get_business

logger = logging.getLogger(__name__)


def get_default_payment_method(db: Session, business_id: uuid.UUID) -> Optional[StoredPaymentMethod]:
    return db.query(StoredPaymentMethod).filter(
        StoredPaymentMethod.business_id == business_id,
        StoredPaymentMethod.is_default.is_(True),
    ).first()


class PaymentMethodService:
    def __init__(self, db: Session):
        self.db = db

    def list(self, business_id: uuid.UUID) -> List[StoredPaymentMethod]:
        return self.db.query(StoredPaymentMethod).filter(
            StoredPaymentMethod.business_id == business_id
        ).order_by(StoredPaymentMethod.created_at.desc()).all()

    def get(self, business_id: uuid.UUID, payment_method_id: uuid.UUID) -> StoredPaymentMethod:
        method = self.db.query(StoredPaymentMethod).filter(
            StoredPaymentMethod.id == payment_method_id,
            StoredPaymentMethod.business_id == business_id,
        ).first()
        if not method:
            raise NotFound("Payment method not found")
        return method

    def store(self, business_id: uuid.UUID, data: PaymentMethodCreate) -> StoredPaymentMethod:
        get_business(self.db, business_id)
        has_default = get_default_payment_method(self.db, business_id) is not None
        method = StoredPaymentMethod(
            business_id=business_id,
            provider_token=data.provider_token,
            cardholder_name=data.cardholder_name,
            last_four=data.last_four,
            brand=data.brand,
            expiry_month=data.expiry_month,
            expiry_year=data.expiry_year,
            is_default=False,
        )
        self.db.add(method)
        self.db.flush()
        if data.make_default or not has_default:
            self._make_default(business_id, method)
        self.db.commit()
        self.db.refresh(method)
        logger.info("[PAYMENT_METHOD] Stored card ****%s for business %s", method.last_four, business_id)
        return method

    def set_default(self, business_id: uuid.UUID, payment_method_id: uuid.UUID) -> StoredPaymentMethod:
        method = self.get(business_id, payment_method_id)
        self._make_default(business_id, method)
        self.db.commit()
        self.db.refresh(method)
        return method

    def delete(self, business_id: uuid.UUID, payment_method_id: uuid.UUID) -> None:
        method = self.get(business_id, payment_method_id)
        was_default = method.is_default

        # Detach from the subscription; ledger rows keep the bare id
        self.db.query(BusinessSubscription).filter(
            BusinessSubscription.payment_method_id == method.id
        ).update({BusinessSubscription.payment_method_id: None}, synchronize_session="fetch")

        self.db.delete(method)
        self.db.flush()

        if was_default:
            replacement = self.db.query(StoredPaymentMethod).filter(
                StoredPaymentMethod.business_id == business_id
            ).order_by(StoredPaymentMethod.created_at.desc()).first()
            if replacement:
                replacement.is_default = True
        self.db.commit()

    def _make_default(self, business_id: uuid.UUID, method: StoredPaymentMethod) -> None:
        self.db.query(StoredPaymentMethod).filter(
            StoredPaymentMethod.business_id == business_id,
            StoredPaymentMethod.id != method.id,
        ).update({StoredPaymentMethod.is_default: False}, synchronize_session="fetch")
        method.is_default = True
