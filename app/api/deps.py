from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session
from typing import Optional
import secrets
import threading

from app.core.config import settings
from app.db.session import SessionLocal, get_db
from app.services.discount_engine import DiscountEngine
from app.services.notifications import NotificationSender, build_notification_sender
from app.services.payment_gateway import PaymentGateway, build_payment_gateway
from app.services.payment_ledger import PaymentLedger
from app.services.payment_methods import PaymentMethodService
from app.services.scheduler import BillingScheduler, PeriodicTicker
from app.services.subscription_state import SubscriptionService

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)

# Process-wide collaborators, built on first use
_singletons = {}
_singletons_lock = threading.Lock()


def _singleton(name: str, factory):
    with _singletons_lock:
        if name not in _singletons:
            _singletons[name] = factory()
        return _singletons[name]


def require_admin_key(api_key: Optional[str] = Security(admin_key_header)) -> None:
    """
    Dependency guarding admin endpoints. The X-Admin-Key header is compared
    in constant time against ADMIN_API_KEY; without a configured key the
    admin API is disabled.
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled",
        )
    if not api_key or not secrets.compare_digest(api_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )


def get_payment_gateway() -> PaymentGateway:
    return _singleton("gateway", build_payment_gateway)


def get_notification_sender() -> NotificationSender:
    return _singleton("notifier", build_notification_sender)


def get_billing_scheduler() -> BillingScheduler:
    return _singleton(
        "scheduler",
        lambda: BillingScheduler(SessionLocal, get_payment_gateway(), get_notification_sender()),
    )


def get_scheduler_ticker() -> PeriodicTicker:
    return _singleton(
        "ticker",
        lambda: PeriodicTicker(
            get_billing_scheduler().run_once,
            interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
            jitter_seconds=settings.SCHEDULER_JITTER_SECONDS,
        ),
    )


def get_subscription_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, gateway)


def get_discount_engine(db: Session = Depends(get_db)) -> DiscountEngine:
    return DiscountEngine(db, pending_ttl_hours=settings.PENDING_DISCOUNT_TTL_HOURS)


def get_payment_ledger(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentLedger:
    return PaymentLedger(db, gateway)


def get_payment_method_service(db: Session = Depends(get_db)) -> PaymentMethodService:
    return PaymentMethodService(db)
