from app.models.plan import SubscriptionPlan, BillingInterval
from app.models.business import Business
from app.models.payment_method import StoredPaymentMethod
from app.models.subscription import BusinessSubscription, SubscriptionStatus
from app.models.payment import Payment, PaymentStatus, ChargeTrigger
from app.models.discount_code import DiscountCode, DiscountCodeUsage
from app.models.audit_log import BillingAuditLog, AuditEventType

__all__ = [
    "SubscriptionPlan", "BillingInterval", "Business", "StoredPaymentMethod",
    "BusinessSubscription", "SubscriptionStatus",
    "Payment", "PaymentStatus", "ChargeTrigger",
    "DiscountCode", "DiscountCodeUsage",
    "BillingAuditLog", "AuditEventType",
]
