"""
Audit logging for billing events
"""
from sqlalchemy.orm import Session
from app.models.audit_log import BillingAuditLog, AuditEventType
from typing import Optional
import json
import logging
import uuid

logger = logging.getLogger(__name__)


def log_billing_event(
    db: Session,
    event_type: AuditEventType,
    business_id: Optional[uuid.UUID] = None,
    subscription_id: Optional[uuid.UUID] = None,
    payment_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
):
    """
    Log a billing event to the audit log.

    The row is written in a savepoint and flushed, not committed: it becomes
    durable with the caller's next commit. A failure here never fails the
    billing operation that triggered it.

    Args:
        db: Database session
        event_type: Type of billing event
        business_id: Business the event belongs to (if known)
        subscription_id: Subscription ID (if applicable)
        payment_id: Payment ledger row (if applicable)
        details: Additional details as a dictionary (will be JSON-encoded)
    """
    try:
        with db.begin_nested():
            db.add(BillingAuditLog(
                event_type=event_type,
                business_id=business_id,
                subscription_id=subscription_id,
                payment_id=payment_id,
                details=json.dumps(details, default=str) if details else None,
            ))
    except Exception as e:
        logger.error("[AUDIT] Failed to log billing event %s: %s", event_type.value, e)
