"""
Admin API endpoints for the billing scheduler and retry monitoring.
Only accessible with the X-Admin-Key header.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_billing_scheduler, get_scheduler_ticker, require_admin_key
from app.db.session import get_db
from app.schemas.payment import RetryStatistics
from app.services.payment_retry import retry_statistics
from app.services.scheduler import BillingScheduler, PeriodicTicker

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/scheduler/run")
def run_scheduler_pass(scheduler: BillingScheduler = Depends(get_billing_scheduler)):
    """Run one billing pass synchronously and return its summary"""
    return scheduler.run_once()


@router.get("/scheduler/status")
def scheduler_status(
    scheduler: BillingScheduler = Depends(get_billing_scheduler),
    ticker: PeriodicTicker = Depends(get_scheduler_ticker),
):
    return {"scheduler": scheduler.status(), "ticker": ticker.status()}


@router.get("/retry-statistics", response_model=RetryStatistics)
def get_retry_statistics(
    db: Session = Depends(get_db),
    scheduler: BillingScheduler = Depends(get_billing_scheduler),
):
    return retry_statistics(db, scheduler.policy)
