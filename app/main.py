from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import admin, discount_codes, payment_methods, payments, plans, subscriptions
from app.api.deps import get_scheduler_ticker
from app.core.config import settings
from app.core.errors import BillingError
from app.core.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    ticker = None
    if settings.SCHEDULER_ENABLED:
        ticker = get_scheduler_ticker()
        ticker.start()
    yield
    if ticker is not None:
        ticker.stop()


app = FastAPI(title="Subscription Billing API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map billing errors to their HTTP status with a stable reason code"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": exc.reason},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Ensure CORS headers are included even on unhandled exceptions"""
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )

    # The 500 response bypasses CORSMiddleware, add the headers manually
    origin = request.headers.get("origin")
    if origin and origin in settings.get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"

    return response


# Include routers
app.include_router(plans.router, prefix="/plans", tags=["plans"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
app.include_router(discount_codes.router, prefix="/discount-codes", tags=["discount-codes"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(payment_methods.router, prefix="/businesses", tags=["payment-methods"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/")
async def root():
    return {"message": "Subscription Billing API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
