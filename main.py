# src/main.py
import logging

import stripe
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from auth.routes import router as auth_router
from subscription.routes import router as subscription_router
from payment.routes import router as payment_router
from webhook.routes import router as webhook_router
from admin.routes import router as admin_router
from billing.exceptions import PersistenceFailure, UpstreamFailure
from config import settings
from database import Base, engine
from scheduler.tasks import start_scheduler

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Subscription Billing Backend",
    description="Accounts, one-time payments and Stripe subscriptions",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(subscription_router)
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(admin_router)


@app.exception_handler(stripe.StripeError)
async def stripe_error_handler(request: Request, exc: stripe.StripeError):
    """Log provider failures in full, answer generically."""
    logger.error(
        f"Stripe error on {request.method} {request.url.path}: {exc.__class__.__name__} "
        f"code={getattr(exc, 'code', None)} request_id={getattr(exc, 'request_id', None)}: {exc}",
        exc_info=exc,
    )
    failure = UpstreamFailure()
    return JSONResponse(status_code=failure.status_code, content={"detail": failure.detail})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    failure = PersistenceFailure()
    return JSONResponse(status_code=failure.status_code, content={"detail": failure.detail})


@app.on_event("startup")
def startup_event():
    """Create tables and start reminder jobs."""
    Base.metadata.create_all(bind=engine)
    if settings.ENABLE_SCHEDULER:
        start_scheduler()


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Subscription billing backend is running"}
