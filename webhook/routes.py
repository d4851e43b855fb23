# src/webhook/routes.py
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from billing.dependencies import get_billing_provider, get_plan_catalog
from billing.plans import PlanCatalog
from billing.provider import StripeBillingProvider
from config import settings
from database import get_db
from webhook.services import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_reconciler(
    provider: StripeBillingProvider = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_plan_catalog)
) -> WebhookReconciler:
    return WebhookReconciler(provider, catalog, settings.STRIPE_WEBHOOK_SECRET)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    """Receive a Stripe event. The body is read raw so the signature can be checked."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    # SignatureInvalid propagates as a 400 before any handler runs
    event = reconciler.verify(payload, signature)

    try:
        await run_in_threadpool(reconciler.process, event, db)
    except Exception as e:
        # a 5xx makes Stripe redeliver the event
        return JSONResponse(
            status_code=500,
            content={"error": "Webhook handler failed", "message": str(e)},
        )
    return {"received": True}
