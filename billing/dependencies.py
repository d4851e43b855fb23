# src/billing/dependencies.py
from functools import lru_cache

from billing.plans import PlanCatalog
from billing.provider import StripeBillingProvider
from config import settings


@lru_cache()
def get_plan_catalog() -> PlanCatalog:
    """Catalog built once from the configured price ids."""
    return PlanCatalog.from_settings(settings)


@lru_cache()
def get_billing_provider() -> StripeBillingProvider:
    return StripeBillingProvider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_TOLERANCE)
