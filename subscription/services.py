# src/subscription/services.py
import logging
import time
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from auth.models import User
from billing.exceptions import ConflictFailure, NotFoundFailure, PersistenceFailure
from billing.plans import PlanCatalog
from billing.provider import (
    StripeBillingProvider,
    first_item,
    from_timestamp,
    invoice_client_secret,
    period_bounds,
    product_id_of,
)
from database import commit_or_raise
from subscription.models import Subscription
from subscription.repository import SubscriptionRepository
from subscription.schemas import SubscriptionResponse

logger = logging.getLogger(__name__)


def now_revision() -> int:
    return int(time.time())


def subscription_values(
        stripe_subscription: Dict,
        catalog: PlanCatalog,
        prior: Optional[Subscription] = None
) -> Dict:
    """Column values for a Subscription, taken from a Stripe subscription object.

    Plan name and type are resolved through the catalog on every call. On a
    catalog miss the values already stored in ``prior`` are kept; without a
    prior row the miss is a conflict.
    """
    item = first_item(stripe_subscription)
    price = item.get("price") or {}
    price_id = price.get("id")

    plan = catalog.get(price_id)
    if plan is not None:
        plan_name, plan_type = plan.name, plan.plan_type
    elif prior is not None:
        logger.warning(
            f"Price {price_id} of subscription {stripe_subscription.get('id')} is not in the plan catalog; "
            f"keeping plan {prior.plan_name!r}"
        )
        plan_name, plan_type = prior.plan_name, prior.plan_type
    else:
        raise ConflictFailure(f"Invalid price ID: {price_id}")

    period_start, period_end = period_bounds(stripe_subscription)
    recurring = price.get("recurring") or {}
    return {
        "stripe_price_id": price_id,
        "stripe_product_id": product_id_of(price) or (prior.stripe_product_id if prior else None),
        "status": stripe_subscription["status"],
        "plan_name": plan_name,
        "plan_type": plan_type,
        "billing_interval": recurring.get("interval"),
        "amount": price.get("unit_amount") or 0,
        "currency": stripe_subscription.get("currency") or price.get("currency") or "usd",
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
        "canceled_at": from_timestamp(stripe_subscription.get("canceled_at")),
        "ended_at": from_timestamp(stripe_subscription.get("ended_at")),
        "trial_start": from_timestamp(stripe_subscription.get("trial_start")),
        "trial_end": from_timestamp(stripe_subscription.get("trial_end")),
    }


class SubscriptionService:
    """Synchronous subscription operations.

    Each mutation calls Stripe first and only then writes locally, so the
    local record never claims a change Stripe has not accepted. Every
    mutation ends by re-syncing the user's billing snapshot.
    """

    def __init__(self, provider: StripeBillingProvider, catalog: PlanCatalog):
        self.provider = provider
        self.catalog = catalog

    @staticmethod
    def _get_user(user_id: int, db: Session) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundFailure("User not found")
        return user

    @staticmethod
    def _require_active(user_id: int, db: Session, detail: str = "No active subscription found") -> Subscription:
        subscription = SubscriptionRepository.find_active_by_user_id(db, user_id)
        if not subscription:
            raise NotFoundFailure(detail)
        return subscription

    @staticmethod
    def _api_revision(subscription: Subscription) -> int:
        # Stripe has just accepted this change, so it is at least as new as anything stored
        return max(now_revision(), subscription.provider_synced_at or 0)

    def _ensure_customer(self, user: User, payment_method_id: str, db: Session) -> str:
        customer_id = user.stripe_customer_id
        if not customer_id:
            customer = self.provider.create_or_get_customer(
                user.email, user.name, user.id, idempotency_key=f"customer:{user.id}"
            )
            customer_id = customer["id"]
            user.stripe_customer_id = customer_id
            commit_or_raise(db, f"link user {user.id} to customer {customer_id}")

        self.provider.attach_payment_method(payment_method_id, customer_id)
        user.default_payment_method_id = payment_method_id
        commit_or_raise(db, f"store default payment method for user {user.id}")
        return customer_id

    def list_plans(self) -> List[Dict]:
        return self.catalog.list_plans(self.provider.list_prices())

    def create_subscription(
            self,
            user_id: int,
            price_id: str,
            payment_method_id: str,
            db: Session,
            trial_days: Optional[int] = None
    ) -> Tuple[SubscriptionResponse, Optional[str]]:
        user = self._get_user(user_id, db)
        if SubscriptionRepository.find_active_by_user_id(db, user_id):
            raise ConflictFailure("User already has an active subscription")
        self.catalog.require(price_id)

        customer_id = self._ensure_customer(user, payment_method_id, db)

        attempt = SubscriptionRepository.count_by_user_id(db, user_id)
        stripe_subscription = self.provider.create_subscription(
            customer_id, price_id, trial_days, idempotency_key=f"subscription:{user_id}:{attempt}"
        )

        subscription = SubscriptionRepository.create(
            db,
            user_id=user_id,
            stripe_subscription_id=stripe_subscription["id"],
            stripe_customer_id=customer_id,
            extra_metadata=stripe_subscription.get("metadata") or None,
            provider_synced_at=now_revision(),
            **subscription_values(stripe_subscription, self.catalog),
        )
        logger.info(f"Created subscription {subscription.stripe_subscription_id} ({subscription.status}) for user {user_id}")

        SubscriptionRepository.sync_user_subscription(db, user_id, subscription)
        return SubscriptionResponse.model_validate(subscription), invoice_client_secret(stripe_subscription)

    def get_user_subscription(self, user_id: int, db: Session) -> Optional[SubscriptionResponse]:
        subscription = SubscriptionRepository.find_active_by_user_id(db, user_id)
        return SubscriptionResponse.model_validate(subscription) if subscription else None

    def get_subscription_history(self, user_id: int, db: Session) -> List[SubscriptionResponse]:
        return [SubscriptionResponse.model_validate(s) for s in SubscriptionRepository.find_by_user_id(db, user_id)]

    def cancel_subscription(self, user_id: int, db: Session, immediate: bool = False) -> SubscriptionResponse:
        subscription = self._require_active(user_id, db)
        stripe_id = subscription.stripe_subscription_id
        revision = self._api_revision(subscription)

        stripe_subscription = self.provider.cancel_subscription(stripe_id, at_period_end=not immediate)

        updated = SubscriptionRepository.mark_as_canceled(
            db,
            stripe_id,
            cancel_at_period_end=bool(stripe_subscription.get("cancel_at_period_end")),
            canceled_at=from_timestamp(stripe_subscription.get("canceled_at")),
            revision=revision,
            ended_at=from_timestamp(stripe_subscription.get("ended_at")),
        )
        if updated is None:
            raise PersistenceFailure("Failed to update subscription")
        logger.info(f"Canceled subscription {stripe_id} for user {user_id} (immediate={immediate})")

        SubscriptionRepository.sync_user_subscription(db, user_id, updated)
        return SubscriptionResponse.model_validate(updated)

    def resume_subscription(self, user_id: int, db: Session) -> SubscriptionResponse:
        subscription = self._require_active(user_id, db, detail="No subscription found")
        if not subscription.cancel_at_period_end:
            raise ConflictFailure("Subscription is not scheduled for cancellation")
        stripe_id = subscription.stripe_subscription_id
        revision = self._api_revision(subscription)

        stripe_subscription = self.provider.resume_subscription(stripe_id)

        values = {
            "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
            "canceled_at": from_timestamp(stripe_subscription.get("canceled_at")),
        }
        updated = SubscriptionRepository.apply_snapshot(db, stripe_id, values, revision)
        if updated is None:
            raise PersistenceFailure("Failed to update subscription")
        logger.info(f"Resumed subscription {stripe_id} for user {user_id}")

        SubscriptionRepository.sync_user_subscription(db, user_id, updated)
        return SubscriptionResponse.model_validate(updated)

    def change_subscription_plan(self, user_id: int, new_price_id: str, db: Session) -> SubscriptionResponse:
        subscription = self._require_active(user_id, db)
        self.catalog.require(new_price_id)
        stripe_id = subscription.stripe_subscription_id
        revision = self._api_revision(subscription)

        stripe_subscription = self.provider.update_subscription(stripe_id, new_price_id, "always_invoice")

        values = subscription_values(stripe_subscription, self.catalog, prior=subscription)
        updated = SubscriptionRepository.apply_snapshot(db, stripe_id, values, revision)
        if updated is None:
            raise PersistenceFailure("Failed to update subscription")
        logger.info(f"Changed subscription {stripe_id} of user {user_id} to price {new_price_id}")

        SubscriptionRepository.sync_user_subscription(db, user_id, updated)
        return SubscriptionResponse.model_validate(updated)

    def create_portal_session(self, user_id: int, return_url: str, db: Session) -> str:
        user = self._get_user(user_id, db)
        if not user.stripe_customer_id:
            raise NotFoundFailure("Customer not found")
        return self.provider.create_portal_session(user.stripe_customer_id, return_url)["url"]
