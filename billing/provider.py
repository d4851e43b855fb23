# src/billing/provider.py
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from billing.exceptions import SignatureInvalid, UpstreamFailure

logger = logging.getLogger(__name__)


class StripeBillingProvider:
    """Thin wrapper over the Stripe API.

    Every method returns plain dictionaries so callers never depend on SDK
    object behaviour. Stripe errors are not caught here; the API boundary maps
    them to a generic failure.
    """

    def __init__(self, api_key: str, webhook_tolerance: int = 300):
        self.api_key = api_key
        self.webhook_tolerance = webhook_tolerance

    # Customers

    def create_or_get_customer(self, email: str, name: str, user_id, idempotency_key: Optional[str] = None) -> Dict:
        existing = stripe.Customer.list(email=email, limit=1, api_key=self.api_key)
        if existing.data:
            return _to_dict(existing.data[0])
        customer = stripe.Customer.create(
            email=email,
            name=name,
            metadata={"user_id": str(user_id)},
            idempotency_key=idempotency_key,
            api_key=self.api_key,
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return _to_dict(customer)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        stripe.PaymentMethod.attach(payment_method_id, customer=customer_id, api_key=self.api_key)
        stripe.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
            api_key=self.api_key,
        )

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict:
        session = stripe.billing_portal.Session.create(
            customer=customer_id, return_url=return_url, api_key=self.api_key
        )
        return _to_dict(session)

    # Subscriptions

    def create_subscription(self, customer_id: str, price_id: str, trial_days: Optional[int] = None,
                            idempotency_key: Optional[str] = None) -> Dict:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_settings": {
                "payment_method_types": ["card"],
                "save_default_payment_method": "on_subscription",
            },
            "expand": ["latest_invoice.confirmation_secret", "items.data.price.product"],
        }
        if trial_days and trial_days > 0:
            params["trial_period_days"] = trial_days
        subscription = stripe.Subscription.create(
            idempotency_key=idempotency_key, api_key=self.api_key, **params
        )
        return _to_dict(subscription)

    def get_subscription(self, subscription_id: str) -> Dict:
        subscription = stripe.Subscription.retrieve(
            subscription_id, expand=["items.data.price.product"], api_key=self.api_key
        )
        return _to_dict(subscription)

    def update_subscription(self, subscription_id: str, new_price_id: str,
                            proration_behavior: str = "always_invoice") -> Dict:
        current = self.get_subscription(subscription_id)
        item_id = first_item(current)["id"]
        subscription = stripe.Subscription.modify(
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior=proration_behavior,
            expand=["items.data.price.product"],
            api_key=self.api_key,
        )
        return _to_dict(subscription)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> Dict:
        if at_period_end:
            subscription = stripe.Subscription.modify(
                subscription_id, cancel_at_period_end=True, api_key=self.api_key
            )
        else:
            subscription = stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
        return _to_dict(subscription)

    def resume_subscription(self, subscription_id: str) -> Dict:
        subscription = stripe.Subscription.modify(
            subscription_id, cancel_at_period_end=False, api_key=self.api_key
        )
        return _to_dict(subscription)

    def list_prices(self) -> List[Dict]:
        prices = stripe.Price.list(active=True, expand=["data.product"], api_key=self.api_key)
        return [_to_dict(price) for price in prices.data]

    # One-time payments

    def create_payment_intent(self, amount: int, currency: str, metadata: Dict,
                              idempotency_key: Optional[str] = None) -> Dict:
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
            api_key=self.api_key,
        )
        return _to_dict(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict:
        return _to_dict(stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key))

    def create_checkout_session(self, line_items: List[Dict], success_url: str, cancel_url: str,
                                metadata: Dict, idempotency_key: Optional[str] = None) -> Dict:
        session = stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            idempotency_key=idempotency_key,
            api_key=self.api_key,
        )
        return _to_dict(session)

    # Webhooks

    def verify_signed_event(self, payload: bytes, signature_header: Optional[str], secret: str) -> Dict:
        """Authenticate a raw webhook body and return the decoded event."""
        if not secret:
            raise SignatureInvalid("Webhook secret is not configured")
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(text, signature_header, secret, self.webhook_tolerance)
            event = json.loads(text)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Webhook Error: {e}") from e
        except ValueError as e:
            raise SignatureInvalid(f"Webhook Error: invalid payload ({e})") from e
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise SignatureInvalid("Webhook Error: payload is not an event")
        return event


def _to_dict(obj) -> Dict:
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


# Helpers for reading subscription objects. Recent API versions moved the
# period bounds from the subscription onto its items, so both are checked.

def first_item(subscription: Dict) -> Dict:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        logger.error(f"Stripe subscription {subscription.get('id')} has no items")
        raise UpstreamFailure()
    return items[0]


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def period_bounds(subscription: Dict):
    item = first_item(subscription)
    start = item.get("current_period_start") or subscription.get("current_period_start")
    end = item.get("current_period_end") or subscription.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def product_id_of(price: Dict) -> Optional[str]:
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def invoice_client_secret(subscription: Dict) -> Optional[str]:
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    secret = (invoice.get("confirmation_secret") or {}).get("client_secret")
    if secret:
        return secret
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("client_secret")
    return None


def invoice_subscription_id(invoice: Dict) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription
