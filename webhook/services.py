# src/webhook/services.py
"""Reconciliation of local billing records with Stripe webhook events.

Stripe delivers events at least once and in no guaranteed order, while the
API flows write the same rows synchronously. Convergence rests on three rules:

* subscription rows are only ever overwritten with a full provider snapshot,
  never patched with deltas, so replaying an event is harmless;
* each snapshot carries a revision (the event's ``created`` time, or the
  fetch time for re-fetched objects) and the store refuses to replace a newer
  revision with an older one;
* payment transitions record the event id that caused them and skip events
  they have already applied.
"""
import logging
from enum import Enum
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from billing.plans import PlanCatalog
from billing.provider import StripeBillingProvider, invoice_subscription_id
from payment.repository import PaymentRepository
from subscription.models import Subscription
from subscription.repository import SubscriptionRepository
from subscription.services import now_revision, subscription_values

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Stripe event types this service reacts to."""
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    # anything else Stripe sends; acknowledged without changes
    IGNORED = "ignored"

    @classmethod
    def of(cls, event_type: Optional[str]) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.IGNORED


class WebhookReconciler:
    """Verify Stripe events and apply them to the local records."""

    def __init__(self, provider: StripeBillingProvider, catalog: PlanCatalog, webhook_secret: str):
        self.provider = provider
        self.catalog = catalog
        self.webhook_secret = webhook_secret

        self.handlers: Dict[EventKind, Callable[[Dict, Session], None]] = {
            EventKind.SUBSCRIPTION_CREATED: self._handle_subscription_updated,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventKind.SUBSCRIPTION_TRIAL_WILL_END: self._handle_trial_will_end,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment,
            EventKind.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment,
            EventKind.INVOICE_UPCOMING: self._handle_invoice_upcoming,
            EventKind.PAYMENT_INTENT_SUCCEEDED: self._handle_payment_intent_succeeded,
            EventKind.PAYMENT_INTENT_FAILED: self._handle_payment_intent_failed,
            EventKind.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict:
        """Authenticate the raw body. Raises SignatureInvalid."""
        return self.provider.verify_signed_event(payload, signature, self.webhook_secret)

    def process(self, event: Dict, db: Session) -> EventKind:
        """Dispatch a verified event to its handler."""
        kind = EventKind.of(event.get("type"))
        handler = self.handlers.get(kind)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event.get('type')} ({event.get('id')})")
            return kind

        logger.info(f"Processing webhook event {event['id']}: {kind.value}")
        try:
            handler(event, db)
        except Exception as e:
            logger.error(f"Error handling webhook {kind.value} ({event['id']}): {e}", exc_info=True)
            raise
        return kind

    # Subscriptions

    def apply_subscription_snapshot(self, stripe_subscription: Dict, revision: int, db: Session) -> Optional[Subscription]:
        """Overwrite the local subscription with a provider snapshot and re-sync its user."""
        stripe_id = stripe_subscription["id"]
        stored = SubscriptionRepository.find_by_stripe_id(db, stripe_id)
        if stored is None:
            # rows are created by the API flow; nothing to reconcile yet
            logger.warning(f"Subscription not found in database: {stripe_id}")
            return None

        values = subscription_values(stripe_subscription, self.catalog, prior=stored)
        updated = SubscriptionRepository.apply_snapshot(db, stripe_id, values, revision)
        if updated is None:
            logger.warning(f"Skipping stale snapshot of subscription {stripe_id} (revision {revision})")
            return None

        logger.info(f"Subscription {stripe_id} reconciled: status={updated.status}, plan={updated.plan_type}")
        SubscriptionRepository.sync_user_subscription(db, updated.user_id, updated)
        return updated

    def _handle_subscription_updated(self, event: Dict, db: Session) -> None:
        self.apply_subscription_snapshot(_event_object(event), _event_revision(event), db)

    def _handle_subscription_deleted(self, event: Dict, db: Session) -> None:
        stripe_id = _event_object(event)["id"]
        updated = SubscriptionRepository.force_canceled(db, stripe_id, _event_revision(event))
        if updated is None:
            logger.warning(f"Subscription not found in database: {stripe_id}")
            return
        logger.info(f"Subscription {stripe_id} ended")
        SubscriptionRepository.sync_user_subscription(db, updated.user_id, updated)

    def _handle_trial_will_end(self, event: Dict, db: Session) -> None:
        logger.info(f"Trial will end for subscription {_event_object(event)['id']}")

    # Invoices

    def _handle_invoice_payment(self, event: Dict, db: Session) -> None:
        invoice = _event_object(event)
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} is not tied to a subscription")
            return
        # invoice and subscription events race each other; re-read the subscription itself
        revision = now_revision()
        stripe_subscription = self.provider.get_subscription(subscription_id)
        self.apply_subscription_snapshot(stripe_subscription, revision, db)

    def _handle_invoice_upcoming(self, event: Dict, db: Session) -> None:
        logger.info(f"Upcoming invoice for customer {_event_object(event).get('customer')}")

    # One-time payments

    def _handle_payment_intent_succeeded(self, event: Dict, db: Session) -> None:
        intent = _event_object(event)
        payment = PaymentRepository.find_by_intent_id(db, intent["id"])
        if payment is None:
            logger.info(f"No local payment for intent {intent['id']}")
            return
        PaymentRepository.mark_paid(db, payment, event["id"])
        logger.info(f"Payment {payment.id} paid (intent {intent['id']})")

    def _handle_payment_intent_failed(self, event: Dict, db: Session) -> None:
        intent = _event_object(event)
        payment = PaymentRepository.find_by_intent_id(db, intent["id"])
        if payment is None:
            logger.info(f"No local payment for intent {intent['id']}")
            return
        PaymentRepository.mark_failed(db, payment, event["id"])
        logger.info(f"Payment {payment.id} failed (intent {intent['id']})")

    def _handle_checkout_completed(self, event: Dict, db: Session) -> None:
        session = _event_object(event)
        payment = PaymentRepository.find_by_session_id(db, session["id"])
        if payment is None:
            logger.info(f"No local payment for checkout session {session['id']}")
            return
        if session.get("payment_status") not in ("paid", "no_payment_required"):
            logger.info(f"Checkout session {session['id']} completed with payment_status={session.get('payment_status')}")
            return
        PaymentRepository.mark_paid(db, payment, event["id"])
        logger.info(f"Payment {payment.id} paid (checkout session {session['id']})")


def _event_object(event: Dict) -> Dict:
    return event["data"]["object"]


def _event_revision(event: Dict) -> int:
    created = event.get("created")
    return int(created) if created else now_revision()
