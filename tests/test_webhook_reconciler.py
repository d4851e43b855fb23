import time

import pytest

from auth.models import User
from billing.provider import from_timestamp
from payment.models import Payment
from payment.repository import PaymentRepository
from subscription.repository import SubscriptionRepository
from webhook.services import EventKind

from fakes import DAY, make_event, make_subscription


def _reload_user(db, user_id):
    db.expire_all()
    return db.query(User).filter(User.id == user_id).one()


def _stored(db, stripe_id):
    db.expire_all()
    return SubscriptionRepository.find_by_stripe_id(db, stripe_id)


@pytest.fixture
def trialing(subscription_service, db, user):
    response, _ = subscription_service.create_subscription(user.id, "price_basic", "pm_card", db, trial_days=3)
    return response


def test_event_kind_is_closed():
    assert EventKind.of("customer.subscription.updated") is EventKind.SUBSCRIPTION_UPDATED
    assert EventKind.of("charge.refunded") is EventKind.IGNORED
    assert EventKind.of(None) is EventKind.IGNORED


def test_trial_converts_to_active(reconciler, provider, db, user, trialing):
    now = int(time.time())
    period_end = now + 30 * DAY
    snapshot = make_subscription(
        trialing.stripe_subscription_id, trialing.stripe_customer_id, provider.prices["price_basic"],
        status="active", period_start=now, period_end=period_end,
    )

    kind = reconciler.process(make_event("customer.subscription.updated", snapshot, created=now + 1), db)

    assert kind is EventKind.SUBSCRIPTION_UPDATED
    stored = _stored(db, trialing.stripe_subscription_id)
    assert stored.status == "active"
    assert stored.current_period_end == from_timestamp(period_end)
    refreshed = _reload_user(db, user.id)
    assert refreshed.subscription_status == "active"
    assert refreshed.current_period_end == from_timestamp(period_end)
    assert refreshed.access_level == 1


def test_replayed_event_is_harmless(reconciler, provider, db, user, trialing):
    now = int(time.time())
    snapshot = make_subscription(
        trialing.stripe_subscription_id, trialing.stripe_customer_id, provider.prices["price_premium"],
        status="active", period_end=now + 30 * DAY,
    )
    event = make_event("customer.subscription.updated", snapshot, created=now + 1)

    reconciler.process(event, db)
    first = {k: v for k, v in vars(_stored(db, trialing.stripe_subscription_id)).items() if k != "updated_at"}
    reconciler.process(event, db)
    second = {k: v for k, v in vars(_stored(db, trialing.stripe_subscription_id)).items() if k != "updated_at"}

    first.pop("_sa_instance_state")
    second.pop("_sa_instance_state")
    assert first == second
    assert _reload_user(db, user.id).membership_type == "premium"


def test_older_event_does_not_overwrite_newer(reconciler, provider, db, user, trialing):
    now = int(time.time())
    price = provider.prices["price_basic"]
    newer = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                              status="past_due", period_end=now + 30 * DAY)
    older = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                              status="active", period_end=now + 30 * DAY)

    reconciler.process(make_event("customer.subscription.updated", newer, created=now + 100), db)
    reconciler.process(make_event("customer.subscription.updated", older, created=now + 50), db)

    assert _stored(db, trialing.stripe_subscription_id).status == "past_due"
    assert _reload_user(db, user.id).subscription_status == "past_due"


def test_newer_snapshot_may_shorten_the_period(reconciler, provider, db, trialing):
    now = int(time.time())
    price = provider.prices["price_basic"]
    renewed = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                                status="active", period_end=now + 60 * DAY)
    shortened = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                                  status="past_due", period_end=now + 30 * DAY)

    reconciler.process(make_event("customer.subscription.updated", renewed, created=now + 10), db)
    reconciler.process(make_event("customer.subscription.updated", shortened, created=now + 20), db)

    stored = _stored(db, trialing.stripe_subscription_id)
    assert stored.status == "past_due"
    assert stored.current_period_end == from_timestamp(now + 30 * DAY)


def test_refetch_after_annual_to_monthly_switch(subscription_service, reconciler, provider, db, user):
    created, _ = subscription_service.create_subscription(user.id, "price_premium_annual", "pm_card", db)
    stripe_id = created.stripe_subscription_id
    now = int(time.time())
    annual = make_subscription(stripe_id, created.stripe_customer_id, provider.prices["price_premium_annual"],
                               status="active", period_end=now + 365 * DAY)
    reconciler.process(make_event("customer.subscription.updated", annual, created=now), db)

    provider.subscriptions[stripe_id] = make_subscription(
        stripe_id, created.stripe_customer_id, provider.prices["price_basic"],
        status="past_due", period_end=now + 30 * DAY,
    )
    reconciler.process(make_event("invoice.payment_failed", {"id": "in_switch", "subscription": stripe_id}), db)

    stored = _stored(db, stripe_id)
    assert stored.status == "past_due"
    assert stored.stripe_price_id == "price_basic"
    assert stored.plan_type == "basic"
    assert stored.current_period_end == from_timestamp(now + 30 * DAY)
    refreshed = _reload_user(db, user.id)
    assert refreshed.subscription_status == "past_due"
    assert refreshed.membership_type == "basic"


def test_unknown_subscription_is_skipped(reconciler, provider, db, user):
    snapshot = make_subscription("sub_elsewhere", "cus_elsewhere", provider.prices["price_basic"])

    reconciler.process(make_event("customer.subscription.created", snapshot), db)

    assert SubscriptionRepository.find_by_stripe_id(db, "sub_elsewhere") is None
    assert _reload_user(db, user.id).subscription_status is None


def test_unmapped_price_keeps_prior_plan(reconciler, provider, db, trialing):
    now = int(time.time())
    snapshot = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id,
                                 provider.prices["price_unmapped"], status="active", period_end=now + 30 * DAY)

    reconciler.process(make_event("customer.subscription.updated", snapshot, created=now + 1), db)

    stored = _stored(db, trialing.stripe_subscription_id)
    assert stored.status == "active"
    assert stored.stripe_price_id == "price_unmapped"
    assert stored.plan_type == "basic"
    assert stored.plan_name == "Basic Monthly"


def test_deleted_applies_even_when_older(reconciler, provider, db, user, trialing):
    now = int(time.time())
    snapshot = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id,
                                 provider.prices["price_basic"], status="canceled")

    reconciler.process(make_event("customer.subscription.deleted", snapshot, created=now - 3600), db)

    stored = _stored(db, trialing.stripe_subscription_id)
    assert stored.status == "canceled"
    assert stored.ended_at is not None
    refreshed = _reload_user(db, user.id)
    assert refreshed.subscription_status == "canceled"


def test_ended_subscription_is_not_reopened_by_same_second_update(reconciler, provider, db, user, trialing):
    now = int(time.time())
    price = provider.prices["price_basic"]
    ended = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                              status="canceled", ended_at=now)
    still_active = make_subscription(trialing.stripe_subscription_id, trialing.stripe_customer_id, price,
                                     status="active", period_end=now + 30 * DAY)

    reconciler.process(make_event("customer.subscription.deleted", ended, created=now), db)
    reconciler.process(make_event("customer.subscription.updated", still_active, created=now), db)

    stored = _stored(db, trialing.stripe_subscription_id)
    assert stored.status == "canceled"
    assert stored.ended_at is not None
    refreshed = _reload_user(db, user.id)
    assert refreshed.subscription_status == "canceled"
    assert SubscriptionRepository.find_active_by_user_id(db, user.id) is None


def test_late_event_for_old_subscription_keeps_current_snapshot(subscription_service, reconciler, provider, db, user):
    old, _ = subscription_service.create_subscription(user.id, "price_basic", "pm_card", db)
    subscription_service.cancel_subscription(user.id, db, immediate=True)
    current, _ = subscription_service.create_subscription(user.id, "price_premium", "pm_card", db)

    snapshot = make_subscription(old.stripe_subscription_id, old.stripe_customer_id,
                                 provider.prices["price_basic"], status="canceled")
    reconciler.process(make_event("customer.subscription.deleted", snapshot), db)

    refreshed = _reload_user(db, user.id)
    assert refreshed.subscription_id == current.stripe_subscription_id
    assert refreshed.subscription_status == "active"
    assert refreshed.membership_type == "premium"


def test_invoice_failure_refetches_subscription(reconciler, provider, db, user, trialing):
    provider.subscriptions[trialing.stripe_subscription_id]["status"] = "past_due"
    invoice = {"id": "in_1", "object": "invoice", "subscription": trialing.stripe_subscription_id}

    reconciler.process(make_event("invoice.payment_failed", invoice), db)

    assert ("get_subscription", trialing.stripe_subscription_id) in provider.calls
    assert _stored(db, trialing.stripe_subscription_id).status == "past_due"
    assert _reload_user(db, user.id).subscription_status == "past_due"


def test_invoice_with_subscription_under_parent(reconciler, provider, db, trialing):
    provider.subscriptions[trialing.stripe_subscription_id]["status"] = "active"
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "parent": {"subscription_details": {"subscription": trialing.stripe_subscription_id}},
    }

    reconciler.process(make_event("invoice.payment_succeeded", invoice), db)

    assert _stored(db, trialing.stripe_subscription_id).status == "active"


def test_invoice_without_subscription_is_ignored(reconciler, provider, db):
    reconciler.process(make_event("invoice.payment_succeeded", {"id": "in_3", "object": "invoice"}), db)
    assert "get_subscription" not in provider.call_names()


def test_payment_intent_events_are_idempotent(reconciler, db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=500, stripe_payment_intent_id="pi_abc"))
    event = make_event("payment_intent.succeeded", {"id": "pi_abc", "object": "payment_intent"}, event_id="evt_ok")

    reconciler.process(event, db)
    reconciler.process(event, db)

    db.refresh(payment)
    assert payment.status == "paid"
    assert payment.webhook_event_ids == ["evt_ok"]


def test_payment_intent_failure(reconciler, db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=500, stripe_payment_intent_id="pi_bad"))

    reconciler.process(make_event("payment_intent.payment_failed", {"id": "pi_bad"}), db)

    db.refresh(payment)
    assert payment.status == "failed"


def test_payment_intent_without_local_payment(reconciler, db):
    reconciler.process(make_event("payment_intent.succeeded", {"id": "pi_unknown"}), db)
    assert db.query(Payment).count() == 0


def test_checkout_completed_marks_paid(reconciler, db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=700, stripe_checkout_session_id="cs_1"))

    reconciler.process(make_event("checkout.session.completed", {"id": "cs_1", "payment_status": "paid"}), db)

    db.refresh(payment)
    assert payment.status == "paid"


def test_checkout_completed_without_payment_stays_pending(reconciler, db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=700, stripe_checkout_session_id="cs_2"))

    reconciler.process(make_event("checkout.session.completed", {"id": "cs_2", "payment_status": "unpaid"}), db)

    db.refresh(payment)
    assert payment.status == "pending"


def test_unrecognized_event_changes_nothing(reconciler, provider, db, trialing):
    kind = reconciler.process(make_event("customer.created", {"id": "cus_new"}), db)

    assert kind is EventKind.IGNORED
    assert _stored(db, trialing.stripe_subscription_id).status == "trialing"


def test_handler_errors_propagate(reconciler, provider, db, trialing):
    provider.fail_on.add("get_subscription")
    invoice = {"id": "in_4", "subscription": trialing.stripe_subscription_id}

    with pytest.raises(RuntimeError):
        reconciler.process(make_event("invoice.payment_succeeded", invoice), db)
