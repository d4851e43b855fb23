from datetime import timedelta

from database import utcnow
from scheduler.tasks import remind_expiring_subscriptions, remind_trials_ending
from subscription.repository import SubscriptionRepository


def _subscription(db, user, stripe_id, **fields):
    values = dict(
        user_id=user.id, stripe_subscription_id=stripe_id, stripe_customer_id="cus_1",
        stripe_price_id="price_basic", status="active", plan_name="Basic Monthly", plan_type="basic",
    )
    values.update(fields)
    return SubscriptionRepository.create(db, **values)


def test_expiring_reminders_only_cover_pending_cancellations(db, user, other_user):
    now = utcnow()
    _subscription(db, user, "sub_ending", cancel_at_period_end=True, current_period_end=now + timedelta(days=2))
    _subscription(db, other_user, "sub_renewing", current_period_end=now + timedelta(days=2))
    _subscription(db, other_user, "sub_far", cancel_at_period_end=True, current_period_end=now + timedelta(days=40))

    assert remind_expiring_subscriptions(db) == 1


def test_trial_reminders(db, user, other_user):
    now = utcnow()
    _subscription(db, user, "sub_trial_soon", status="trialing", trial_end=now + timedelta(days=1))
    _subscription(db, other_user, "sub_trial_later", status="trialing", trial_end=now + timedelta(days=10))

    assert remind_trials_ending(db) == 1
