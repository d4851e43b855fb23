# src/subscription/repository.py
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.models import User
from billing.exceptions import ConflictFailure
from billing.plans import access_level_for
from database import commit_or_raise, utcnow
from subscription.models import Subscription, ACTIVE_STATUSES

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Record store for subscriptions and the user snapshot derived from them."""

    @staticmethod
    def create(db: Session, **fields) -> Subscription:
        subscription = Subscription(**fields)
        db.add(subscription)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.info(f"Subscription {fields.get('stripe_subscription_id')} already stored: {e.orig}")
            raise ConflictFailure("Subscription already exists") from e
        db.refresh(subscription)
        return subscription

    @staticmethod
    def find_by_stripe_id(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
        return db.query(Subscription).filter(
            Subscription.stripe_subscription_id == stripe_subscription_id
        ).first()

    @staticmethod
    def find_by_user_id(db: Session, user_id: int) -> List[Subscription]:
        return db.query(Subscription).filter(
            Subscription.user_id == user_id
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

    @staticmethod
    def count_by_user_id(db: Session, user_id: int) -> int:
        return db.query(Subscription).filter(Subscription.user_id == user_id).count()

    @staticmethod
    def find_active_by_user_id(db: Session, user_id: int) -> Optional[Subscription]:
        return db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACTIVE_STATUSES)
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    @staticmethod
    def apply_snapshot(
            db: Session,
            stripe_subscription_id: str,
            values: Dict,
            revision: int
    ) -> Optional[Subscription]:
        """Write provider-derived values unless a newer snapshot is already stored.

        The update is a single conditional statement: it only matches when the
        stored revision is not newer than ``revision``. A subscription that has
        ended (canceled with ended_at set) never takes a non-canceled status
        again. Returns the refreshed row, or None when the row is missing or the
        snapshot was stale.
        """
        conditions = [
            Subscription.stripe_subscription_id == stripe_subscription_id,
            or_(Subscription.provider_synced_at.is_(None), Subscription.provider_synced_at <= revision),
        ]
        new_status = values.get("status")
        if new_status is not None and new_status != "canceled":
            conditions.append(or_(Subscription.status != "canceled", Subscription.ended_at.is_(None)))

        changes = dict(values, provider_synced_at=revision, updated_at=utcnow())
        matched = db.query(Subscription).filter(*conditions).update(changes, synchronize_session=False)
        commit_or_raise(db, f"update subscription {stripe_subscription_id}")

        if not matched:
            return None
        return SubscriptionRepository.find_by_stripe_id(db, stripe_subscription_id)

    @staticmethod
    def mark_as_canceled(
            db: Session,
            stripe_subscription_id: str,
            cancel_at_period_end: bool,
            canceled_at: Optional[datetime],
            revision: int,
            ended_at: Optional[datetime] = None
    ) -> Optional[Subscription]:
        values = {"canceled_at": canceled_at, "cancel_at_period_end": cancel_at_period_end}
        if not cancel_at_period_end:
            values.update(status="canceled", ended_at=ended_at or canceled_at or utcnow())
        return SubscriptionRepository.apply_snapshot(db, stripe_subscription_id, values, revision)

    @staticmethod
    def force_canceled(db: Session, stripe_subscription_id: str, revision: int) -> Optional[Subscription]:
        """Terminal cancellation; applies regardless of stored revision."""
        stored = SubscriptionRepository.find_by_stripe_id(db, stripe_subscription_id)
        if stored is None:
            return None
        revision = max(revision, stored.provider_synced_at or 0)
        return SubscriptionRepository.apply_snapshot(
            db, stripe_subscription_id, {"status": "canceled", "ended_at": utcnow()}, revision
        )

    @staticmethod
    def sync_user_subscription(db: Session, user_id: int, subscription: Subscription) -> Optional[User]:
        """Recompute the user's billing snapshot.

        A write to a subscription that is no longer current (e.g. a late event
        for an old, canceled subscription) must not hide the user's current
        one, so the snapshot is always taken from the current subscription
        when there is one.
        """
        source = subscription
        if not subscription.is_active:
            current = SubscriptionRepository.find_active_by_user_id(db, user_id)
            if current is not None and current.id != subscription.id:
                logger.info(
                    f"Subscription {subscription.stripe_subscription_id} is not current for user {user_id}; "
                    f"syncing from {current.stripe_subscription_id}"
                )
                source = current

        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            logger.warning(f"Cannot sync subscription {source.stripe_subscription_id}: user {user_id} not found")
            return None

        user.subscription_id = source.stripe_subscription_id
        user.subscription_status = source.status
        user.subscription_plan_id = source.stripe_price_id
        user.subscription_plan_name = source.plan_name
        user.current_period_start = source.current_period_start
        user.current_period_end = source.current_period_end
        user.cancel_at_period_end = bool(source.cancel_at_period_end)
        user.canceled_at = source.canceled_at
        user.trial_end = source.trial_end
        user.membership_type = source.plan_type
        user.access_level = access_level_for(source.plan_type)
        commit_or_raise(db, f"sync user {user_id} billing snapshot")
        db.refresh(user)
        return user

    @staticmethod
    def find_expiring(db: Session, days_before_expiry: int) -> List[Subscription]:
        now = utcnow()
        return db.query(Subscription).filter(
            Subscription.status == "active",
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end >= now,
            Subscription.current_period_end <= now + timedelta(days=days_before_expiry)
        ).all()

    @staticmethod
    def find_trials_ending_soon(db: Session, days_before_end: int) -> List[Subscription]:
        now = utcnow()
        return db.query(Subscription).filter(
            Subscription.status == "trialing",
            Subscription.trial_end >= now,
            Subscription.trial_end <= now + timedelta(days=days_before_end)
        ).all()

    @staticmethod
    def get_statistics(db: Session) -> Dict:
        status_rows = db.query(
            Subscription.status, func.count(Subscription.id), func.coalesce(func.sum(Subscription.amount), 0)
        ).group_by(Subscription.status).all()
        plan_rows = db.query(
            Subscription.plan_type, func.count(Subscription.id), func.coalesce(func.sum(Subscription.amount), 0)
        ).filter(Subscription.status.in_(ACTIVE_STATUSES)).group_by(Subscription.plan_type).all()
        return {
            "status_stats": [
                {"status": status, "count": count, "total_revenue": int(total)}
                for status, count, total in status_rows
            ],
            "plan_stats": [
                {"plan_type": plan_type, "count": count, "revenue": int(total)}
                for plan_type, count, total in plan_rows
            ],
        }
