# src/scheduler/tasks.py
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session
from config import settings
from database import SessionLocal
from subscription.repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def remind_expiring_subscriptions(db: Session = None) -> int:
    """Log a renewal reminder for subscriptions that end soon without renewing."""
    logger.info("Starting remind_expiring_subscriptions task")
    own_session = db is None
    db = db or SessionLocal()
    try:
        subscriptions = SubscriptionRepository.find_expiring(db, settings.REMINDER_DAYS_BEFORE_RENEWAL)
        for subscription in subscriptions:
            logger.info(
                f"Subscription {subscription.stripe_subscription_id} of user {subscription.user_id} "
                f"ends on {subscription.current_period_end.isoformat()}"
            )
        return len(subscriptions)
    finally:
        if own_session:
            db.close()
        logger.info("Finished remind_expiring_subscriptions task")


def remind_trials_ending(db: Session = None) -> int:
    """Log a reminder for trials that end soon."""
    logger.info("Starting remind_trials_ending task")
    own_session = db is None
    db = db or SessionLocal()
    try:
        subscriptions = SubscriptionRepository.find_trials_ending_soon(db, settings.REMINDER_DAYS_BEFORE_TRIAL_END)
        for subscription in subscriptions:
            logger.info(
                f"Trial of subscription {subscription.stripe_subscription_id} for user {subscription.user_id} "
                f"ends on {subscription.trial_end.isoformat()}"
            )
        return len(subscriptions)
    finally:
        if own_session:
            db.close()
        logger.info("Finished remind_trials_ending task")


def start_scheduler() -> BackgroundScheduler:
    """Start the background scheduler."""
    scheduler = BackgroundScheduler()
    scheduler.add_job(remind_expiring_subscriptions, 'interval', days=1)
    scheduler.add_job(remind_trials_ending, 'interval', days=1)
    scheduler.start()
    return scheduler
