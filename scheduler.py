import logging
import math
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from models import db, User
from notifications import notification_service
from payments import retry_failed_payments
from realtime import emit_alerts_processed
from security import user_limiter

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(days=3)


def run_price_alerts(app):
    with app.app_context():
        logger.info("⏰ Running scheduled price alert check...")
        try:
            results = notification_service.process_price_alerts()
            logger.info("✅ Processed %d price alerts", len(results))
            if results:
                emit_alerts_processed(results)
        except Exception as e:
            db.session.rollback()
            logger.error("❌ Price alerts job failed: %s", e, exc_info=True)


def run_rate_limit_cleanup(app):
    with app.app_context():
        logger.info("🧹 Cleaning up notification rate limits...")
        removed = notification_service.cleanup_rate_limits()
        removed += user_limiter.cleanup()
        logger.info("Removed %d expired rate limit windows", removed)


def find_expiring_subscriptions(now=None):
    now = now or datetime.utcnow()
    return User.query.filter(
        User.status == 'active',
        User.subscription_tier != 'free',
        User.subscription_status == 'active',
        User.subscription_expires_at > now,
        User.subscription_expires_at <= now + REMINDER_WINDOW
    ).all()


def run_subscription_reminders(app):
    with app.app_context():
        logger.info("📧 Checking for subscription reminders...")
        now = datetime.utcnow()
        try:
            users = find_expiring_subscriptions(now)
            for user in users:
                days_left = math.ceil((user.subscription_expires_at - now).total_seconds() / 86400)
                notification_service.send_subscription_reminder(user.id, days_left)
            logger.info("Sent %d subscription reminders", len(users))
        except Exception as e:
            db.session.rollback()
            logger.error("❌ Subscription reminders failed: %s", e, exc_info=True)


def run_payment_retries(app):
    with app.app_context():
        try:
            retry_failed_payments()
        except Exception as e:
            db.session.rollback()
            logger.error("❌ Payment retry sweep failed: %s", e, exc_info=True)


def start_scheduler(app):
    scheduler = BackgroundScheduler()
    scheduler.add_job(run_price_alerts, 'interval', minutes=15, args=[app], id='price_alerts')
    scheduler.add_job(run_rate_limit_cleanup, CronTrigger(minute=0), args=[app], id='rate_limit_cleanup')
    scheduler.add_job(run_subscription_reminders, CronTrigger(hour=9, minute=0), args=[app], id='subscription_reminders')
    scheduler.add_job(run_payment_retries, 'interval', minutes=30, args=[app], id='payment_retries')
    scheduler.start()
    logger.info("⏱️  Notification jobs scheduled")
    return scheduler
