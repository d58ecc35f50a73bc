import logging

from celery import current_app

from core.clock import utcnow
from core.db import db_session
from services.retention import send_retention_emails
from services.transitions import run_transition_job

logger = logging.getLogger(__name__)


@current_app.task(name="tasks.subscription_tasks.run_subscription_transitions")
def run_subscription_transitions():
    """Advance due subscriptions one lifecycle step and reset usage counters."""
    with db_session() as db:
        summary = run_transition_job(db, utcnow())
    logger.info("Scheduled transitions: %s", summary.to_dict())
    return summary.to_dict()


@current_app.task(name="tasks.subscription_tasks.send_retention_emails_task")
def send_retention_emails_task():
    with db_session() as db:
        summary = send_retention_emails(db, utcnow())
    logger.info("Scheduled retention emails: %s", summary.to_dict())
    return summary.to_dict()
