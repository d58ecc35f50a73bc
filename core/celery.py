from celery import Celery
from celery.schedules import crontab

from core.config import settings

# Use Redis for production/development
broker_url = settings.REDIS_URL
backend_url = settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "sheet_tools_subscriptions",
    broker=broker_url,
    backend=backend_url,
    include=["tasks.email_tasks", "tasks.subscription_tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    # Tests run tasks inline instead of talking to Redis
    task_always_eager=settings.TESTING,
    task_eager_propagates=settings.TESTING,
)

celery_app.conf.beat_schedule = {
    "subscription-transitions-hourly": {
        "task": "tasks.subscription_tasks.run_subscription_transitions",
        "schedule": crontab(minute=0),
    },
    # Daily win-back emails; lapsed records are selected by period end
    "retention-emails-daily": {
        "task": "tasks.subscription_tasks.send_retention_emails_task",
        "schedule": crontab(hour=9, minute=15),
    },
}
