import logging

from celery import current_app

from core.config import settings
from core.exceptions import ExternalProviderError
from services.brevo import send_transactional_email

logger = logging.getLogger(__name__)


@current_app.task(bind=True, max_retries=3)
def send_email_task(self, to_email: str, subject: str, html_body: str, to_name=None, tags=None):
    """
    Send one notification email through Brevo.
    Retries up to 3 times on failure.
    """
    # Skip sending in testing mode or without provider credentials
    if settings.TESTING or not settings.BREVO_API_KEY:
        logger.debug("Email to %s skipped (subject %r)", to_email, subject)
        return {"status": "skipped", "to": to_email}

    try:
        result = send_transactional_email(to_email, to_name, subject, html_body, tags)
        return {"status": "sent", "to": to_email, "message_id": result.get("messageId")}
    except ExternalProviderError as exc:
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        logger.warning("Email to %s failed, retrying in %ss: %s", to_email, countdown, exc)
        raise self.retry(exc=exc, countdown=countdown)
