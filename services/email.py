import logging
import os
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import settings
from services.brevo import send_transactional_email
from tasks.email_tasks import send_email_task

logger = logging.getLogger(__name__)

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def send_email(to_email: str, subject: str, html_body: str, to_name: Optional[str] = None, tags: Optional[list] = None) -> None:
    """
    Queue an email on Celery and return immediately. Falls back to a direct
    Brevo call when the broker is unavailable. Never raises.
    """
    try:
        send_email_task.delay(to_email, subject, html_body, to_name, tags)
        logger.debug("Email to %s queued", to_email)
        return
    except Exception as exc:
        logger.warning("Celery not available, sending email to %s directly: %s", to_email, exc)

    try:
        send_transactional_email(to_email, to_name, subject, html_body, tags)
    except Exception:
        logger.exception("Email to %s could not be sent", to_email)


def send_templated_email(
    to_email: str,
    subject: str,
    template_path: str,
    context: Dict[str, Any],
    to_name: Optional[str] = None,
    tags: Optional[list] = None,
) -> None:
    """Render a template and send it via the existing send_email path."""
    body = render_template(template_path, {"app_name": settings.APP_NAME, "app_url": settings.APP_URL, **context})
    send_email(to_email, subject, body, to_name=to_name, tags=tags)
