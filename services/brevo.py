import logging
from typing import Any, Dict, List, Optional

import requests

from core.config import settings
from core.exceptions import ExternalProviderError

logger = logging.getLogger(__name__)

BREVO_BASE_URL = "https://api.brevo.com/v3"


def _headers() -> Dict[str, str]:
    return {
        "api-key": settings.BREVO_API_KEY,
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def send_transactional_email(
    to_email: str,
    to_name: Optional[str],
    subject: str,
    html_content: str,
    tags: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Send one transactional email. Returns Brevo's JSON body (holds ``messageId``).
    Any failure, including a missing API key, raises ExternalProviderError.
    """
    if not settings.BREVO_API_KEY:
        raise ExternalProviderError("BREVO_API_KEY is not configured")

    payload: Dict[str, Any] = {
        "sender": {"name": settings.BREVO_SENDER_NAME, "email": settings.BREVO_SENDER_EMAIL},
        "to": [{"email": to_email, "name": to_name or to_email}],
        "subject": subject,
        "htmlContent": html_content,
    }
    if tags:
        payload["tags"] = tags

    try:
        resp = requests.post(f"{BREVO_BASE_URL}/smtp/email", json=payload, headers=_headers(), timeout=20)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.error("Brevo send to %s failed: %s", to_email, exc)
        raise ExternalProviderError(f"Email provider error: {exc}")

    try:
        return resp.json()
    except ValueError:
        return {}
