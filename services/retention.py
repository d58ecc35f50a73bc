"""
Win-back emails for lapsed subscriptions.

Sent once per tenant per offset (days since expiry, D+0/D+5/D+10 by default)
in each expiry cycle. A ``RetentionEmailMarker`` row records the send, so
re-running the job the same day sends nothing new.
"""
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from jinja2 import TemplateNotFound
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ExternalProviderError
from models.profile import Profile
from models.retention import RetentionEmailMarker
from models.subscription import SubscriptionRecord
from models.user import User
from services import lifecycle
from services.audit import RETENTION_EMAIL_SENT, record_event
from services.brevo import send_transactional_email
from services.email import render_template

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "Customer"

SUBJECTS = {
    0: "Your {plan_name} subscription has expired",
    5: "Last chance: your {discount_percent}% discount ends soon",
    10: "Action required: your account will be archived",
}


@dataclass
class RetentionSummary:
    sent: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def days_since_expiry(record: SubscriptionRecord, now: datetime) -> Optional[int]:
    period_end = lifecycle.coerce_timestamp(record.current_period_end)
    if period_end is None:
        return None
    return math.floor((now - period_end).total_seconds() / 86400)


def _days_left(moment: Optional[datetime], now: datetime) -> Optional[int]:
    moment = lifecycle.coerce_timestamp(moment)
    if moment is None:
        return None
    return max(0, math.ceil((moment - now).total_seconds() / 86400))


def checkout_url(plan_code: str) -> str:
    return f"{settings.APP_URL}/billing?plan={plan_code}&discount={settings.RETENTION_DISCOUNT_PERCENT}"


def build_email(record: SubscriptionRecord, user_name: str, offset: int, now: datetime) -> Dict[str, Any]:
    """Render subject and HTML for one offset. Raises TemplateNotFound for unknown offsets."""
    context = {
        "app_name": settings.APP_NAME,
        "app_url": settings.APP_URL,
        "user_name": user_name,
        "plan_name": record.plan_name,
        "checkout_url": checkout_url(record.plan_code),
        "discount_percent": settings.RETENTION_DISCOUNT_PERCENT,
        "grace_days": settings.GRACE_PERIOD_DAYS,
        "days_since_expiry": offset,
        "days_until_suspension": _days_left(record.grace_period_ends_at, now),
        "days_until_archive": _days_left(record.archive_scheduled_at, now),
    }
    html = render_template(f"emails/retention_d{offset}.html", context)
    subject = SUBJECTS.get(offset, "Your {plan_name} subscription").format(**context)
    return {
        "subject": subject,
        "html_content": html,
        "tags": [f"retention-d{offset}", "subscription-recovery"],
    }


def _already_sent(db: Session, user_id: int, offset: int, expired_on) -> bool:
    return (
        db.query(RetentionEmailMarker.id)
        .filter(
            RetentionEmailMarker.user_id == user_id,
            RetentionEmailMarker.offset_day == offset,
            RetentionEmailMarker.expired_on == expired_on,
        )
        .first()
        is not None
    )


def _lapsed_records(db: Session, now: datetime) -> List[SubscriptionRecord]:
    """Expired or suspended records, plus active ones whose period already ended."""
    return (
        db.query(SubscriptionRecord)
        .filter(
            or_(
                SubscriptionRecord.state.in_((lifecycle.EXPIRED, lifecycle.SUSPENDED)),
                and_(
                    SubscriptionRecord.state == lifecycle.ACTIVE,
                    SubscriptionRecord.current_period_end < now,
                ),
            )
        )
        .order_by(SubscriptionRecord.id)
        .all()
    )


def _send_one(db: Session, record: SubscriptionRecord, offset: int, now: datetime) -> bool:
    """Send one tenant's email for ``offset``. Returns False when it was skipped."""
    user_id = record.user_id
    expired_on = lifecycle.coerce_timestamp(record.current_period_end).date()
    if _already_sent(db, user_id, offset, expired_on):
        logger.debug("Retention D+%s already sent to user %s", offset, user_id)
        return False

    user = db.get(User, user_id)
    if user is None or not user.email:
        logger.warning("No email for user %s, skipping retention D+%s", user_id, offset)
        return False
    profile = db.query(Profile).filter(Profile.user_id == user_id).one_or_none()
    user_name = (profile.full_name if profile else None) or user.full_name or DEFAULT_USER_NAME

    email = build_email(record, user_name, offset, now)
    result = send_transactional_email(user.email, user_name, email["subject"], email["html_content"], email["tags"])

    try:
        db.add(RetentionEmailMarker(
            user_id=user_id,
            offset_day=offset,
            expired_on=expired_on,
            provider_message_id=result.get("messageId"),
            sent_at=now,
        ))
        record_event(
            db,
            event_type=RETENTION_EMAIL_SENT,
            user_id=user_id,
            subscription_id=record.id,
            event_data={
                "offset_day": offset,
                "template": f"retention_d{offset}",
                "message_id": result.get("messageId"),
                "plan_name": record.plan_name,
            },
            created_at=now,
        )
        db.commit()
    except IntegrityError:
        # A concurrent run recorded this send first
        db.rollback()
        return False
    return True


def send_retention_emails(db: Session, now: datetime) -> RetentionSummary:
    summary = RetentionSummary()
    offsets = set(settings.RETENTION_OFFSETS)
    records = _lapsed_records(db, now)
    logger.info("Checking %d lapsed subscriptions for retention emails", len(records))

    for record in records:
        offset = days_since_expiry(record, now)
        if offset is None or offset not in offsets:
            summary.skipped += 1
            continue

        user_id = record.user_id
        try:
            sent = _send_one(db, record, offset, now)
        except (ExternalProviderError, TemplateNotFound) as exc:
            db.rollback()
            logger.error("Retention D+%s for user %s failed: %s", offset, user_id, exc)
            summary.errors.append({"user_id": user_id, "offset": offset, "error": str(exc)})
            continue
        except Exception as exc:
            db.rollback()
            logger.exception("Retention D+%s for user %s failed", offset, user_id)
            summary.errors.append({"user_id": user_id, "offset": offset, "error": str(exc)})
            continue

        if sent:
            summary.sent += 1
            logger.info("Retention D+%s sent to user %s", offset, user_id)
        else:
            summary.skipped += 1

    logger.info("Retention emails done: %d sent, %d skipped, %d errors", summary.sent, summary.skipped, len(summary.errors))
    return summary
