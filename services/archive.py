import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import NotFoundError, ValidationError
from models.archive import ArchivedUserData
from models.profile import Profile
from models.subscription import SubscriptionRecord
from models.user import User
from services import lifecycle
from services.audit import STATE_CHANGED, TENANT_ARCHIVED, TENANT_RESTORED, record_event
from services.crypto import decrypt_snapshot, encrypt_snapshot

logger = logging.getLogger(__name__)

ANONYMIZED_NAME = "Anonymized User"

_USER_FIELDS = ("id", "first_name", "last_name", "email", "created_at")
_PROFILE_FIELDS = ("full_name", "company_name", "subscription_plan", "subscription_status", "trial_ends_at")
_SUBSCRIPTION_FIELDS = (
    "id", "plan_code", "plan_name", "billing_period", "state", "status",
    "current_period_start", "current_period_end", "grace_period_ends_at",
    "archive_scheduled_at", "stripe_customer_id", "stripe_subscription_id",
)


def _row(obj: Any, fields: Iterable[str]) -> Optional[Dict[str, Any]]:
    if obj is None:
        return None
    out = {}
    for name in fields:
        value = getattr(obj, name)
        out[name] = value.isoformat() if isinstance(value, datetime) else value
    return out


def anonymized_email(user_id: int) -> str:
    return f"archived-{user_id}@anonymized.invalid"


def archive_tenant(
    db: Session,
    record: SubscriptionRecord,
    now: datetime,
    *,
    reason: str = "inactive_period_ended",
    event_type: str = STATE_CHANGED,
    actor_id: Optional[int] = None,
    forced: bool = False,
) -> ArchivedUserData:
    """
    Snapshot, encrypt and anonymize a tenant, then move the record to ``archived``.
    The caller commits; nothing is written if encryption is unavailable.
    """
    user = db.get(User, record.user_id)
    profile = db.query(Profile).filter(Profile.user_id == record.user_id).one_or_none()

    snapshot = {
        "user": _row(user, _USER_FIELDS),
        "profile": _row(profile, _PROFILE_FIELDS),
        "subscription": _row(record, _SUBSCRIPTION_FIELDS),
        "timestamp": now.isoformat(),
    }
    encrypted = encrypt_snapshot(snapshot)

    lifecycle.apply_transition(
        db, record, lifecycle.ARCHIVED,
        now=now, reason=reason, event_type=event_type, actor_id=actor_id,
        event_data={"anonymized": True}, forced=forced,
    )

    archived = ArchivedUserData(
        original_user_id=record.user_id,
        encrypted_snapshot=encrypted,
        metadata_json={"plan_name": record.plan_name, "archived_reason": reason},
        can_restore=True,
        restoration_expires_at=now + timedelta(days=settings.RESTORATION_WINDOW_DAYS),
        archived_at=now,
    )
    db.add(archived)

    if profile is not None:
        profile.full_name = ANONYMIZED_NAME
        profile.company_name = None
    if user is not None:
        user.first_name = "Anonymized"
        user.last_name = "User"
        user.email = anonymized_email(user.id)
        user.is_active = False
    db.flush()

    record_event(
        db,
        event_type=TENANT_ARCHIVED,
        user_id=record.user_id,
        subscription_id=record.id,
        actor_id=actor_id,
        event_data={"archive_id": archived.id, "restoration_expires_at": archived.restoration_expires_at.isoformat()},
        created_at=now,
    )
    logger.info("Archived and anonymized user %s (archive %s)", record.user_id, archived.id)
    return archived


def restore_tenant(db: Session, user_id: int, now: datetime, actor_id: Optional[int] = None) -> SubscriptionRecord:
    """Re-create an archived tenant's identifying data and reopen it as ``expired`` (read-only until payment)."""
    record = db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).one_or_none()
    if record is None:
        raise NotFoundError(f"No subscription for user {user_id}")
    if record.state != lifecycle.ARCHIVED:
        raise ValidationError("Only archived subscriptions can be restored")

    archived = (
        db.query(ArchivedUserData)
        .filter(ArchivedUserData.original_user_id == user_id, ArchivedUserData.can_restore.is_(True))
        .order_by(ArchivedUserData.archived_at.desc(), ArchivedUserData.id.desc())
        .first()
    )
    if archived is None:
        raise NotFoundError(f"No restorable archive for user {user_id}")
    expires_at = lifecycle.coerce_timestamp(archived.restoration_expires_at)
    if expires_at is not None and now >= expires_at:
        raise ValidationError("Restoration window has expired")

    try:
        snapshot = decrypt_snapshot(archived.encrypted_snapshot)
    except ValueError as exc:
        raise ValidationError(str(exc))

    lifecycle.apply_transition(
        db, record, lifecycle.EXPIRED,
        now=now, reason="restored_from_archive", event_type=TENANT_RESTORED,
        actor_id=actor_id, event_data={"archive_id": archived.id},
        extra_values={"archived_at": None}, restore=True,
    )

    user = db.get(User, user_id)
    user_data = snapshot.get("user") or {}
    if user is not None and user_data:
        user.first_name = user_data.get("first_name") or user.first_name
        user.last_name = user_data.get("last_name") or user.last_name
        user.email = user_data.get("email") or user.email
        user.is_active = True

    profile = db.query(Profile).filter(Profile.user_id == user_id).one_or_none()
    profile_data = snapshot.get("profile") or {}
    if profile is not None and profile_data:
        profile.full_name = profile_data.get("full_name")
        profile.company_name = profile_data.get("company_name")

    archived.can_restore = False
    archived.restored_at = now
    logger.info("Restored user %s from archive %s", user_id, archived.id)
    return record
