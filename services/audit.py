from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.clock import utcnow
from models.audit_log import AuditLogEntry

REDACT_KEYS = {"password", "token", "access_token", "refresh_token", "secret", "api_key", "card", "cvv"}

STATE_CHANGED = "state_changed"
ADMIN_FORCE_STATUS = "admin_force_status"
ADMIN_ADDED = "admin_added"
ADMIN_REMOVED = "admin_removed"
BILLING_EVENT = "billing_event"
SUBSCRIPTION_ACTIVATED = "subscription_activated"
RETENTION_EMAIL_SENT = "retention_email_sent"
TENANT_ARCHIVED = "tenant_archived"
TENANT_RESTORED = "tenant_restored"
USAGE_RESET = "usage_reset"


def _sanitize(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in (data or {}).items():
        if key.lower() in REDACT_KEYS:
            out[key] = "***"
        elif isinstance(value, dict):
            out[key] = _sanitize(value)
        elif isinstance(value, date):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def record_event(
    db: Session,
    *,
    event_type: str,
    user_id: Optional[int],
    old_state: Optional[str] = None,
    new_state: Optional[str] = None,
    event_data: Optional[Dict[str, Any]] = None,
    subscription_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    created_at=None,
) -> AuditLogEntry:
    """Append an audit row to the caller's unit of work. The caller commits."""
    entry = AuditLogEntry(
        user_id=user_id,
        subscription_id=subscription_id,
        actor_id=actor_id,
        event_type=event_type[:50],
        old_state=old_state,
        new_state=new_state,
        event_data=_sanitize(event_data or {}),
        created_at=created_at or utcnow(),
    )
    db.add(entry)
    return entry


def list_events(
    db: Session,
    *,
    user_id: Optional[int] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLogEntry]:
    query = db.query(AuditLogEntry)
    if user_id is not None:
        query = query.filter(AuditLogEntry.user_id == user_id)
    if event_type:
        query = query.filter(AuditLogEntry.event_type == event_type)
    return (
        query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
