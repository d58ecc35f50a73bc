import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, ValidationError
from models.subscription import SubscriptionRecord
from models.user import ADMIN_ROLE, User, user_roles
from services import lifecycle
from services.archive import archive_tenant, restore_tenant
from services.audit import ADMIN_ADDED, ADMIN_FORCE_STATUS, ADMIN_REMOVED, record_event

logger = logging.getLogger(__name__)

DEFAULT_REACTIVATION_DAYS = 30


def is_admin(db: Session, user_id: int) -> bool:
    stmt = select(user_roles.c.user_id).where(user_roles.c.user_id == user_id, user_roles.c.role == ADMIN_ROLE)
    return db.execute(stmt).first() is not None


def set_subscription_state(
    db: Session,
    user_id: int,
    new_state: Any,
    reason: Optional[str],
    actor_id: int,
    now: datetime,
    period_end: Any = None,
) -> SubscriptionRecord:
    """
    Force a tenant's subscription into ``new_state``.

    Admins may skip forward (e.g. active -> suspended) or reset to active,
    but cannot move backwards between degraded states; leaving ``archived``
    goes through ``restore_user``.
    """
    target = lifecycle.validate_state(new_state)
    record = db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).one_or_none()
    if record is None:
        raise NotFoundError(f"No subscription for user {user_id}")
    reason = (reason or "").strip() or "admin_action"

    def _force(rec: SubscriptionRecord) -> None:
        if target == lifecycle.ARCHIVED and rec.state != lifecycle.ARCHIVED:
            archive_tenant(db, rec, now, reason=reason, event_type=ADMIN_FORCE_STATUS, actor_id=actor_id, forced=True)
            return

        extra = None
        if target == lifecycle.ACTIVE:
            end = lifecycle.coerce_timestamp(period_end)
            current_end = lifecycle.coerce_timestamp(rec.current_period_end)
            if end is None and (current_end is None or current_end <= now):
                end = now + timedelta(days=DEFAULT_REACTIVATION_DAYS)
            if end is not None:
                extra = {"current_period_end": end}
        lifecycle.apply_transition(
            db, rec, target, now=now, reason=reason, event_type=ADMIN_FORCE_STATUS,
            actor_id=actor_id, event_data={"forced_by": actor_id}, extra_values=extra, forced=True,
        )

    lifecycle.retry_on_conflict(db, record, _force)
    db.commit()
    logger.info("Admin %s forced subscription of user %s to %s", actor_id, user_id, target)
    return record


def restore_user(db: Session, user_id: int, actor_id: int, now: datetime) -> SubscriptionRecord:
    record = restore_tenant(db, user_id, now, actor_id=actor_id)
    db.commit()
    return record


def add_admin(
    db: Session,
    *,
    actor_id: int,
    now: datetime,
    target_user_id: Optional[int] = None,
    email: Optional[str] = None,
) -> User:
    if target_user_id is None and not email:
        raise ValidationError("Either user_id or email is required")
    if target_user_id is not None:
        user = db.get(User, target_user_id)
    else:
        user = db.query(User).filter(User.email == email.strip().lower()).one_or_none()
    if user is None:
        raise NotFoundError("User not found")

    if is_admin(db, user.id):
        return user

    db.execute(insert(user_roles).values(user_id=user.id, role=ADMIN_ROLE, created_at=now))
    record_event(
        db,
        event_type=ADMIN_ADDED,
        user_id=user.id,
        actor_id=actor_id,
        event_data={"role": ADMIN_ROLE, "target_email": user.email},
        created_at=now,
    )
    db.commit()
    logger.info("Admin %s granted admin role to user %s", actor_id, user.id)
    return user


def remove_admin(db: Session, *, target_user_id: int, actor_id: int, now: datetime) -> None:
    if target_user_id == actor_id:
        raise ValidationError("Admins cannot remove their own admin role")
    if not is_admin(db, target_user_id):
        raise NotFoundError(f"User {target_user_id} is not an admin")

    db.execute(delete(user_roles).where(user_roles.c.user_id == target_user_id, user_roles.c.role == ADMIN_ROLE))
    record_event(
        db,
        event_type=ADMIN_REMOVED,
        user_id=target_user_id,
        actor_id=actor_id,
        event_data={"role": ADMIN_ROLE},
        created_at=now,
    )
    db.commit()
    logger.info("Admin %s revoked admin role from user %s", actor_id, target_user_id)


def list_admins(db: Session) -> List[Tuple[User, datetime]]:
    stmt = (
        select(User, user_roles.c.created_at)
        .join(user_roles, user_roles.c.user_id == User.id)
        .where(user_roles.c.role == ADMIN_ROLE)
        .order_by(user_roles.c.created_at, User.id)
    )
    return [(user, granted_at) for user, granted_at in db.execute(stmt).all()]
