"""
Subscription lifecycle state machine.

Stored states move forward only::

    active -> expired -> suspended -> archived

A successful payment resets ``expired``/``suspended`` to ``active``;
``archived`` is left only through an explicit restore (back to ``expired``).
The evaluator, the scheduled transition job, billing webhooks and admin
actions all go through this module, so the rules live in one place.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from core.config import settings
from core.exceptions import ConcurrencyConflict, IllegalTransition, ValidationError
from models.subscription import SubscriptionRecord
from services.audit import STATE_CHANGED, record_event

logger = logging.getLogger(__name__)

ACTIVE = "active"
EXPIRED = "expired"
SUSPENDED = "suspended"
ARCHIVED = "archived"
STATES = (ACTIVE, EXPIRED, SUSPENDED, ARCHIVED)

_RANK = {state: rank for rank, state in enumerate(STATES)}

# Edges reachable without admin force; archived -> expired is the restore edge
TRANSITIONS: Dict[str, frozenset] = {
    ACTIVE: frozenset({EXPIRED}),
    EXPIRED: frozenset({SUSPENDED, ACTIVE}),
    SUSPENDED: frozenset({ARCHIVED, ACTIVE}),
    ARCHIVED: frozenset(),
}

T = TypeVar("T")


def grace_period() -> timedelta:
    return timedelta(days=settings.GRACE_PERIOD_DAYS)


def archive_delay() -> timedelta:
    return timedelta(days=settings.ARCHIVE_AFTER_DAYS)


def validate_state(value: Any) -> str:
    if not isinstance(value, str) or value.lower() not in STATES:
        raise ValidationError(f"Invalid state. Must be one of: {', '.join(STATES)}")
    return value.lower()


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """Return a naive UTC datetime, or None for missing or unparseable input."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def check_transition(old_state: str, new_state: str, *, forced: bool = False, restore: bool = False) -> None:
    if old_state == new_state:
        return
    if old_state == ARCHIVED:
        if restore and new_state == EXPIRED:
            return
        raise IllegalTransition("Archived subscriptions can only be restored")
    if old_state not in _RANK:
        raise IllegalTransition(f"Unknown stored state {old_state!r}")
    if forced and (new_state == ACTIVE or _RANK[new_state] > _RANK[old_state]):
        return
    if new_state not in TRANSITIONS[old_state]:
        raise IllegalTransition(f"Cannot move subscription from {old_state} to {new_state}")


def due_transition(record: SubscriptionRecord, now: datetime) -> Optional[str]:
    """The forward step the clock has made due for a stored record, if any."""
    if record.state == ACTIVE:
        end = coerce_timestamp(record.current_period_end)
        if end is not None and now > end:
            return EXPIRED
    elif record.state == EXPIRED:
        grace_end = coerce_timestamp(record.grace_period_ends_at)
        if grace_end is not None and now > grace_end:
            return SUSPENDED
    elif record.state == SUSPENDED:
        archive_at = coerce_timestamp(record.archive_scheduled_at)
        if archive_at is not None and now > archive_at:
            return ARCHIVED
    return None


@dataclass(frozen=True)
class Projection:
    state: str
    grace_period_ends_at: Optional[datetime]
    archive_scheduled_at: Optional[datetime]
    # False when a timestamp the state depends on is missing or malformed
    complete: bool = True


def project(record: Any, now: datetime) -> Projection:
    """
    Project a stored record forward to ``now`` without touching it.

    Applies the same due-transition rules as the scheduled job, so a reader
    never sees ``active`` after the period has ended just because the job
    has not run yet. Missing timestamps never project to ``active``.
    """
    state = getattr(record, "state", None)
    grace_end = coerce_timestamp(getattr(record, "grace_period_ends_at", None))
    archive_at = coerce_timestamp(getattr(record, "archive_scheduled_at", None))

    if state not in _RANK:
        return Projection(ARCHIVED, None, None, complete=False)

    if state == ACTIVE:
        period_end = coerce_timestamp(getattr(record, "current_period_end", None))
        if period_end is None:
            return Projection(EXPIRED, None, None, complete=False)
        if now <= period_end:
            return Projection(ACTIVE, None, None)
        state, grace_end, archive_at = EXPIRED, period_end + grace_period(), None

    if state == EXPIRED:
        if grace_end is None:
            return Projection(EXPIRED, None, None, complete=False)
        if now <= grace_end:
            return Projection(EXPIRED, grace_end, None)
        state, archive_at = SUSPENDED, grace_end + archive_delay()

    if state == SUSPENDED:
        if archive_at is None:
            return Projection(SUSPENDED, grace_end, None, complete=False)
        if now <= archive_at:
            return Projection(SUSPENDED, grace_end, archive_at)

    return Projection(ARCHIVED, grace_end, archive_at)


def transition_values(new_state: str, now: datetime, reason: str) -> Dict[str, Any]:
    """Column updates implied by entering ``new_state`` at ``now``."""
    values: Dict[str, Any] = {
        "state": new_state,
        "last_state_change_at": now,
        "state_change_reason": reason,
    }
    if new_state == ACTIVE:
        values.update(readonly_mode=False, grace_period_ends_at=None, archive_scheduled_at=None, archived_at=None)
    elif new_state == EXPIRED:
        values.update(readonly_mode=True, grace_period_ends_at=now + grace_period(), archive_scheduled_at=None)
    elif new_state == SUSPENDED:
        values.update(readonly_mode=True, archive_scheduled_at=now + archive_delay())
    elif new_state == ARCHIVED:
        values.update(readonly_mode=True, archived_at=now)
    return values


def compare_and_set(db: Session, record: SubscriptionRecord, values: Dict[str, Any], now: datetime) -> None:
    """
    Optimistic update guarded by the ``state`` and ``last_state_change_at``
    the caller read. Raises ConcurrencyConflict when another writer got there first.
    """
    stmt = update(SubscriptionRecord).where(
        SubscriptionRecord.id == record.id,
        SubscriptionRecord.state == record.state,
    )
    if record.last_state_change_at is None:
        stmt = stmt.where(SubscriptionRecord.last_state_change_at.is_(None))
    else:
        stmt = stmt.where(SubscriptionRecord.last_state_change_at == record.last_state_change_at)

    values = dict(values)
    values.setdefault("updated_at", now)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise ConcurrencyConflict(f"Subscription {record.id} was modified concurrently")

    for key, value in values.items():
        set_committed_value(record, key, value)


def apply_transition(
    db: Session,
    record: SubscriptionRecord,
    new_state: str,
    *,
    now: datetime,
    reason: str,
    event_type: str = STATE_CHANGED,
    actor_id: Optional[int] = None,
    event_data: Optional[Dict[str, Any]] = None,
    extra_values: Optional[Dict[str, Any]] = None,
    forced: bool = False,
    restore: bool = False,
) -> bool:
    """
    Move ``record`` to ``new_state`` and append the matching audit row in the
    same unit of work. Returns False when there was nothing to change.
    """
    old_state = record.state
    check_transition(old_state, new_state, forced=forced, restore=restore)
    if old_state == new_state and not extra_values and not forced:
        return False

    values = transition_values(new_state, now, reason)
    values.update(extra_values or {})
    compare_and_set(db, record, values, now)

    record_event(
        db,
        event_type=event_type,
        user_id=record.user_id,
        subscription_id=record.id,
        old_state=old_state,
        new_state=new_state,
        event_data={"reason": reason, **(event_data or {})},
        actor_id=actor_id,
        created_at=now,
    )
    logger.info("Subscription %s for user %s: %s -> %s (%s)", record.id, record.user_id, old_state, new_state, reason)
    return True


def retry_on_conflict(db: Session, record: SubscriptionRecord, operation: Callable[[SubscriptionRecord], T]) -> T:
    """Run a read-modify-write; on a compare-and-set conflict re-read and retry once."""
    try:
        return operation(record)
    except ConcurrencyConflict:
        logger.warning("Concurrent update on subscription %s, retrying once", record.id)
        db.refresh(record)
        return operation(record)
