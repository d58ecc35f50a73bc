"""
Scheduled subscription transitions.

Walks every non-archived subscription and applies whatever step the clock has
made due. Each tenant is committed on its own so a failure for one tenant
is rolled back and reported without stopping the rest of the batch.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from services import lifecycle
from services.archive import archive_tenant
from services.audit import USAGE_RESET, record_event

logger = logging.getLogger(__name__)

_REASONS = {
    lifecycle.EXPIRED: "period_ended",
    lifecycle.SUSPENDED: "grace_period_ended",
    lifecycle.ARCHIVED: "inactive_period_ended",
}


@dataclass
class TransitionSummary:
    expired: int = 0
    suspended: int = 0
    archived: int = 0
    usage_reset: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _advance(db: Session, record: SubscriptionRecord, now: datetime) -> Optional[str]:
    due = lifecycle.due_transition(record, now)
    if due is None:
        return None
    if due == lifecycle.ARCHIVED:
        archive_tenant(db, record, now, reason=_REASONS[due])
    else:
        lifecycle.apply_transition(db, record, due, now=now, reason=_REASONS[due])
    return due


def advance_tenant(db: Session, record: SubscriptionRecord, now: datetime) -> Optional[str]:
    """Apply at most one due step for ``record`` and commit it."""
    step = lifecycle.retry_on_conflict(db, record, lambda rec: _advance(db, rec, now))
    if step is not None:
        db.commit()
    return step


def reset_usage_counters(db: Session, now: datetime, summary: TransitionSummary) -> None:
    counters = (
        db.query(UsageCounters)
        .filter(UsageCounters.reset_at.isnot(None), UsageCounters.reset_at <= now)
        .order_by(UsageCounters.id)
        .all()
    )
    for row in counters:
        try:
            previous = row.campaigns_used
            row.campaigns_used = 0
            row.reset_at = now + timedelta(days=settings.USAGE_RESET_DAYS)
            record_event(
                db,
                event_type=USAGE_RESET,
                user_id=row.user_id,
                event_data={"campaigns_used": previous, "next_reset_at": row.reset_at.isoformat()},
                created_at=now,
            )
            db.commit()
            summary.usage_reset += 1
        except Exception as exc:
            db.rollback()
            logger.exception("Usage reset failed for user %s", row.user_id)
            summary.errors.append({"user_id": row.user_id, "step": USAGE_RESET, "error": str(exc)})


def run_transition_job(db: Session, now: datetime) -> TransitionSummary:
    summary = TransitionSummary()
    ids = [
        row_id
        for (row_id,) in db.query(SubscriptionRecord.id)
        .filter(SubscriptionRecord.state != lifecycle.ARCHIVED)
        .order_by(SubscriptionRecord.id)
        .all()
    ]
    logger.info("Checking %d subscriptions for due transitions", len(ids))

    for record_id in ids:
        record = db.get(SubscriptionRecord, record_id)
        if record is None:
            continue
        user_id = record.user_id
        try:
            step = advance_tenant(db, record, now)
        except Exception as exc:
            db.rollback()
            logger.exception("Transition failed for subscription %s (user %s)", record_id, user_id)
            summary.errors.append({"subscription_id": record_id, "user_id": user_id, "error": str(exc)})
            continue
        if step == lifecycle.EXPIRED:
            summary.expired += 1
        elif step == lifecycle.SUSPENDED:
            summary.suspended += 1
        elif step == lifecycle.ARCHIVED:
            summary.archived += 1

    reset_usage_counters(db, now, summary)
    logger.info(
        "Transition job done: %d expired, %d suspended, %d archived, %d usage resets, %d errors",
        summary.expired, summary.suspended, summary.archived, summary.usage_reset, len(summary.errors),
    )
    return summary
