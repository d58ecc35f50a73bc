"""
Billing events coming from the payment provider.

The webhook layer translates Stripe payloads into calls to
``apply_billing_event`` (subscription status changes) and
``activate_subscription`` (checkout completion).
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import NotFoundError, ValidationError
from models.profile import Profile
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from models.user import User
from services import lifecycle
from services.audit import BILLING_EVENT, SUBSCRIPTION_ACTIVATED, record_event
from services.plans import TRIAL_PLAN, get_plan

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"active", "trialing"})
LAPSED_STATUSES = frozenset({"past_due", "unpaid", "canceled", "incomplete_expired"})

_PERIOD_DAYS = {"monthly": 30, "annual": 365}


def _billing_values(new_status: str, period_start, period_end, cancel_at_period_end) -> Dict[str, Any]:
    values: Dict[str, Any] = {"status": new_status}
    if period_start is not None:
        values["current_period_start"] = period_start
    if period_end is not None:
        values["current_period_end"] = period_end
    if cancel_at_period_end is not None:
        values["cancel_at_period_end"] = bool(cancel_at_period_end)
    return values


def reactivation_period_end(record: SubscriptionRecord, now: datetime) -> datetime:
    return now + timedelta(days=_PERIOD_DAYS.get(record.billing_period, _PERIOD_DAYS["monthly"]))


def _sync_profile(db: Session, user_id: int, **fields) -> None:
    profile = db.query(Profile).filter(Profile.user_id == user_id).one_or_none()
    if profile is None:
        return
    for key, value in fields.items():
        setattr(profile, key, value)


def apply_billing_event(
    db: Session,
    *,
    subscription_id: str,
    new_status: str,
    period_end: Any,
    now: datetime,
    period_start: Any = None,
    cancel_at_period_end: Optional[bool] = None,
) -> SubscriptionRecord:
    """
    Apply a provider status change to the record holding ``subscription_id``.

    Paid statuses reactivate an expired or suspended record; lapsed statuses
    expire an active one. Archived records only have the status recorded.
    """
    record = (
        db.query(SubscriptionRecord)
        .filter(SubscriptionRecord.stripe_subscription_id == subscription_id)
        .one_or_none()
    )
    if record is None:
        raise NotFoundError(f"No subscription with provider id {subscription_id}")

    status = (new_status or "").strip().lower()
    if not status:
        raise ValidationError("Billing status is required")
    values = _billing_values(
        status,
        lifecycle.coerce_timestamp(period_start),
        lifecycle.coerce_timestamp(period_end),
        cancel_at_period_end,
    )
    old_state = record.state

    def _apply(rec: SubscriptionRecord) -> None:
        if rec.state == lifecycle.ARCHIVED:
            logger.warning("Billing status %s for archived subscription %s; not reactivating", status, rec.id)
            lifecycle.compare_and_set(db, rec, {"status": status}, now)
        elif status in PAID_STATUSES and rec.state != lifecycle.ACTIVE:
            reactivation = dict(values)
            end = reactivation.get("current_period_end") or lifecycle.coerce_timestamp(rec.current_period_end)
            if end is None or end <= now:
                # The payment must open a period that is still running
                reactivation["current_period_end"] = reactivation_period_end(rec, now)
            lifecycle.apply_transition(
                db, rec, lifecycle.ACTIVE, now=now, reason="payment_succeeded",
                event_data={"billing_status": status}, extra_values=reactivation,
            )
            values.update(reactivation)
        elif status in LAPSED_STATUSES and rec.state == lifecycle.ACTIVE:
            lifecycle.apply_transition(
                db, rec, lifecycle.EXPIRED, now=now, reason=f"billing_{status}",
                event_data={"billing_status": status}, extra_values=values,
            )
        else:
            # Renewal of an active record, or a status with no lifecycle effect
            lifecycle.compare_and_set(db, rec, values, now)

    lifecycle.retry_on_conflict(db, record, _apply)

    if record.state == lifecycle.ACTIVE:
        _sync_profile(db, record.user_id, subscription_status="active")
    elif record.state != old_state:
        _sync_profile(db, record.user_id, subscription_status="inactive")

    record_event(
        db,
        event_type=BILLING_EVENT,
        user_id=record.user_id,
        subscription_id=record.id,
        old_state=old_state,
        new_state=record.state,
        event_data={
            "provider_subscription_id": subscription_id,
            "status": status,
            "period_end": values.get("current_period_end"),
        },
        created_at=now,
    )
    db.commit()
    logger.info("Billing event %s for subscription %s: %s -> %s", status, record.id, old_state, record.state)
    return record


def activate_subscription(
    db: Session,
    *,
    user_id: int,
    plan_code: str,
    now: datetime,
    billing_period: str = "monthly",
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    period_start: Any = None,
    period_end: Any = None,
) -> SubscriptionRecord:
    """Create or update the tenant's record after a completed checkout."""
    plan = get_plan(plan_code)
    if plan is None or plan.code == TRIAL_PLAN.code:
        raise ValidationError(f"Unknown plan: {plan_code}")
    if billing_period not in _PERIOD_DAYS:
        raise ValidationError(f"Invalid billing period. Must be one of: {', '.join(_PERIOD_DAYS)}")
    if db.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    start = lifecycle.coerce_timestamp(period_start) or now
    end = lifecycle.coerce_timestamp(period_end) or start + timedelta(days=_PERIOD_DAYS[billing_period])
    values: Dict[str, Any] = {
        "plan_code": plan.code,
        "plan_name": plan.name,
        "billing_period": billing_period,
        "status": "active",
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": False,
        "campaign_limit": plan.campaign_limit,
        "store_limit": plan.store_limit,
        "features_enabled": plan.features_json(),
    }
    if stripe_customer_id:
        values["stripe_customer_id"] = stripe_customer_id
    if stripe_subscription_id:
        values["stripe_subscription_id"] = stripe_subscription_id
    event_data = {"plan_code": plan.code, "billing_period": billing_period, "period_end": end}

    record = db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).one_or_none()
    if record is None:
        record = SubscriptionRecord(
            user_id=user_id,
            state=lifecycle.ACTIVE,
            readonly_mode=False,
            last_state_change_at=now,
            state_change_reason="checkout_completed",
            **values,
        )
        db.add(record)
        db.flush()
        record_event(
            db,
            event_type=SUBSCRIPTION_ACTIVATED,
            user_id=user_id,
            subscription_id=record.id,
            new_state=lifecycle.ACTIVE,
            event_data=event_data,
            created_at=now,
        )
    else:
        lifecycle.retry_on_conflict(
            db, record,
            lambda rec: lifecycle.apply_transition(
                db, rec, lifecycle.ACTIVE, now=now, reason="checkout_completed",
                event_type=SUBSCRIPTION_ACTIVATED, event_data=event_data, extra_values=values,
            ),
        )

    counters = db.query(UsageCounters).filter(UsageCounters.user_id == user_id).one_or_none()
    if counters is None:
        counters = UsageCounters(user_id=user_id, campaigns_used=0, stores_used=0)
        db.add(counters)
    counters.campaigns_limit = plan.campaign_limit
    counters.stores_limit = plan.store_limit
    if counters.reset_at is None:
        counters.reset_at = now + timedelta(days=settings.USAGE_RESET_DAYS)

    _sync_profile(db, user_id, subscription_plan=plan.code, subscription_status="active")
    db.commit()
    logger.info("Activated %s (%s) for user %s until %s", plan.name, billing_period, user_id, end)
    return record
