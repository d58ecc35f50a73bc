"""
Feature and usage gate.

``check_feature`` and ``check_limit`` are pure predicates. The ``*_for_user``
helpers load the tenant's rows and are what the API calls.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.exceptions import ValidationError
from models.profile import Profile
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from services.evaluator import EffectiveState, evaluate
from services.plans import FeatureKey, feature_enabled, parse_feature_key, parse_features

LIMIT_KINDS = ("campaign", "store")

READONLY_REASON = "Account is in read-only mode"
BLOCKED_REASON = "Account is archived"
NOT_IN_PLAN_REASON = "Feature not included in current plan"


@dataclass(frozen=True)
class FeatureDecision:
    allowed: bool
    reason: Optional[str] = None
    upgrade_required: bool = False


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    remaining: Optional[int]  # None = unlimited
    limit: Optional[int] = None
    used: int = 0
    reason: Optional[str] = None


def validate_feature_key(feature_key: Any) -> FeatureKey:
    if isinstance(feature_key, FeatureKey):
        return feature_key
    try:
        return parse_feature_key(str(feature_key))
    except ValueError:
        raise ValidationError(f"Unknown feature key: {feature_key}")


def validate_limit_kind(kind: str) -> str:
    if kind not in LIMIT_KINDS:
        raise ValidationError(f"Unknown limit kind {kind!r}. Must be one of: {', '.join(LIMIT_KINDS)}")
    return kind


def check_feature(feature_key: Any, record: Any, effective: EffectiveState) -> FeatureDecision:
    key = validate_feature_key(feature_key)

    if effective.blocked:
        return FeatureDecision(False, BLOCKED_REASON, upgrade_required=True)
    # Read-only overrides any feature entitlement
    if effective.readonly:
        return FeatureDecision(False, READONLY_REASON, upgrade_required=True)

    features = parse_features(record.features_enabled) if record is not None else effective.features
    if feature_enabled(features.get(key)):
        return FeatureDecision(True)
    return FeatureDecision(False, NOT_IN_PLAN_REASON, upgrade_required=True)


def _counter_values(kind: str, counters: Any) -> tuple[int, Optional[int]]:
    if isinstance(counters, dict):
        return int(counters.get("used") or 0), counters.get("limit")
    if kind == "campaign":
        return counters.campaigns_used or 0, counters.campaigns_limit
    return counters.stores_used or 0, counters.stores_limit


def check_limit(kind: str, counters: Any) -> LimitDecision:
    """
    ``counters`` is a UsageCounters row or a ``{"used": n, "limit": m}`` dict.
    A ``None`` limit is unlimited; ``0`` allows nothing.
    """
    validate_limit_kind(kind)
    if counters is None:
        return LimitDecision(False, 0, reason="No usage counters for tenant")

    used, limit = _counter_values(kind, counters)
    if limit is None:
        return LimitDecision(True, None, None, used)
    if limit < 0:
        raise ValidationError(f"Negative {kind} limit: {limit}")

    remaining = max(0, limit - used)
    if used < limit:
        return LimitDecision(True, remaining, limit, used)
    return LimitDecision(False, remaining, limit, used, reason=f"{kind.capitalize()} limit reached")


def load_tenant(db: Session, user_id: int) -> tuple[Optional[SubscriptionRecord], Optional[Profile]]:
    record = db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).one_or_none()
    profile = db.query(Profile).filter(Profile.user_id == user_id).one_or_none()
    return record, profile


def get_usage(db: Session, user_id: int) -> Optional[UsageCounters]:
    return db.query(UsageCounters).filter(UsageCounters.user_id == user_id).one_or_none()


def get_effective_state(db: Session, user_id: int, now: datetime) -> EffectiveState:
    record, profile = load_tenant(db, user_id)
    return evaluate(record, profile, now)


def check_feature_for_user(db: Session, user_id: int, feature_key: Any, now: datetime) -> FeatureDecision:
    record, profile = load_tenant(db, user_id)
    return check_feature(feature_key, record, evaluate(record, profile, now))


def check_limit_for_user(db: Session, user_id: int, kind: str, now: datetime) -> LimitDecision:
    validate_limit_kind(kind)
    effective = get_effective_state(db, user_id, now)
    decision = check_limit(kind, get_usage(db, user_id))
    if decision.allowed and effective.readonly:
        return LimitDecision(False, decision.remaining, decision.limit, decision.used, reason=READONLY_REASON)
    return decision


def acquire_slot(db: Session, user_id: int, kind: str, now: datetime) -> LimitDecision:
    """Soft check before creating a campaign/store, then count it."""
    decision = check_limit_for_user(db, user_id, kind, now)
    if not decision.allowed:
        return decision

    counters = get_usage(db, user_id)
    if kind == "campaign":
        counters.campaigns_used = (counters.campaigns_used or 0) + 1
    else:
        counters.stores_used = (counters.stores_used or 0) + 1
    db.commit()
    return check_limit(kind, counters)


def release_slot(db: Session, user_id: int, kind: str) -> LimitDecision:
    validate_limit_kind(kind)
    counters = get_usage(db, user_id)
    if counters is None:
        return check_limit(kind, None)
    if kind == "campaign":
        counters.campaigns_used = max(0, (counters.campaigns_used or 0) - 1)
    else:
        counters.stores_used = max(0, (counters.stores_used or 0) - 1)
    db.commit()
    return check_limit(kind, counters)
