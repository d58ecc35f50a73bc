import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.config import settings
from services import lifecycle
from services.plans import FREE_PLAN, TRIAL_PLAN, FeatureMap, get_plan, parse_features

TRIAL_ACTIVE = "trial-active"
TRIAL_EXPIRED_READONLY = "trial-expired-readonly"
ACTIVE = "active"
EXPIRED_READONLY = "expired-readonly"
SUSPENDED_READONLY = "suspended-readonly"
ARCHIVED_BLOCKED = "archived-blocked"

_SECONDS_PER_DAY = 86400

# Pages still reachable while the account is degraded
_EXPIRED_PAGES = ("dashboard", "campaign-control", "products", "settings", "integrations")
_LOCKED_PAGES = ("settings",)


@dataclass(frozen=True)
class EffectiveState:
    state: str
    readonly: bool
    show_banner: bool
    plan_name: str
    plan_code: str
    blocked: bool = False
    days_until_suspension: Optional[int] = None
    days_until_archive: Optional[int] = None
    trial_days_remaining: Optional[int] = None
    features: FeatureMap = field(default_factory=dict)
    allowed_pages: tuple[str, ...] = ()


def _days_until(moment: Optional[datetime], now: datetime) -> Optional[int]:
    if moment is None:
        return None
    return math.ceil((moment - now).total_seconds() / _SECONDS_PER_DAY)


def _trial_expired(plan_name: str = TRIAL_PLAN.name, plan_code: str = TRIAL_PLAN.code) -> EffectiveState:
    return EffectiveState(
        state=TRIAL_EXPIRED_READONLY,
        readonly=True,
        show_banner=True,
        plan_name=plan_name,
        plan_code=plan_code,
        trial_days_remaining=0,
        features=dict(FREE_PLAN.features),
        allowed_pages=FREE_PLAN.allowed_pages,
    )


def _evaluate_trial(profile: Any, now: datetime) -> EffectiveState:
    trial_ends_at = lifecycle.coerce_timestamp(getattr(profile, "trial_ends_at", None))
    if trial_ends_at is None or now >= trial_ends_at:
        return _trial_expired()

    remaining = _days_until(trial_ends_at, now)
    return EffectiveState(
        state=TRIAL_ACTIVE,
        readonly=False,
        show_banner=remaining <= settings.TRIAL_WARNING_DAYS,
        plan_name=TRIAL_PLAN.name,
        plan_code=TRIAL_PLAN.code,
        trial_days_remaining=remaining,
        features=dict(TRIAL_PLAN.features),
        allowed_pages=TRIAL_PLAN.allowed_pages,
    )


def evaluate(record: Any, profile: Any, now: datetime) -> EffectiveState:
    """
    Derive the access level a tenant has at ``now``.

    Pure: reads ``record`` (a SubscriptionRecord or None) and ``profile``
    (a Profile or None) and never mutates them, so identical inputs always
    give identical output. Missing data degrades to a restrictive state;
    nothing here raises for absent or malformed timestamps.
    """
    if record is None:
        plan = (getattr(profile, "subscription_plan", None) or "").lower()
        if plan == TRIAL_PLAN.code:
            return _evaluate_trial(profile, now)
        return _trial_expired(FREE_PLAN.name, FREE_PLAN.code)

    plan = get_plan(getattr(record, "plan_code", None))
    plan_code = getattr(record, "plan_code", None) or FREE_PLAN.code
    plan_name = getattr(record, "plan_name", None) or (plan.name if plan else FREE_PLAN.name)
    features = parse_features(getattr(record, "features_enabled", None))
    projection = lifecycle.project(record, now)

    if projection.state == lifecycle.ACTIVE:
        return EffectiveState(
            state=ACTIVE,
            readonly=False,
            show_banner=False,
            plan_name=plan_name,
            plan_code=plan_code,
            features=features,
            allowed_pages=plan.allowed_pages if plan else FREE_PLAN.allowed_pages,
        )

    if projection.state == lifecycle.EXPIRED:
        return EffectiveState(
            state=EXPIRED_READONLY,
            readonly=True,
            show_banner=True,
            plan_name=plan_name,
            plan_code=plan_code,
            days_until_suspension=_days_until(projection.grace_period_ends_at, now),
            features=features,
            allowed_pages=_EXPIRED_PAGES,
        )

    if projection.state == lifecycle.SUSPENDED:
        return EffectiveState(
            state=SUSPENDED_READONLY,
            readonly=True,
            show_banner=True,
            plan_name=plan_name,
            plan_code=plan_code,
            days_until_archive=_days_until(projection.archive_scheduled_at, now),
            features=features,
            allowed_pages=_LOCKED_PAGES,
        )

    return EffectiveState(
        state=ARCHIVED_BLOCKED,
        readonly=True,
        show_banner=True,
        blocked=True,
        plan_name=plan_name,
        plan_code=plan_code,
        features={},
        allowed_pages=_LOCKED_PAGES,
    )
