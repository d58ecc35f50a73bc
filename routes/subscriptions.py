from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from core.clock import Clock, get_clock
from core.db import get_db
from core.tenancy import get_current_user, get_tenant_state, require_writable
from models.user import User
from schemas.subscription import (
    AuditLogOut,
    EffectiveStateOut,
    EntitlementsOut,
    FeatureDecisionOut,
    LimitDecisionOut,
    LimitUsage,
)
from services import gate
from services.audit import list_events
from services.evaluator import EffectiveState
from services.plans import parse_features

router = APIRouter(prefix="/subscription", tags=["subscription"])


def _state_out(effective: EffectiveState) -> EffectiveStateOut:
    data = asdict(effective)
    data["features"] = {key.value: value for key, value in effective.features.items()}
    data["allowed_pages"] = list(effective.allowed_pages)
    return EffectiveStateOut(**data)


def _limit_out(kind: str, decision: gate.LimitDecision) -> LimitDecisionOut:
    return LimitDecisionOut(kind=kind, **asdict(decision))


@router.get("/state", response_model=EffectiveStateOut)
def subscription_state(effective: EffectiveState = Depends(get_tenant_state)):
    return _state_out(effective)


@router.get("/entitlements", response_model=EntitlementsOut)
def entitlements(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    record, profile = gate.load_tenant(db, current_user.id)
    effective = gate.get_effective_state(db, current_user.id, clock())
    counters = gate.get_usage(db, current_user.id)

    limits = {}
    for kind in gate.LIMIT_KINDS:
        decision = gate.check_limit(kind, counters)
        limits[kind] = LimitUsage(used=decision.used, limit=decision.limit, available=decision.remaining)

    features = parse_features(record.features_enabled) if record is not None else effective.features
    return EntitlementsOut(
        plan_code=effective.plan_code,
        plan_name=effective.plan_name,
        state=effective.state,
        readonly=effective.readonly,
        status=record.status if record else None,
        billing_period=record.billing_period if record else None,
        current_period_end=record.current_period_end if record else None,
        cancel_at_period_end=bool(record.cancel_at_period_end) if record else False,
        grace_period_ends_at=record.grace_period_ends_at if record else None,
        archive_scheduled_at=record.archive_scheduled_at if record else None,
        trial_ends_at=profile.trial_ends_at if profile else None,
        features={key.value: value for key, value in features.items()},
        limits=limits,
    )


@router.get("/features/{feature_key}", response_model=FeatureDecisionOut)
def feature_access(
    feature_key: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    decision = gate.check_feature_for_user(db, current_user.id, feature_key, clock())
    return FeatureDecisionOut(feature=gate.validate_feature_key(feature_key).value, **asdict(decision))


@router.get("/limits/{kind}", response_model=LimitDecisionOut)
def limit_check(
    kind: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return _limit_out(kind, gate.check_limit_for_user(db, current_user.id, kind, clock()))


@router.post("/usage/{kind}/acquire", response_model=LimitDecisionOut)
def acquire_usage(
    kind: str,
    current_user: User = Depends(get_current_user),
    _: EffectiveState = Depends(require_writable),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    decision = gate.acquire_slot(db, current_user.id, kind, clock())
    if not decision.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)
    return _limit_out(kind, decision)


@router.post("/usage/{kind}/release", response_model=LimitDecisionOut)
def release_usage(
    kind: str,
    current_user: User = Depends(get_current_user),
    _: EffectiveState = Depends(require_writable),
    db: Session = Depends(get_db),
):
    return _limit_out(kind, gate.release_slot(db, current_user.id, kind))


@router.get("/history", response_model=list[AuditLogOut])
def subscription_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return list_events(db, user_id=current_user.id, limit=limit, offset=offset)
