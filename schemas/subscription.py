from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class EffectiveStateOut(BaseModel):
    state: str
    readonly: bool
    show_banner: bool
    blocked: bool
    plan_name: str
    plan_code: str
    days_until_suspension: Optional[int] = None
    days_until_archive: Optional[int] = None
    trial_days_remaining: Optional[int] = None
    features: Dict[str, Any] = {}
    allowed_pages: List[str] = []


class FeatureDecisionOut(BaseModel):
    feature: str
    allowed: bool
    reason: Optional[str] = None
    upgrade_required: bool = False


class LimitDecisionOut(BaseModel):
    kind: str
    allowed: bool
    remaining: Optional[int] = None
    limit: Optional[int] = None
    used: int = 0
    reason: Optional[str] = None


class LimitUsage(BaseModel):
    used: int
    limit: Optional[int] = None
    available: Optional[int] = None


class EntitlementsOut(BaseModel):
    plan_code: str
    plan_name: str
    state: str
    readonly: bool
    status: Optional[str] = None
    billing_period: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    grace_period_ends_at: Optional[datetime] = None
    archive_scheduled_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    features: Dict[str, Any] = {}
    limits: Dict[str, LimitUsage] = {}


class AuditLogOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    subscription_id: Optional[int] = None
    actor_id: Optional[int] = None
    event_type: str
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    event_data: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
