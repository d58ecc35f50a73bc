from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class ForceStatusRequest(BaseModel):
    new_state: str
    reason: Optional[str] = Field(None, max_length=500)
    current_period_end: Optional[datetime] = None


class SubscriptionOut(BaseModel):
    id: int
    user_id: int
    plan_code: str
    plan_name: str
    state: str
    status: str
    readonly_mode: bool
    current_period_end: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    archive_scheduled_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    last_state_change_at: Optional[datetime] = None
    state_change_reason: Optional[str] = None

    class Config:
        from_attributes = True


class AddAdminRequest(BaseModel):
    user_id: Optional[int] = None
    email: Optional[EmailStr] = None

    @model_validator(mode="after")
    def _one_target(self):
        if self.user_id is None and self.email is None:
            raise ValueError("Either user_id or email is required")
        return self


class AdminOut(BaseModel):
    user_id: int
    email: str
    full_name: str
    granted_at: Optional[datetime] = None


class TransitionJobOut(BaseModel):
    expired: int
    suspended: int
    archived: int
    usage_reset: int
    errors: List[Dict[str, Any]] = []


class RetentionJobOut(BaseModel):
    sent: int
    skipped: int
    errors: List[Dict[str, Any]] = []
