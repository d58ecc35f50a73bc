from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.clock import Clock, get_clock
from core.db import get_db
from core.tenancy import require_admin
from models.user import User
from schemas.admin import (
    AddAdminRequest,
    AdminOut,
    ForceStatusRequest,
    RetentionJobOut,
    SubscriptionOut,
    TransitionJobOut,
)
from schemas.subscription import AuditLogOut
from services import admin as admin_service
from services.audit import list_events
from services.retention import send_retention_emails
from services.transitions import run_transition_job

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/subscriptions/{user_id}/state", response_model=SubscriptionOut)
def force_subscription_state(
    user_id: int,
    data: ForceStatusRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return admin_service.set_subscription_state(
        db, user_id, data.new_state, data.reason, admin.id, clock(), period_end=data.current_period_end,
    )


@router.post("/users/{user_id}/restore", response_model=SubscriptionOut)
def restore_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return admin_service.restore_user(db, user_id, admin.id, clock())


@router.get("/admins", response_model=list[AdminOut])
def list_admins(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return [
        AdminOut(user_id=user.id, email=user.email, full_name=user.full_name, granted_at=granted_at)
        for user, granted_at in admin_service.list_admins(db)
    ]


@router.post("/admins", response_model=AdminOut, status_code=201)
def add_admin(
    data: AddAdminRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    user = admin_service.add_admin(
        db, actor_id=admin.id, now=clock(), target_user_id=data.user_id, email=data.email,
    )
    return AdminOut(user_id=user.id, email=user.email, full_name=user.full_name)


@router.delete("/admins/{user_id}")
def remove_admin(
    user_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    admin_service.remove_admin(db, target_user_id=user_id, actor_id=admin.id, now=clock())
    return {"detail": "Admin role removed"}


@router.get("/audit-logs", response_model=list[AuditLogOut])
def audit_logs(
    user_id: int | None = None,
    event_type: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return list_events(db, user_id=user_id, event_type=event_type, limit=limit, offset=offset)


@router.post("/jobs/transitions", response_model=TransitionJobOut)
def run_transitions(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return run_transition_job(db, clock()).to_dict()


@router.post("/jobs/retention-emails", response_model=RetentionJobOut)
def run_retention_emails(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return send_retention_emails(db, clock()).to_dict()
