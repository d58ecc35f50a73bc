import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

import jwt

from core.clock import Clock, get_clock
from core.config import settings
from core.db import get_db
from core.tenancy import get_current_user
from models.profile import Profile
from models.usage import UsageCounters
from models.user import User
from schemas.auth import LoginRequest, RefreshTokenRequest, RegisterRequest, TokenPair
from schemas.users import UserOut
from security import jwt as jwt_utils
from security.password import hash_password, verify_password
from services.email import send_templated_email
from services.plans import TRIAL_PLAN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=UserOut, status_code=201)
def register(data: RegisterRequest, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    existing = db.query(User).filter(User.email == data.email.lower()).one_or_none()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    now = clock()
    trial_ends_at = now + timedelta(days=settings.TRIAL_DAYS)
    user = User(
        first_name=data.first_name.strip(),
        last_name=data.last_name.strip(),
        email=data.email.lower(),
        password_hash=hash_password(data.password),
        created_at=now,
    )
    db.add(user)
    db.flush()
    # New tenants start on the trial tier; no subscription record until checkout
    db.add(Profile(
        user_id=user.id,
        full_name=user.full_name,
        company_name=(data.company_name or "").strip() or None,
        subscription_plan=TRIAL_PLAN.code,
        subscription_status="active",
        trial_ends_at=trial_ends_at,
    ))
    db.add(UsageCounters(
        user_id=user.id,
        campaigns_used=0,
        campaigns_limit=TRIAL_PLAN.campaign_limit,
        stores_used=0,
        stores_limit=TRIAL_PLAN.store_limit,
        reset_at=now + timedelta(days=settings.USAGE_RESET_DAYS),
    ))
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s with trial until %s", user.id, trial_ends_at)

    send_templated_email(
        user.email,
        f"Welcome to {settings.APP_NAME}: your trial has started",
        "emails/trial_started.html",
        {
            "user_name": user.full_name,
            "plan_name": TRIAL_PLAN.name,
            "trial_ends_at": trial_ends_at,
            "trial_days": settings.TRIAL_DAYS,
        },
        to_name=user.full_name,
        tags=["trial-started"],
    )
    return user


@router.post("/login", response_model=TokenPair)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email.lower()).one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is archived")
    access = jwt_utils.create_access_token(user.id)
    refresh = jwt_utils.create_refresh_token(user.id)
    return TokenPair(access_token=access, refresh_token=refresh)


@router.post("/refresh-token", response_model=TokenPair)
def refresh_token(data: RefreshTokenRequest, db: Session = Depends(get_db)):
    try:
        user_id = jwt_utils.token_user_id(jwt_utils.decode_refresh(data.refresh_token))
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    access = jwt_utils.create_access_token(user.id)
    refresh = jwt_utils.create_refresh_token(user.id)
    return TokenPair(access_token=access, refresh_token=refresh)


@router.get("/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user
