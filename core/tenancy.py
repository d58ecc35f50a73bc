"""Request-scoped subscription checks for tenant endpoints."""
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from core.clock import Clock, get_clock
from core.db import get_db
from models.user import User
from security import jwt as jwt_utils
from services.admin import is_admin
from services.evaluator import EffectiveState
from services.gate import get_effective_state


def get_current_user(
    db: Session = Depends(get_db), authorization: Optional[str] = Header(default=None, alias="Authorization")
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        user_id = jwt_utils.token_user_id(jwt_utils.decode_access(token))
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_tenant_state(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> EffectiveState:
    return get_effective_state(db, user.id, clock())


def require_writable(effective: EffectiveState = Depends(get_tenant_state)) -> EffectiveState:
    """Reject mutations while the account is read-only or archived."""
    if effective.blocked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is archived")
    if effective.readonly:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Subscription inactive: account is in read-only mode",
        )
    return effective


def require_admin(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> User:
    if not is_admin(db, user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user
