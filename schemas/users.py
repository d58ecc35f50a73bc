from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ProfileOut(BaseModel):
    full_name: Optional[str] = None
    company_name: Optional[str] = None
    subscription_plan: str
    subscription_status: str
    trial_ends_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    # Plain str: anonymized addresses use the reserved .invalid TLD
    email: str
    is_active: bool
    profile: Optional[ProfileOut] = None

    class Config:
        from_attributes = True
