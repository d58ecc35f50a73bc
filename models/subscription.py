from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class SubscriptionRecord(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, index=True)

    # Plan
    plan_code: Mapped[str] = mapped_column(String(50), default="free")
    plan_name: Mapped[str] = mapped_column(String(100), default="FREE")
    billing_period: Mapped[str] = mapped_column(String(20), default="monthly")  # monthly, annual

    # Lifecycle: active -> expired -> suspended -> archived
    state: Mapped[str] = mapped_column(String(20), default="active", index=True)
    # Provider-reported billing status (Stripe: active, trialing, past_due, canceled, ...)
    status: Mapped[str] = mapped_column(String(30), default="active")

    current_period_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archive_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    readonly_mode: Mapped[bool] = mapped_column(Boolean, default=False)

    # Limits: NULL means unlimited, 0 means none
    campaign_limit: Mapped[int | None] = mapped_column(nullable=True)
    store_limit: Mapped[int | None] = mapped_column(nullable=True)
    features_enabled: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)

    last_state_change_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    state_change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscription")
