from datetime import datetime

from sqlalchemy import DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class UsageCounters(Base):
    __tablename__ = "usage_counters"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, index=True)

    campaigns_used: Mapped[int] = mapped_column(default=0)
    campaigns_limit: Mapped[int | None] = mapped_column(nullable=True)  # NULL = unlimited
    stores_used: Mapped[int] = mapped_column(default=0)
    stores_limit: Mapped[int | None] = mapped_column(nullable=True)  # NULL = unlimited

    reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="usage")
