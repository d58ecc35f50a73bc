from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class RetentionEmailMarker(Base):
    """Processed-marker for one retention email per (user, offset day) in an expiry cycle."""
    __tablename__ = "retention_email_markers"
    __table_args__ = (
        UniqueConstraint("user_id", "offset_day", "expired_on", name="uq_retention_marker"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    offset_day: Mapped[int] = mapped_column()
    expired_on: Mapped[date] = mapped_column(Date)  # date part of current_period_end
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
