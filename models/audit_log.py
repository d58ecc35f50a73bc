from datetime import datetime

from sqlalchemy import String, DateTime, ForeignKey, JSON, event
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class AuditLogEntry(Base):
    """Append-only record of state transitions and privileged actions."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    actor_id: Mapped[int | None] = mapped_column(nullable=True)  # admin who performed the action
    event_type: Mapped[str] = mapped_column(String(50), index=True)
    old_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    event_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise RuntimeError("audit_logs is append-only")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RuntimeError("audit_logs is append-only")
