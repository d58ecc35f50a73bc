from datetime import datetime

from sqlalchemy import Boolean, DateTime, JSON, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class ArchivedUserData(Base):
    __tablename__ = "archived_user_data"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # Plain integer: the live user row survives (anonymized) but must not cascade here
    original_user_id: Mapped[int] = mapped_column(index=True)
    encrypted_snapshot: Mapped[bytes] = mapped_column(LargeBinary)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    can_restore: Mapped[bool] = mapped_column(Boolean, default=True)
    restoration_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    restored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
