"""Resumption records that must survive a full restart."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from rentflow.database import Base


class PendingRecord(Base):
    """Key-value record with an expiry.

    Keys: pending-transition-intent:<booking_id>, pending-identity-snapshot:<booking_id>
    """

    __tablename__ = "pending_records"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
