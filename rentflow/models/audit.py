"""Operator-facing audit records."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from rentflow.database import Base


class InconsistencyFlag(Base):
    """Money moved at the provider but the booking status did not follow.

    While unacknowledged, no automated action may touch the booking.
    """

    __tablename__ = "inconsistency_flags"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    booking_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)  # refund, damage_capture
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(200))  # refund id / capture ref
    target_status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    acknowledged_by: Mapped[str | None] = mapped_column(String(200))
    note: Mapped[str | None] = mapped_column(Text)

    @property
    def is_open(self) -> bool:
        return self.acknowledged_at is None
