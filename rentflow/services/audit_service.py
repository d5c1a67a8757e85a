"""Inconsistency ledger.

When money moves at the payment provider but the dependent booking status
write fails, the booking is flagged here. An open flag blocks every further
automated action on that booking until an operator acknowledges it.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rentflow.core.exceptions import InconsistentStateError, NotFoundError
from rentflow.database import async_session_maker
from rentflow.domain.booking_state import BookingStatus
from rentflow.models.audit import InconsistencyFlag

logger = logging.getLogger(__name__)


class AuditService:
    """Service for recording and acknowledging inconsistent bookings."""

    OPERATION_REFUND = "refund"
    OPERATION_DAMAGE_CAPTURE = "damage_capture"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self.session_factory = session_factory or async_session_maker

    async def record_inconsistency(
        self,
        booking_id: str,
        operation: str,
        amount: Decimal,
        target_status: BookingStatus,
        external_ref: str | None = None,
        error_message: str | None = None,
    ) -> InconsistencyFlag:
        """Persist a flag for a booking whose money and status disagree.

        Args:
            booking_id: Booking identifier
            operation: What moved money ("refund", "damage_capture")
            amount: Amount that moved
            target_status: Status that failed to commit
            external_ref: Provider reference for the money movement
            error_message: Why the status commit failed

        Returns:
            Created flag
        """
        flag = InconsistencyFlag(
            booking_id=booking_id,
            operation=operation,
            amount=amount,
            external_ref=external_ref,
            target_status=BookingStatus(target_status).value,
            error_message=error_message,
            created_at=datetime.now(UTC),
        )
        async with self.session_factory() as session:
            session.add(flag)
            await session.commit()

        logger.critical(
            f"INCONSISTENT STATE booking={booking_id} operation={operation} "
            f"amount={amount} ref={external_ref} target={flag.target_status}: {error_message}"
        )
        return flag

    async def list_flags(self, booking_id: str, include_acknowledged: bool = False) -> list[InconsistencyFlag]:
        async with self.session_factory() as session:
            query = select(InconsistencyFlag).where(InconsistencyFlag.booking_id == booking_id)
            if not include_acknowledged:
                query = query.where(InconsistencyFlag.acknowledged_at.is_(None))
            result = await session.execute(query.order_by(InconsistencyFlag.created_at))
            return list(result.scalars().all())

    async def has_open_flag(self, booking_id: str) -> bool:
        return bool(await self.list_flags(booking_id))

    async def ensure_consistent(self, booking_id: str, operation: str) -> None:
        """Refuse automated work on a booking that has an open flag.

        Raises:
            InconsistentStateError: an unacknowledged flag exists
        """
        flags = await self.list_flags(booking_id)
        if flags:
            flag = flags[0]
            raise InconsistentStateError(
                booking_id,
                flag.operation,
                detail=f"'{operation}' blocked until flag {flag.id} is acknowledged",
                flag_id=flag.id,
            )

    async def acknowledge(self, flag_id: str, operator: str, note: str | None = None) -> InconsistencyFlag:
        """Mark a flag as reviewed by an operator.

        Raises:
            NotFoundError: no such flag
        """
        async with self.session_factory() as session:
            flag = await session.get(InconsistencyFlag, flag_id)
            if flag is None:
                raise NotFoundError("Inconsistency flag", flag_id)
            if flag.acknowledged_at is None:
                flag.acknowledged_at = datetime.now(UTC)
                flag.acknowledged_by = operator
                flag.note = note
                await session.commit()
                logger.warning(
                    f"Inconsistency flag {flag_id} on booking {flag.booking_id} "
                    f"acknowledged by {operator}"
                )
            return flag


audit_service = AuditService()
