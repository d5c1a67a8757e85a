"""Durable store for work interrupted by the hosted checkout redirect.

The redirect ends the caller's process, so everything needed to finish a
transition on return lives here: one transition intent and one short-lived
identity snapshot per booking. Records are hints only. Every read is
followed by backend verification before anything is committed.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rentflow.config import settings
from rentflow.database import async_session_maker
from rentflow.models.pending import PendingRecord
from rentflow.schemas.intent import IdentitySnapshot, TransitionIntent

logger = logging.getLogger(__name__)

INTENT_KEY_PREFIX = "pending-transition-intent:"
IDENTITY_KEY_PREFIX = "pending-identity-snapshot:"


def intent_key(booking_id: str) -> str:
    return f"{INTENT_KEY_PREFIX}{booking_id}"


def identity_key(booking_id: str) -> str:
    return f"{IDENTITY_KEY_PREFIX}{booking_id}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ResumptionStore(ABC):
    """Abstract resumption store."""

    @abstractmethod
    async def set(self, booking_id: str, intent: TransitionIntent) -> None:
        """Save the intent for a booking, replacing any previous one."""

    @abstractmethod
    async def get(self, booking_id: str) -> TransitionIntent | None:
        """Return the live intent for a booking, or None if absent or expired."""

    @abstractmethod
    async def clear(self, booking_id: str) -> None:
        """Delete the intent for a booking (no-op when absent)."""

    @abstractmethod
    async def pending_booking_ids(self) -> list[str]:
        """Booking ids that currently have a live intent."""

    @abstractmethod
    async def save_identity(self, booking_id: str, snapshot: IdentitySnapshot) -> None:
        """Save the operator identity to restore when this booking's checkout returns."""

    @abstractmethod
    async def consume_identity(self, booking_id: str) -> IdentitySnapshot | None:
        """Return and delete the identity snapshot saved for a booking."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired records and return how many were removed."""


class SqlResumptionStore(ResumptionStore):
    """Resumption store backed by the `pending_records` table.

    Every write commits before returning, so a fresh store over the same
    database sees it after a restart.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        intent_ttl: timedelta | None = None,
        identity_ttl: timedelta | None = None,
    ) -> None:
        self.session_factory = session_factory or async_session_maker
        self.intent_ttl = intent_ttl or timedelta(minutes=settings.intent_ttl_minutes)
        self.identity_ttl = identity_ttl or timedelta(
            minutes=settings.identity_snapshot_ttl_minutes
        )

    # ==================== RAW RECORDS ====================

    async def _put(self, key: str, payload: dict[str, Any], ttl: timedelta) -> None:
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            await session.merge(
                PendingRecord(key=key, payload=payload, created_at=now, expires_at=now + ttl)
            )
            await session.commit()

    async def _load(self, key: str) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            record = await session.get(PendingRecord, key)
            if record is None:
                return None
            if _as_utc(record.expires_at) <= datetime.now(UTC):
                logger.info(f"Discarding expired pending record {key}")
                await session.delete(record)
                await session.commit()
                return None
            return dict(record.payload)

    async def _delete(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(PendingRecord).where(PendingRecord.key == key))
            await session.commit()

    # ==================== TRANSITION INTENTS ====================

    async def set(self, booking_id: str, intent: TransitionIntent) -> None:
        await self._put(intent_key(booking_id), intent.model_dump(mode="json"), self.intent_ttl)
        logger.info(
            f"Saved transition intent for booking {booking_id}: "
            f"{intent.target_status.value} via {intent.gate_kind.value}"
        )

    async def get(self, booking_id: str) -> TransitionIntent | None:
        key = intent_key(booking_id)
        payload = await self._load(key)
        if payload is None:
            return None
        try:
            return TransitionIntent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Unreadable transition intent for booking {booking_id}, removing: {e}")
            await self._delete(key)
            return None

    async def clear(self, booking_id: str) -> None:
        await self._delete(intent_key(booking_id))
        logger.info(f"Cleared transition intent for booking {booking_id}")

    async def pending_booking_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingRecord.key)
                .where(PendingRecord.key.startswith(INTENT_KEY_PREFIX, autoescape=True))
                .where(PendingRecord.expires_at > datetime.now(UTC))
                .order_by(PendingRecord.created_at)
            )
            keys = result.scalars().all()
        return [key.removeprefix(INTENT_KEY_PREFIX) for key in keys]

    # ==================== IDENTITY SNAPSHOT ====================

    async def save_identity(self, booking_id: str, snapshot: IdentitySnapshot) -> None:
        await self._put(identity_key(booking_id), snapshot.model_dump(mode="json"), self.identity_ttl)

    async def consume_identity(self, booking_id: str) -> IdentitySnapshot | None:
        """Read-and-delete in one transaction.

        The snapshot is gone afterwards even if it was expired, unreadable or
        the caller fails to apply it.
        """
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            record = await session.get(PendingRecord, identity_key(booking_id))
            if record is None:
                return None
            payload = dict(record.payload)
            expired = _as_utc(record.expires_at) <= now
            await session.delete(record)
            await session.commit()

        if expired:
            logger.info(f"Identity snapshot for booking {booking_id} expired before it was consumed")
            return None
        try:
            return IdentitySnapshot.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Unreadable identity snapshot for booking {booking_id} discarded: {e}")
            return None

    # ==================== MAINTENANCE ====================

    async def purge_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingRecord.key).where(PendingRecord.expires_at <= datetime.now(UTC))
            )
            keys = list(result.scalars().all())
            if keys:
                await session.execute(delete(PendingRecord).where(PendingRecord.key.in_(keys)))
                await session.commit()

        if keys:
            logger.info(f"Purged {len(keys)} expired pending records")
        return len(keys)
