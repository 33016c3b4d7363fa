"""Code store: issued one-time codes and the atomic updates on them."""

import logging
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.db.exceptions import ConnectionError, DatabaseError
from gatishil_auth.db.models import OtpRecord

logger = logging.getLogger(__name__)


async def insert_record(db: AsyncSession, record: OtpRecord) -> OtpRecord:
    """Persist a freshly issued code."""
    try:
        db.add(record)
        await db.flush()
        await db.refresh(record)
        return record
    except OperationalError as e:
        logger.error("Database connection error in insert_record: %s", e)
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error("Unexpected error inserting OTP record: %s", e)
        raise DatabaseError(f"Failed to insert OTP record: {e}") from e


async def delete_record(db: AsyncSession, record_id: int) -> None:
    """Remove a record whose code never reached the user."""
    try:
        await db.execute(delete(OtpRecord).where(OtpRecord.id == record_id))
        await db.flush()
    except OperationalError as e:
        logger.error("Database connection error in delete_record: %s", e)
        raise ConnectionError("Database connection failed") from e


async def get_latest_unconsumed(db: AsyncSession, identifier: str) -> OtpRecord | None:
    """Most recent record for *identifier* that has not been consumed.

    Older unconsumed records are shadowed: only the newest code can verify.
    """
    try:
        result = await db.execute(
            select(OtpRecord)
            .where(OtpRecord.identifier == identifier, OtpRecord.consumed_at.is_(None))
            .order_by(OtpRecord.created_at.desc(), OtpRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_latest_unconsumed: %s", e)
        raise ConnectionError("Database connection failed") from e


async def last_issued_at(db: AsyncSession, identifier: str) -> datetime | None:
    """Creation time of the newest record, consumed or not."""
    result = await db.execute(
        select(func.max(OtpRecord.created_at)).where(OtpRecord.identifier == identifier)
    )
    return result.scalar_one_or_none()


async def count_issued_since(db: AsyncSession, identifier: str, since: datetime) -> int:
    result = await db.execute(
        select(func.count(OtpRecord.id)).where(
            OtpRecord.identifier == identifier,
            OtpRecord.created_at >= since,
        )
    )
    return int(result.scalar_one())


async def increment_attempts(db: AsyncSession, record_id: int) -> int:
    """Atomically bump the attempt counter and return its new value."""
    try:
        await db.execute(
            update(OtpRecord)
            .where(OtpRecord.id == record_id)
            .values(attempt_count=OtpRecord.attempt_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(select(OtpRecord.attempt_count).where(OtpRecord.id == record_id))
        return int(result.scalar_one())
    except OperationalError as e:
        logger.error("Database connection error in increment_attempts: %s", e)
        raise ConnectionError("Database connection failed") from e


async def consume(db: AsyncSession, record_id: int, now: datetime, max_attempts: int) -> bool:
    """Mark a record consumed. True only for the caller whose update won.

    The guard lives in the WHERE clause, so two concurrent verifiers cannot
    both observe success, and an exhausted record can never be consumed.
    """
    try:
        result = await db.execute(
            update(OtpRecord)
            .where(
                OtpRecord.id == record_id,
                OtpRecord.consumed_at.is_(None),
                OtpRecord.attempt_count < max_attempts,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    except OperationalError as e:
        logger.error("Database connection error in consume: %s", e)
        raise ConnectionError("Database connection failed") from e


async def retire_expired(db: AsyncSession, record_id: int, now: datetime) -> None:
    """Close out an expired record so it stops shadowing lookups."""
    await db.execute(
        update(OtpRecord)
        .where(OtpRecord.id == record_id, OtpRecord.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
