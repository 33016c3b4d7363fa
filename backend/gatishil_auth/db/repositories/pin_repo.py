"""Trusted-factor and PIN salt repository."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import case, null, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.db.exceptions import ConnectionError, DatabaseError, RecordNotFoundError
from gatishil_auth.db.models import PinCredential, TrustedFactor

logger = logging.getLogger(__name__)


async def get_factor(db: AsyncSession, user_id: str) -> TrustedFactor | None:
    try:
        result = await db.execute(
            select(TrustedFactor)
            .where(TrustedFactor.auth_user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_factor for user %s: %s", user_id, e)
        raise ConnectionError("Database connection failed") from e


async def get_credential(db: AsyncSession, user_id: str) -> PinCredential | None:
    try:
        result = await db.execute(select(PinCredential).where(PinCredential.user_id == user_id))
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_credential for user %s: %s", user_id, e)
        raise ConnectionError("Database connection failed") from e


async def store_pin(
    db: AsyncSession,
    user_id: str,
    *,
    salt_b64: str,
    kdf: str,
    pin_hash: str,
) -> None:
    """Write salt and PIN hash, updating existing rows rather than recreating them."""
    try:
        credential = await get_credential(db, user_id)
        if credential is None:
            db.add(PinCredential(user_id=user_id, salt_b64=salt_b64, kdf=kdf))
        else:
            credential.salt_b64 = salt_b64
            credential.kdf = kdf

        factor = await get_factor(db, user_id)
        if factor is None:
            db.add(TrustedFactor(auth_user_id=user_id, factor_type="pin", pin_hash=pin_hash))
        else:
            factor.pin_hash = pin_hash
            factor.failed_attempts = 0
            factor.locked_until = None
        await db.flush()
    except OperationalError as e:
        logger.error("Database connection error in store_pin: %s", e)
        raise ConnectionError("Database connection failed") from e
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("Unexpected error storing PIN for user %s: %s", user_id, e)
        raise DatabaseError(f"Failed to store PIN: {e}") from e


async def record_failure(
    db: AsyncSession,
    user_id: str,
    now: datetime,
    *,
    max_attempts: int,
    lockout: timedelta,
) -> TrustedFactor:
    """Count a failed PIN check and lock the factor once the limit is reached.

    Both steps are single UPDATE statements; a lock that already ran out
    starts a fresh strike window instead of re-locking on the first miss.
    """
    lock_expired = TrustedFactor.locked_until.is_not(None) & (TrustedFactor.locked_until <= now)
    try:
        result = await db.execute(
            update(TrustedFactor)
            .where(TrustedFactor.auth_user_id == user_id)
            .values(
                failed_attempts=case(
                    (lock_expired, 1),
                    else_=TrustedFactor.failed_attempts + 1,
                ),
                locked_until=case(
                    (lock_expired, null()),
                    else_=TrustedFactor.locked_until,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Salt-only accounts from before the PIN gate existed
            db.add(TrustedFactor(auth_user_id=user_id, factor_type="pin", failed_attempts=1))
            await db.flush()

        await db.execute(
            update(TrustedFactor)
            .where(
                TrustedFactor.auth_user_id == user_id,
                TrustedFactor.failed_attempts >= max_attempts,
                TrustedFactor.locked_until.is_(None),
            )
            .values(locked_until=now + lockout)
            .execution_options(synchronize_session=False)
        )
    except OperationalError as e:
        logger.error("Database connection error in record_failure: %s", e)
        raise ConnectionError("Database connection failed") from e

    factor = await get_factor(db, user_id)
    if factor is None:
        raise RecordNotFoundError(f"Trusted factor vanished for user {user_id}")
    return factor


async def reset_failures(db: AsyncSession, user_id: str, now: datetime) -> None:
    try:
        await db.execute(
            update(TrustedFactor)
            .where(TrustedFactor.auth_user_id == user_id)
            .values(failed_attempts=0, locked_until=None, last_used_at=now)
            .execution_options(synchronize_session=False)
        )
    except OperationalError as e:
        logger.error("Database connection error in reset_failures: %s", e)
        raise ConnectionError("Database connection failed") from e
