"""Profile repository: local mirror of identity-provider accounts."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.core.identifiers import mask_identifier
from gatishil_auth.db.exceptions import ConnectionError, DatabaseError, DuplicateRecordError
from gatishil_auth.db.models import Profile

logger = logging.getLogger(__name__)


async def get_by_user_id(db: AsyncSession, user_id: str) -> Profile | None:
    try:
        result = await db.execute(select(Profile).where(Profile.user_id == user_id))
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_by_user_id for user %s: %s", user_id, e)
        raise ConnectionError("Database connection failed") from e


async def get_by_phone(db: AsyncSession, phone: str) -> Profile | None:
    """Look up by E.164 phone, also matching rows stored in the old ``0…`` local form."""
    try:
        local_form = "0" + phone[4:] if phone.startswith("+977") else phone
        result = await db.execute(
            select(Profile).where(Profile.phone.in_([phone, local_form])).limit(1)
        )
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_by_phone for %s: %s", mask_identifier(phone), e)
        raise ConnectionError("Database connection failed") from e


async def get_by_email(db: AsyncSession, email: str) -> Profile | None:
    try:
        result = await db.execute(select(Profile).where(Profile.email == email.lower()))
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error("Database connection error in get_by_email for %s: %s", mask_identifier(email), e)
        raise ConnectionError("Database connection failed") from e


async def upsert_profile(
    db: AsyncSession,
    user_id: str,
    *,
    phone: str | None = None,
    email: str | None = None,
) -> Profile:
    """Create or refresh the mirror row; only non-empty fields overwrite."""
    try:
        profile = await get_by_user_id(db, user_id)
        if profile is None:
            profile = Profile(user_id=user_id, phone=phone, email=email.lower() if email else None)
            db.add(profile)
        else:
            if phone:
                profile.phone = phone
            if email:
                profile.email = email.lower()
        await db.flush()
        return profile
    except IntegrityError as e:
        logger.error("Identifier already mirrored for another user (user %s): %s", user_id, e)
        raise DuplicateRecordError("Identifier already belongs to another profile") from e
    except OperationalError as e:
        logger.error("Database connection error in upsert_profile: %s", e)
        raise ConnectionError("Database connection failed") from e
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("Unexpected error upserting profile %s: %s", user_id, e)
        raise DatabaseError(f"Failed to upsert profile: {e}") from e
