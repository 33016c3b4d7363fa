"""Repository for WebAuthn passkey credential operations."""

import json
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.db.exceptions import ConnectionError, DatabaseError, DuplicateRecordError
from gatishil_auth.db.models import UserSecurity, WebAuthnCredential, utcnow

logger = logging.getLogger(__name__)


async def upsert_credential(
    db: AsyncSession,
    *,
    user_id: str,
    credential_id: str,
    public_key: bytes,
    counter: int,
    device_type: str | None,
    backed_up: bool | None,
    transports: list[str] | None,
) -> WebAuthnCredential:
    """Insert or refresh a credential keyed by its globally unique credential id."""
    try:
        cred = await get_credential(db, credential_id)
        if cred is not None and cred.user_id != user_id:
            raise DuplicateRecordError("Credential already registered to another account")
        if cred is None:
            cred = WebAuthnCredential(user_id=user_id, credential_id=credential_id)
            db.add(cred)
        cred.public_key = public_key
        cred.counter = counter
        cred.device_type = device_type
        cred.backed_up = backed_up
        cred.transports = json.dumps(transports) if transports else None
        cred.last_used_at = utcnow()
        await db.flush()
        return cred
    except IntegrityError as e:
        logger.error("Duplicate passkey credential for user %s: %s", user_id, e)
        raise DuplicateRecordError("Credential already registered") from e
    except OperationalError as e:
        logger.error("Database connection error in upsert_credential: %s", e)
        raise ConnectionError("Database connection failed") from e
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("Unexpected error storing passkey for user %s: %s", user_id, e)
        raise DatabaseError(f"Failed to store passkey: {e}") from e


async def get_credential(db: AsyncSession, credential_id: str) -> WebAuthnCredential | None:
    """Look up a passkey credential by its base64url credential id."""
    result = await db.execute(
        select(WebAuthnCredential).where(WebAuthnCredential.credential_id == credential_id)
    )
    return result.scalar_one_or_none()


async def list_credential_ids(db: AsyncSession, user_id: str) -> list[str]:
    """Return the credential ids a user already registered."""
    try:
        result = await db.execute(
            select(WebAuthnCredential.credential_id).where(WebAuthnCredential.user_id == user_id)
        )
        return list(result.scalars().all())
    except OperationalError as e:
        logger.error("Database connection error in list_credential_ids: %s", e)
        raise ConnectionError("Database connection failed") from e


async def update_counter(db: AsyncSession, credential_id: str, new_counter: int) -> None:
    """Store the new signature counter after a successful authentication."""
    await db.execute(
        update(WebAuthnCredential)
        .where(WebAuthnCredential.credential_id == credential_id)
        .values(counter=new_counter, last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def mark_passkey_enabled(db: AsyncSession, user_id: str, credential_id: str) -> UserSecurity:
    """Flag the account as passkey-enabled and remember the credential id (idempotent)."""
    try:
        result = await db.execute(select(UserSecurity).where(UserSecurity.user_id == user_id))
        security = result.scalar_one_or_none()
        if security is None:
            security = UserSecurity(user_id=user_id, passkey_enabled=True, passkey_cred_ids=[credential_id])
            db.add(security)
        else:
            ids = list(security.passkey_cred_ids or [])
            if credential_id not in ids:
                ids.append(credential_id)
            # Reassign so the JSON column registers the change
            security.passkey_cred_ids = ids
            security.passkey_enabled = True
        await db.flush()
        return security
    except OperationalError as e:
        logger.error("Database connection error in mark_passkey_enabled: %s", e)
        raise ConnectionError("Database connection failed") from e
