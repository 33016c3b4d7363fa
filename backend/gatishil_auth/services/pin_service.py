"""Trust PIN: a short PIN standing in for the provider password.

Setting a PIN stores a fresh salt and writes ``derive(pin, user_id, salt,
pepper)`` into the identity provider as the account password. Signing in
recomputes that value and rides on the provider's ordinary password grant,
so the PIN never needs its own session logic.

A bcrypt hash of the PIN (``trusted_factors.pin_hash``) gates every attempt
with a 5-strike / 15-minute lockout before the provider is contacted.
"""

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, NoReturn

from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import (
    CredentialSyncFailed,
    InvalidInput,
    PinLocked,
    PinRejected,
    PinUnavailable,
)
from gatishil_auth.core.hashing import hash_pin, verify_pin_hash
from gatishil_auth.core.identifiers import PhonePlan, normalize_email
from gatishil_auth.core.pin_kdf import DEFAULT_PARAMS, ScryptParams, b64u, b64u_decode, derive, generate_salt
from gatishil_auth.db.models import Profile, TrustedFactor, utcnow
from gatishil_auth.db.repositories import pin_repo, profile_repo
from gatishil_auth.services.identity_provider import IdentityProvider, IdentityRejected, Session

logger = logging.getLogger(__name__)

_PIN_PATTERN = re.compile(r"^\d{4,8}$")
LOGIN_METHODS = ("phone", "email")


def validate_pin(pin: str) -> str:
    pin = (pin or "").strip()
    if not _PIN_PATTERN.match(pin):
        raise InvalidInput("PIN must be 4 to 8 digits", field="pin")
    return pin


class PinTrustService:
    def __init__(
        self,
        settings: Settings,
        db: AsyncSession,
        identity: IdentityProvider,
        plan: PhonePlan,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.db = db
        self.identity = identity
        self.plan = plan
        self.clock = clock

    # ------------------------------------------------------------------
    # set
    # ------------------------------------------------------------------

    async def set_pin(self, user_id: str, pin: str) -> Session:
        """(Re)set the PIN for an authenticated user and return a fresh session.

        The provider password changes underneath the caller, so the current
        session is replaced by one obtained with the new derived password.
        """
        email, derived = await self._write_pin(user_id, validate_pin(pin))
        try:
            session = await self.identity.sign_in_with_password(derived, email=email)
        except IdentityRejected as e:
            logger.error("Re-sign-in after PIN set refused for user %s: %s", user_id, e.message[:200])
            raise CredentialSyncFailed("Provider refused freshly set PIN") from e
        if session.user_id is None:
            session.user_id = user_id
        logger.info("PIN set for user %s", user_id)
        return session

    async def admin_set_pin(self, user_id: str, pin: str) -> None:
        """Maintenance path: same derivation, no re-sign-in."""
        await self._write_pin(user_id, validate_pin(pin))
        logger.info("PIN set by admin task for user %s", user_id)

    async def _write_pin(self, user_id: str, pin: str) -> tuple[str, str]:
        """Store a new salt and hash, then push the derived password to the provider."""
        user = await self.identity.admin_get_user(user_id)
        if user is None:
            raise PinUnavailable()
        email = await self.identity.ensure_canonical_email(user)

        salt = generate_salt()
        await pin_repo.store_pin(
            self.db,
            user_id,
            salt_b64=b64u(salt),
            kdf=DEFAULT_PARAMS.label,
            pin_hash=hash_pin(pin),
        )
        await self._mirror_profile(user_id, user, email)

        derived = self._derive_current(pin, user_id, salt)
        try:
            await self.identity.admin_update_user(user_id, password=derived)
        except IdentityRejected as e:
            logger.error("Provider refused derived password for user %s: %s", user_id, e.message[:200])
            raise CredentialSyncFailed("Provider password update failed") from e
        await self.db.commit()
        return email, derived

    def _derive_current(self, pin: str, user_id: str, salt: bytes) -> str:
        return derive(
            pin,
            user_id,
            salt,
            self.settings.pin_peppers[0],
            length=self.settings.pin_derived_length,
        )

    async def _mirror_profile(self, user_id: str, user: dict[str, Any], email: str) -> None:
        phone = self.plan.to_e164("+" + user["phone"].lstrip("+")) if user.get("phone") else None
        await profile_repo.upsert_profile(self.db, user_id, phone=phone, email=email)

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    async def login(self, method: str, user: str, pin: str) -> Session:
        pin = validate_pin(pin)
        method = (method or "").strip().lower()
        if method not in LOGIN_METHODS:
            raise InvalidInput("Method must be phone or email", field="method")

        profile = await self._resolve_profile(method, user)
        if profile is None:
            raise PinUnavailable()
        user_id = profile.user_id
        now = self.clock()

        factor = await pin_repo.get_factor(self.db, user_id)
        if factor is not None and factor.locked_until is not None and factor.locked_until > now:
            retry_after = int((factor.locked_until - now).total_seconds()) + 1
            raise PinLocked(retry_after=retry_after)

        credential = await pin_repo.get_credential(self.db, user_id)
        if credential is None or not credential.salt_b64:
            raise PinUnavailable()

        gate_passed = False
        if factor is not None and factor.pin_hash:
            if not verify_pin_hash(pin, factor.pin_hash):
                await self._fail(user_id, now)
            gate_passed = True

        session = await self._exchange(method, profile, pin, credential.salt_b64, credential.kdf)
        if session is None:
            if gate_passed:
                logger.error("PIN gate passed but provider refused derived password for user %s", user_id)
                raise CredentialSyncFailed("Derived credential out of sync")
            await self._fail(user_id, now)

        await pin_repo.reset_failures(self.db, user_id, now)
        await self.db.commit()
        if session.user_id is None:
            session.user_id = user_id
        logger.info("PIN sign-in for user %s", user_id)
        return session

    async def _resolve_profile(self, method: str, user: str) -> Profile | None:
        if method == "phone":
            e164 = self.plan.to_e164(user)
            if e164 is None:
                raise InvalidInput("Enter a valid mobile number", field="user")
            return await profile_repo.get_by_phone(self.db, e164)
        email = normalize_email(user)
        if email is None:
            raise InvalidInput("Enter a valid email address", field="user")
        return await profile_repo.get_by_email(self.db, email)

    async def _exchange(
        self, method: str, profile: Profile, pin: str, salt_b64: str, kdf: str | None
    ) -> Session | None:
        """Try every active pepper against every sign-in identifier the account has."""
        salt = b64u_decode(salt_b64)
        params = ScryptParams.from_label(kdf)

        account = await self.identity.admin_get_user(profile.user_id) or {}
        targets: list[dict[str, str]] = []
        email = account.get("email") or profile.email
        phone = profile.phone or account.get("phone")
        if email:
            targets.append({"email": email})
        if phone:
            targets.insert(0 if method == "phone" else len(targets), {"phone": phone})

        for pepper in self.settings.pin_peppers:
            derived = derive(
                pin, profile.user_id, salt, pepper, params=params, length=self.settings.pin_derived_length
            )
            for target in targets:
                try:
                    return await self.identity.sign_in_with_password(derived, **target)
                except IdentityRejected:
                    continue
        return None

    async def _fail(self, user_id: str, now: datetime) -> NoReturn:
        factor: TrustedFactor = await pin_repo.record_failure(
            self.db,
            user_id,
            now,
            max_attempts=self.settings.pin_max_attempts,
            lockout=timedelta(minutes=self.settings.pin_lockout_minutes),
        )
        await self.db.commit()
        logger.info(
            "Wrong PIN for user %s (%d/%d)", user_id, factor.failed_attempts, self.settings.pin_max_attempts
        )
        raise PinRejected()

