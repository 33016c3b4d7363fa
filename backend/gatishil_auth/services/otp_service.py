"""One-time code issuing and verification over SMS and email.

SMS codes live in the code store (``otp_records``) and are verified here.
Email codes are delegated entirely to the identity provider, which stores and
checks them itself; the store is bypassed for that channel.

Verification is at-most-once: the only write that can turn a code into a
session is the guarded consume UPDATE in ``otp_repo.consume``.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import CodeRejected, InvalidInput, ProviderUnavailable
from gatishil_auth.core.hashing import OTP_CODE_LENGTH, generate_code, hash_code, parse_code_schemes, verify_code
from gatishil_auth.core.identifiers import Channel, Identifier
from gatishil_auth.db.models import OtpRecord, utcnow
from gatishil_auth.db.repositories import otp_repo, profile_repo
from gatishil_auth.services.identity_provider import IdentityProvider, IdentityRejected, Session
from gatishil_auth.services.sms_gateway import AakashSmsGateway

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(rf"^\d{{{OTP_CODE_LENGTH}}}$")


@dataclass
class SendOutcome:
    """What actually happened on send. Never exposed to clients beyond ``ok``."""

    issued: bool
    channel: Channel
    throttled: bool = False


class OtpVerificationService:
    """Issues and verifies one-time codes for a single request."""

    def __init__(
        self,
        settings: Settings,
        db: AsyncSession,
        sms: AakashSmsGateway,
        identity: IdentityProvider,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.db = db
        self.sms = sms
        self.identity = identity
        self.clock = clock
        self.schemes = parse_code_schemes(settings.otp_hash_schemes)

    # ------------------------------------------------------------------
    # send
    # ------------------------------------------------------------------

    async def send(self, identifier: Identifier, client_ip: str | None = None) -> SendOutcome:
        if identifier.channel == Channel.EMAIL:
            try:
                await self.identity.send_email_otp(identifier.value)
            except IdentityRejected as e:
                # Provider-side throttling or bad address; the client sees the same ack
                logger.warning("Email code not sent to %s: %s", identifier.masked(), e.message[:200])
                return SendOutcome(issued=False, channel=Channel.EMAIL, throttled=True)
            return SendOutcome(issued=True, channel=Channel.EMAIL)

        now = self.clock()
        if await self._throttled(identifier, now):
            return SendOutcome(issued=False, channel=Channel.SMS, throttled=True)

        pepper = self.settings.require("otp_pepper")
        self.settings.require("sms_api_key")

        code = generate_code()
        record = await otp_repo.insert_record(
            self.db,
            OtpRecord(
                identifier=identifier.value,
                code_hash=hash_code(code, pepper),
                attempt_count=0,
                expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
                created_at=now,
                client_ip=client_ip,
            ),
        )
        # Durable before delivery
        await self.db.commit()

        try:
            await self.sms.send(identifier.national_number or identifier.value, self.sms.render(code))
        except ProviderUnavailable:
            await otp_repo.delete_record(self.db, record.id)
            await self.db.commit()
            logger.warning("Rolled back undelivered code for %s", identifier.masked())
            raise

        logger.info("Issued SMS code to %s (record %d)", identifier.masked(), record.id)
        return SendOutcome(issued=True, channel=Channel.SMS)

    async def _throttled(self, identifier: Identifier, now: datetime) -> bool:
        last = await otp_repo.last_issued_at(self.db, identifier.value)
        if last is not None and now - last < timedelta(seconds=self.settings.otp_resend_cooldown_seconds):
            logger.info("Resend cooldown active for %s", identifier.masked())
            return True

        window_start = now - timedelta(seconds=self.settings.otp_send_window_seconds)
        sent = await otp_repo.count_issued_since(self.db, identifier.value, window_start)
        if sent >= self.settings.otp_send_window_max:
            logger.warning("Send quota exhausted for %s (%d in window)", identifier.masked(), sent)
            return True
        return False

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    async def verify(self, identifier: Identifier, code: str) -> Session:
        """Check *code* and return a provider session for the verified identifier."""
        code = (code or "").strip()
        if not _CODE_PATTERN.match(code):
            raise InvalidInput(f"Enter the {OTP_CODE_LENGTH}-digit code", field="code")

        if identifier.channel == Channel.EMAIL:
            return await self._verify_email(identifier, code)

        await self._consume_sms_code(identifier, code)

        profile = await profile_repo.get_by_phone(self.db, identifier.value)
        session = await self.identity.issue_session_for_phone(
            identifier.value, known_user_id=profile.user_id if profile else None
        )
        if session.user_id:
            await profile_repo.upsert_profile(self.db, session.user_id, phone=identifier.value)
        logger.info("Phone verified for %s", identifier.masked())
        return session

    async def _verify_email(self, identifier: Identifier, code: str) -> Session:
        try:
            session = await self.identity.verify_email_otp(identifier.value, code)
        except IdentityRejected as e:
            logger.info("Email code rejected for %s: %s", identifier.masked(), e.message[:200])
            raise CodeRejected() from e
        if session.user_id:
            await profile_repo.upsert_profile(self.db, session.user_id, email=identifier.value)
        logger.info("Email verified for %s", identifier.masked())
        return session

    async def _consume_sms_code(self, identifier: Identifier, code: str) -> None:
        """Consume the newest record for *identifier* or raise ``CodeRejected``.

        Every failure path commits its own bookkeeping (attempt count,
        retirement) before raising, so the request rollback cannot undo it.
        """
        now = self.clock()
        max_attempts = self.settings.otp_max_attempts
        record = await otp_repo.get_latest_unconsumed(self.db, identifier.value)
        if record is None:
            raise CodeRejected()

        if record.expires_at <= now:
            await otp_repo.retire_expired(self.db, record.id, now)
            await self.db.commit()
            raise CodeRejected()

        if record.attempt_count >= max_attempts:
            raise CodeRejected()

        pepper = self.settings.require("otp_pepper")
        matched = verify_code(
            code,
            code_hash=record.code_hash,
            legacy_code=record.legacy_code,
            pepper=pepper,
            schemes=self.schemes,
        )
        if matched is None:
            attempts = await otp_repo.increment_attempts(self.db, record.id)
            await self.db.commit()
            logger.info("Wrong code for %s (attempt %d/%d)", identifier.masked(), attempts, max_attempts)
            raise CodeRejected()

        won = await otp_repo.consume(self.db, record.id, now, max_attempts)
        # Consumption is final even if session minting fails afterwards
        await self.db.commit()
        if not won:
            logger.info("Lost consume race for %s", identifier.masked())
            raise CodeRejected()
        logger.debug("Code matched via %s for %s", matched.value, identifier.masked())
