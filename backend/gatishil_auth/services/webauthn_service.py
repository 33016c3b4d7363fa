"""Passkey registration and sign-in.

No challenge is kept server-side. Each options call returns a signed,
short-lived token carrying the challenge; the route puts it in an httpOnly
cookie and the matching verify call reads it back and clears it. A missing,
expired, forged or foreign token is treated the same as no challenge at all.
"""

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, options_to_json
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import ChallengeMissing, InvalidInput, PasskeyVerificationFailed
from gatishil_auth.core.relying_party import derive_rp_id, extract_registration_credential
from gatishil_auth.db.exceptions import DuplicateRecordError
from gatishil_auth.db.models import utcnow
from gatishil_auth.db.repositories import passkey_repo
from gatishil_auth.services.identity_provider import IdentityProvider, Session

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
REGISTER = "register"
LOGIN = "login"


@dataclass
class IssuedOptions:
    """Options for the browser plus the token that binds their challenge."""

    options: dict[str, Any]
    challenge_token: str


@dataclass
class BoundChallenge:
    challenge: bytes
    rp_id: str
    user_id: str | None


def _serialize_options(options: object) -> dict:
    """Convert a py_webauthn options dataclass to a JSON-safe dict."""
    return json.loads(options_to_json(options))


class WebAuthnService:
    def __init__(self, settings: Settings, db: AsyncSession, identity: IdentityProvider) -> None:
        self.settings = settings
        self.db = db
        self.identity = identity

    # ------------------------------------------------------------------
    # Challenge tokens
    # ------------------------------------------------------------------

    def encode_challenge(self, challenge: bytes, *, purpose: str, rp_id: str, user_id: str | None = None) -> str:
        expire = utcnow() + timedelta(seconds=self.settings.webauthn_challenge_ttl_seconds)
        claims: dict[str, Any] = {
            "chal": bytes_to_base64url(challenge),
            "purpose": purpose,
            "rp": rp_id,
            "exp": expire,
        }
        if user_id is not None:
            claims["sub"] = user_id
        return jwt.encode(claims, self.settings.require("webauthn_challenge_secret"), algorithm=_ALGORITHM)

    def decode_challenge(self, token: str | None, *, purpose: str, user_id: str | None = None) -> BoundChallenge:
        if not token:
            raise ChallengeMissing()
        try:
            claims = jwt.decode(token, self.settings.require("webauthn_challenge_secret"), algorithms=[_ALGORITHM])
        except JWTError as e:
            logger.info("Rejected challenge cookie: %s", e)
            raise ChallengeMissing() from e
        if claims.get("purpose") != purpose or claims.get("sub") != user_id or not claims.get("chal"):
            logger.info("Challenge cookie bound to a different ceremony or user")
            raise ChallengeMissing()
        return BoundChallenge(
            challenge=base64url_to_bytes(claims["chal"]),
            rp_id=claims.get("rp") or derive_rp_id(None, self.settings.webauthn_canonical_domain),
            user_id=claims.get("sub"),
        )

    def _rp_id(self, host: str | None) -> str:
        return derive_rp_id(host, self.settings.webauthn_canonical_domain)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def registration_options(self, user_id: str, user_name: str | None, host: str | None) -> IssuedOptions:
        rp_id = self._rp_id(host)
        existing = await passkey_repo.list_credential_ids(self.db, user_id)
        exclude = [PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid)) for cid in existing]

        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=self.settings.webauthn_rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name or user_id,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=exclude,
            timeout=60000,
        )
        token = self.encode_challenge(options.challenge, purpose=REGISTER, rp_id=rp_id, user_id=user_id)
        logger.info("Issued registration options for user %s (rp=%s, %d excluded)", user_id, rp_id, len(exclude))
        return IssuedOptions(options=_serialize_options(options), challenge_token=token)

    async def verify_registration(self, user_id: str, payload: Any, challenge_token: str | None) -> str:
        """Verify an attestation and persist the credential. Returns its base64url id."""
        credential = extract_registration_credential(payload)
        if credential is None:
            raise InvalidInput("Bad credential payload", field="credential")

        bound = self.decode_challenge(challenge_token, purpose=REGISTER, user_id=user_id)

        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=bound.challenge,
                expected_rp_id=bound.rp_id,
                expected_origin=list(self.settings.webauthn_origins),
                require_user_verification=False,
            )
        except Exception as exc:
            logger.warning("Passkey registration verification failed for user %s: %s", user_id, exc)
            raise PasskeyVerificationFailed() from exc

        credential_id = bytes_to_base64url(verification.credential_id)
        transports = credential["response"].get("transports")
        try:
            await passkey_repo.upsert_credential(
                self.db,
                user_id=user_id,
                credential_id=credential_id,
                public_key=verification.credential_public_key,
                counter=verification.sign_count,
                device_type=getattr(verification.credential_device_type, "value", None),
                backed_up=verification.credential_backed_up,
                transports=transports if isinstance(transports, list) else None,
            )
        except DuplicateRecordError as exc:
            logger.warning("Passkey %s already bound to another account", credential_id)
            raise PasskeyVerificationFailed() from exc
        await passkey_repo.mark_passkey_enabled(self.db, user_id, credential_id)
        await self.db.commit()
        logger.info("Registered passkey for user %s", user_id)
        return credential_id

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def authentication_options(self, host: str | None) -> IssuedOptions:
        """Options for a discoverable-credential sign-in (no user known yet)."""
        rp_id = self._rp_id(host)
        options = generate_authentication_options(
            rp_id=rp_id,
            user_verification=UserVerificationRequirement.PREFERRED,
            timeout=60000,
        )
        token = self.encode_challenge(options.challenge, purpose=LOGIN, rp_id=rp_id)
        return IssuedOptions(options=_serialize_options(options), challenge_token=token)

    async def verify_authentication(self, payload: Any, challenge_token: str | None) -> Session:
        credential = payload.get("credential", payload) if isinstance(payload, dict) else None
        if not isinstance(credential, dict) or not isinstance(credential.get("id"), str):
            raise InvalidInput("Bad credential payload", field="credential")

        bound = self.decode_challenge(challenge_token, purpose=LOGIN)

        stored = await passkey_repo.get_credential(self.db, credential["id"])
        if stored is None:
            logger.info("Sign-in with unknown passkey")
            raise PasskeyVerificationFailed()

        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=bound.challenge,
                expected_rp_id=bound.rp_id,
                expected_origin=list(self.settings.webauthn_origins),
                credential_public_key=stored.public_key,
                credential_current_sign_count=stored.counter,
                require_user_verification=False,
            )
        except Exception as exc:
            logger.warning("Passkey sign-in verification failed for user %s: %s", stored.user_id, exc)
            raise PasskeyVerificationFailed() from exc

        await passkey_repo.update_counter(self.db, stored.credential_id, verification.new_sign_count)
        await self.db.commit()

        session = await self.identity.issue_session_for_user(stored.user_id)
        logger.info("Passkey sign-in for user %s", stored.user_id)
        return session
