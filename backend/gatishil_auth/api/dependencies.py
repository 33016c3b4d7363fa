"""API dependencies: settings, DB sessions, services and caller authentication."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Cookie, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import Unauthorized
from gatishil_auth.core.identifiers import PhonePlan
from gatishil_auth.db.database import session_scope
from gatishil_auth.services.identity_provider import ACCESS_COOKIE, IdentityProvider
from gatishil_auth.services.otp_service import OtpVerificationService
from gatishil_auth.services.pin_service import PinTrustService
from gatishil_auth.services.sms_gateway import AakashSmsGateway
from gatishil_auth.services.webauthn_service import WebAuthnService

# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async for session in session_scope(request.app.state.session_factory):
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db)]

# ---------------------------------------------------------------------------
# External collaborators (overridable in tests)
# ---------------------------------------------------------------------------


def get_identity_provider(settings: AppSettings) -> IdentityProvider:
    return IdentityProvider(settings)


def get_sms_gateway(settings: AppSettings) -> AakashSmsGateway:
    return AakashSmsGateway(settings)


def get_phone_plan(settings: AppSettings) -> PhonePlan:
    return PhonePlan(settings.phone_country_code, settings.phone_national_pattern)


Identity = Annotated[IdentityProvider, Depends(get_identity_provider)]
SmsGateway = Annotated[AakashSmsGateway, Depends(get_sms_gateway)]
Plan = Annotated[PhonePlan, Depends(get_phone_plan)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_otp_service(
    settings: AppSettings, db: DbSession, sms: SmsGateway, identity: Identity
) -> OtpVerificationService:
    return OtpVerificationService(settings, db, sms, identity)


def get_pin_service(settings: AppSettings, db: DbSession, identity: Identity, plan: Plan) -> PinTrustService:
    return PinTrustService(settings, db, identity, plan)


def get_webauthn_service(settings: AppSettings, db: DbSession, identity: Identity) -> WebAuthnService:
    return WebAuthnService(settings, db, identity)


OtpService = Annotated[OtpVerificationService, Depends(get_otp_service)]
PinService = Annotated[PinTrustService, Depends(get_pin_service)]
PasskeyService = Annotated[WebAuthnService, Depends(get_webauthn_service)]

# ---------------------------------------------------------------------------
# Caller authentication (provider-issued access tokens)
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: str
    email: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        return self.email or self.phone or self.id


def verify_access_token(token: str, settings: Settings) -> dict:
    """Decode a provider access token. Returns the claims or raises ``Unauthorized``."""
    try:
        payload = jwt.decode(
            token,
            settings.require("identity_jwt_secret"),
            algorithms=["HS256"],
            audience=settings.identity_jwt_audience,
        )
    except JWTError as exc:
        raise Unauthorized("Invalid or expired token") from exc
    if not payload.get("sub"):
        raise Unauthorized("Missing subject")
    return payload


async def get_current_user(
    settings: AppSettings,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)] = None,
    access_cookie: Annotated[str | None, Cookie(alias=ACCESS_COOKIE)] = None,
) -> CurrentUser:
    """Authenticate from the Bearer header, falling back to the session cookie."""
    token = credentials.credentials if credentials is not None else access_cookie
    if not token:
        raise Unauthorized()
    payload = verify_access_token(token, settings)
    return CurrentUser(id=payload["sub"], email=payload.get("email") or None, phone=payload.get("phone") or None)


AuthenticatedUser = Annotated[CurrentUser, Depends(get_current_user)]
