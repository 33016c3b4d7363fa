"""WebAuthn passkey endpoints: register and sign in with platform authenticators."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Request, Response
from fastapi.responses import JSONResponse

from gatishil_auth.api.dependencies import AppSettings, AuthenticatedUser, PasskeyService
from gatishil_auth.config import Settings
from gatishil_auth.core.errors import TrustError
from gatishil_auth.middleware.rate_limiter import WEBAUTHN_LIMIT, limiter
from gatishil_auth.models.envelope import success_response, trust_error_response
from gatishil_auth.services.identity_provider import apply_session_cookies

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_challenge_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.webauthn_challenge_cookie,
        token,
        max_age=settings.webauthn_challenge_ttl_seconds,
        httponly=True,
        secure=not settings.dev_mode,
        samesite="lax",
        path="/",
    )


def _clear_challenge_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.webauthn_challenge_cookie,
        path="/",
        httponly=True,
        secure=not settings.dev_mode,
        samesite="lax",
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/options")
@limiter.limit(WEBAUTHN_LIMIT)
async def registration_options(
    request: Request,
    response: Response,
    user: AuthenticatedUser,
    service: PasskeyService,
    settings: AppSettings,
) -> dict:
    """Registration options for the signed-in user; the challenge rides in a cookie."""
    issued = await service.registration_options(user.id, user.display_name, request.headers.get("host"))
    _set_challenge_cookie(response, issued.challenge_token, settings)
    return success_response(issued.options)


@router.post("/verify", response_model=None)
@limiter.limit(WEBAUTHN_LIMIT)
async def verify_registration(
    request: Request,
    response: Response,
    user: AuthenticatedUser,
    service: PasskeyService,
    settings: AppSettings,
    payload: dict[str, Any] = Body(...),
) -> dict | JSONResponse:
    """Verify the attestation and store the passkey. The challenge is single-use."""
    token = request.cookies.get(settings.webauthn_challenge_cookie)
    _clear_challenge_cookie(response, settings)
    try:
        credential_id = await service.verify_registration(user.id, payload, token)
    except TrustError as exc:
        failure = trust_error_response(exc)
        _clear_challenge_cookie(failure, settings)
        return failure
    return success_response({"credential_id": credential_id})


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@router.post("/login/options")
@limiter.limit(WEBAUTHN_LIMIT)
async def authentication_options(
    request: Request,
    response: Response,
    service: PasskeyService,
    settings: AppSettings,
) -> dict:
    issued = service.authentication_options(request.headers.get("host"))
    _set_challenge_cookie(response, issued.challenge_token, settings)
    return success_response(issued.options)


@router.post("/login/verify", response_model=None)
@limiter.limit(WEBAUTHN_LIMIT)
async def verify_authentication(
    request: Request,
    response: Response,
    service: PasskeyService,
    settings: AppSettings,
    payload: dict[str, Any] = Body(...),
) -> dict | JSONResponse:
    token = request.cookies.get(settings.webauthn_challenge_cookie)
    _clear_challenge_cookie(response, settings)
    try:
        session = await service.verify_authentication(payload, token)
    except TrustError as exc:
        failure = trust_error_response(exc)
        _clear_challenge_cookie(failure, settings)
        return failure
    apply_session_cookies(response, session, settings)
    return success_response({"user_id": session.user_id})
