"""Trust PIN endpoints."""

import hmac
import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request, Response

from gatishil_auth.api.dependencies import AppSettings, AuthenticatedUser, PinService
from gatishil_auth.core.errors import AdminForbidden
from gatishil_auth.middleware.rate_limiter import PIN_LIMIT, limiter
from gatishil_auth.models.envelope import success_response
from gatishil_auth.models.verification import AdminPinSetRequest, PinLoginRequest, PinSetRequest
from gatishil_auth.services.identity_provider import apply_session_cookies

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


@router.post("/set")
@limiter.limit(PIN_LIMIT)
async def set_pin(
    request: Request,
    response: Response,
    body: PinSetRequest,
    user: AuthenticatedUser,
    service: PinService,
    settings: AppSettings,
) -> dict:
    """Set or change the PIN of the signed-in user; the session is refreshed."""
    session = await service.set_pin(user.id, body.pin)
    apply_session_cookies(response, session, settings)
    return success_response({"user_id": user.id})


@router.post("/login")
@limiter.limit(PIN_LIMIT)
async def login_with_pin(
    request: Request,
    response: Response,
    body: PinLoginRequest,
    service: PinService,
    settings: AppSettings,
) -> dict:
    session = await service.login(body.method, body.user, body.pin)
    apply_session_cookies(response, session, settings)
    return success_response({"user_id": session.user_id})


@admin_router.post("/pin/set")
async def admin_set_pin(
    body: AdminPinSetRequest,
    service: PinService,
    settings: AppSettings,
    x_admin_secret: Annotated[str | None, Header()] = None,
) -> dict:
    """Maintenance task: set a PIN for any user. Guarded by the shared admin secret."""
    expected = settings.require("admin_task_secret")
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, expected):
        logger.warning("Admin PIN set attempted with a bad secret")
        raise AdminForbidden()
    await service.admin_set_pin(body.user_id, body.pin)
    return success_response({"user_id": body.user_id})
