"""One-time code endpoints (SMS and email)."""

import logging

from fastapi import APIRouter, Request, Response

from gatishil_auth.api.dependencies import AppSettings, OtpService, Plan
from gatishil_auth.core.identifiers import normalize_payload
from gatishil_auth.middleware.rate_limiter import OTP_SEND_LIMIT, OTP_VERIFY_LIMIT, limiter
from gatishil_auth.models.envelope import success_response
from gatishil_auth.models.verification import OtpSendRequest, OtpVerifyRequest
from gatishil_auth.services.identity_provider import apply_session_cookies

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/send")
@limiter.limit(OTP_SEND_LIMIT)
async def send_code(request: Request, body: OtpSendRequest, service: OtpService, plan: Plan) -> dict:
    """Issue a code. The acknowledgement is identical whether or not a code went out."""
    identifier = normalize_payload(plan, body.model_dump(exclude_none=True)).unwrap()
    client_ip = request.client.host if request.client else None
    await service.send(identifier, client_ip=client_ip)
    return success_response({"channel": identifier.channel.value})


@router.post("/verify")
@limiter.limit(OTP_VERIFY_LIMIT)
async def verify_code(
    request: Request,
    response: Response,
    body: OtpVerifyRequest,
    service: OtpService,
    plan: Plan,
    settings: AppSettings,
) -> dict:
    """Check a code and start a provider session for the verified identifier."""
    identifier = normalize_payload(plan, body.model_dump(exclude_none=True)).unwrap()
    session = await service.verify(identifier, body.submitted_code)
    apply_session_cookies(response, session, settings)
    return success_response({"session": session.to_public(), "user_id": session.user_id})
