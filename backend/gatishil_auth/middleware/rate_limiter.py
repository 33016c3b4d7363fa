"""Per-IP rate limiting using slowapi.

Keys on the socket peer. Behind a reverse proxy, run uvicorn with
``--proxy-headers --forwarded-allow-ips=<proxy>`` so the peer is the real
client address.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from gatishil_auth.models.envelope import ApiError, error_response

limiter = Limiter(key_func=get_remote_address)

OTP_SEND_LIMIT = "5/10 minutes"
OTP_VERIFY_LIMIT = "20/minute"
PIN_LIMIT = "10/minute"
WEBAUTHN_LIMIT = "10/minute"


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Per-IP limit hit; same envelope as every other failure."""
    return error_response(
        [ApiError(code="RATE_LIMITED", message=f"Too many requests: {exc.detail}")],
        status_code=429,
    )
