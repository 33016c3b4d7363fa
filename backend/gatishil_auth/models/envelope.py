"""API response envelope helpers."""

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gatishil_auth.core.errors import TrustError


class ApiError(BaseModel):
    """Structured error detail."""

    code: str
    message: str
    field: str | None = None


def success_response(data: object = None, **meta: object) -> dict:
    """Build a success envelope dict."""
    return {
        "ok": True,
        "data": data,
        "errors": [],
        "meta": meta,
    }


def error_response(errors: list[ApiError], status_code: int = 400, headers: dict[str, str] | None = None) -> JSONResponse:
    """Build an error envelope response; ``reason`` repeats the first error code."""
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "reason": errors[0].code if errors else "ERROR",
            "data": None,
            "errors": [e.model_dump() for e in errors],
            "meta": {},
        },
        headers=headers,
    )


def trust_error_response(exc: TrustError) -> JSONResponse:
    """Render a taxonomy error with its client-safe message only."""
    field = getattr(exc, "field", None)
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return error_response(
        [ApiError(code=exc.code, message=exc.message, field=field)],
        status_code=exc.status_code,
        headers=headers,
    )
