"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from gatishil_auth.api.routes import otp, pin, webauthn
from gatishil_auth.config import Settings
from gatishil_auth.core.errors import TrustError
from gatishil_auth.db.database import build_engine, build_session_factory
from gatishil_auth.db.exceptions import DatabaseError
from gatishil_auth.middleware.rate_limiter import limiter, rate_limit_exceeded_handler
from gatishil_auth.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware
from gatishil_auth.models.envelope import ApiError, error_response, trust_error_response

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    """Configure logging format based on dev_mode."""
    if not settings.dev_mode:
        fmt = (
            '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s",'
            '"request_id":"%(request_id)s","message":"%(message)s"}'
        )
    else:
        fmt = "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s"
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=fmt)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIDLogFilter) for f in handler.filters):
            handler.addFilter(RequestIDLogFilter())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application around one ``Settings`` instance."""
    settings = settings or Settings()
    configure_logging(settings)

    engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager - disposes the engine on shutdown."""
        yield
        await engine.dispose()

    app = FastAPI(
        title="Gatishil Auth API",
        description="Identity verification and device trust for Gatishil Nepal",
        version="0.1.0",
        openapi_url="/api/v1/openapi.json",
        docs_url="/docs" if settings.dev_mode else None,
        redoc_url="/redoc" if settings.dev_mode else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    # -----------------------------------------------------------------------
    # Middleware
    # -----------------------------------------------------------------------

    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers["X-Content-Type-Options"] = "nosniff"
            response.headers["X-Frame-Options"] = "DENY"
            response.headers["Cache-Control"] = "no-store"
            if not settings.dev_mode:
                response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
            return response

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # -----------------------------------------------------------------------
    # Global exception handlers
    # -----------------------------------------------------------------------

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(TrustError)
    async def _trust_error_handler(request: Request, exc: TrustError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
        else:
            logger.info("%s on %s %s", exc.code, request.method, request.url.path)
        return trust_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            ApiError(
                code="INVALID_INPUT",
                message=str(err.get("msg", "Invalid input")),
                field=".".join(str(part) for part in err.get("loc", ())[1:]) or None,
            )
            for err in exc.errors()
        ]
        return error_response(errors or [ApiError(code="INVALID_INPUT", message="Invalid input")], status_code=400)

    @app.exception_handler(DatabaseError)
    async def _database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return error_response(
            [ApiError(code="STORE_UNAVAILABLE", message="Could not complete the request. Please try again")],
            status_code=500,
        )

    @app.exception_handler(Exception)
    async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=True)
        detail = str(exc) if settings.dev_mode else "Internal server error"
        return error_response([ApiError(code="INTERNAL_ERROR", message=detail)], status_code=500)

    # -----------------------------------------------------------------------
    # CORS
    # -----------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    )

    # -----------------------------------------------------------------------
    # Routers under /api/v1/
    # -----------------------------------------------------------------------

    app.include_router(otp.router, prefix="/api/v1/otp", tags=["otp"])
    app.include_router(pin.router, prefix="/api/v1/pin", tags=["pin"])
    app.include_router(pin.admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(webauthn.router, prefix="/api/v1/webauthn", tags=["webauthn"])

    # -----------------------------------------------------------------------
    # System endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health_check() -> dict:
        """Liveness check: reports which collaborators are configured."""
        return {
            "status": "healthy",
            "services": {
                "sms_gateway": "ok" if settings.sms_api_key else "not_configured",
                "identity_provider": "ok" if settings.identity_url and settings.identity_service_key else "not_configured",
                "otp_pepper": "ok" if len(settings.otp_pepper) >= 16 else "not_configured",
                "pin_pepper": "ok" if len(settings.pin_pepper) >= 16 else "not_configured",
            },
        }

    @app.get("/health/ready")
    async def readiness_check() -> JSONResponse:
        """Readiness check: verifies the database is reachable."""
        checks: dict[str, str] = {}
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.warning("Readiness probe could not reach the database", exc_info=True)
            checks["database"] = "unavailable"

        all_ok = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={"status": "ready" if all_ok else "degraded", "services": checks},
        )

    return app
