"""Error taxonomy for identity verification and device trust.

Every failure a client can observe is one of these classes. Each carries the
HTTP status it maps to and a client-safe message; internal detail (provider
bodies, missing setting names) stays in the logs.
"""


class TrustError(Exception):
    """Base class for all client-visible failures."""

    code = "ERROR"
    status_code = 400
    message = "Request failed"

    def __init__(self, detail: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail
        self.retry_after = retry_after


class InvalidInput(TrustError):
    """Malformed phone, email, code or PIN."""

    code = "INVALID_INPUT"
    message = "Invalid input"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class CodeRejected(TrustError):
    """Wrong, expired, unknown, exhausted or already-used one-time code.

    All of these share one client message.
    """

    code = "INVALID_CODE"
    message = "Invalid or expired code"


class Unauthorized(TrustError):
    code = "UNAUTHORIZED"
    status_code = 401
    message = "Authentication required"


class PinRejected(TrustError):
    code = "INVALID_PIN"
    status_code = 401
    message = "Invalid PIN for this account"


class PinUnavailable(TrustError):
    """Unknown account or PIN never set."""

    code = "PIN_UNAVAILABLE"
    status_code = 404
    message = "PIN sign-in is not available for this account"


class PinLocked(TrustError):
    code = "PIN_LOCKED"
    status_code = 429
    message = "Too many attempts. Try again later"


class ProviderUnavailable(TrustError):
    """SMS gateway or identity provider failed or timed out. Retryable."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    message = "Service temporarily unavailable. Please try again"

    def __init__(self, detail: str | None = None, *, kind: str = "provider_failed") -> None:
        super().__init__(detail)
        self.kind = kind


class CredentialSyncFailed(TrustError):
    """The identity provider refused a credential the core just derived."""

    code = "CREDENTIAL_SYNC_FAILED"
    status_code = 500
    message = "Could not update sign-in credentials"


class MisconfiguredError(TrustError):
    """A required secret or endpoint is missing from the configuration."""

    code = "MISCONFIGURED"
    status_code = 500
    message = "Server misconfigured"


class ChallengeMissing(TrustError):
    code = "MISSING_CHALLENGE"
    message = "Missing challenge"


class PasskeyVerificationFailed(TrustError):
    code = "VERIFICATION_FAILED"
    message = "Passkey verification failed"


class AdminForbidden(TrustError):
    code = "FORBIDDEN"
    status_code = 403
    message = "Forbidden"
