"""Request models for the verification and trust endpoints."""

from pydantic import BaseModel, Field


class OtpSendRequest(BaseModel):
    """Phone may arrive under any of the legacy field names; ``normalize_payload`` sorts it out."""

    phone: str | None = None
    phoneNumber: str | None = None
    mobile: str | None = None
    msisdn: str | None = None
    to: str | None = None
    email: str | None = None
    identifier: str | None = None
    channel: str | None = None


class OtpVerifyRequest(OtpSendRequest):
    code: str = ""
    token: str | None = None

    @property
    def submitted_code(self) -> str:
        return self.code or self.token or ""


class PinSetRequest(BaseModel):
    pin: str


class PinLoginRequest(BaseModel):
    method: str
    user: str
    pin: str


class AdminPinSetRequest(BaseModel):
    user_id: str = Field(min_length=1)
    pin: str
