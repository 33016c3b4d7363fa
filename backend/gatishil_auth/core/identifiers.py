"""Identifier normalization: the single boundary where loose input is accepted.

Request bodies arrive with a zoo of field names for the phone number
(``phone``, ``phoneNumber``, ``mobile`` …) and in many textual shapes
(``98xxxxxxxx``, ``+977 98-xxxx-xxxx``). Everything past this module works on
a ``Identifier`` whose value is canonical: E.164 for phones, lower-cased for
emails.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import EmailStr, TypeAdapter, ValidationError

from gatishil_auth.core.errors import InvalidInput

PHONE_ALIASES = ("phone", "phoneNumber", "mobile", "msisdn", "to")

_email_adapter = TypeAdapter(EmailStr)
_SEPARATORS = re.compile(r"[\s\-().]")


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


@dataclass(frozen=True)
class Identifier:
    """A canonical phone number or email address."""

    channel: Channel
    value: str
    national_number: str | None = None

    def masked(self) -> str:
        return mask_identifier(self.value)


@dataclass(frozen=True)
class NormalizeResult:
    """Either ``identifier`` is set, or ``reason`` explains the rejection."""

    identifier: Identifier | None = None
    reason: str | None = None
    field: str | None = None

    def unwrap(self) -> Identifier:
        if self.identifier is None:
            raise InvalidInput(self.reason or "Invalid identifier", field=self.field)
        return self.identifier


class PhonePlan:
    """A single supported country's mobile numbering plan."""

    def __init__(self, country_code: str, national_pattern: str) -> None:
        self.country_code = country_code
        self._national = re.compile(rf"^{national_pattern}$")

    def to_e164(self, raw: str) -> str | None:
        """Return ``+<cc><national>`` or None when *raw* is not a mobile number of this plan."""
        compact = _SEPARATORS.sub("", raw or "")
        if not compact:
            return None
        digits = compact[1:] if compact.startswith("+") else compact
        if not digits.isdigit():
            return None

        if compact.startswith("+") or (
            digits.startswith(self.country_code) and not self._national.match(digits)
        ):
            if not digits.startswith(self.country_code):
                return None
            national = digits[len(self.country_code):]
        elif digits.startswith("0"):
            national = digits[1:]
        else:
            national = digits

        if not self._national.match(national):
            return None
        return f"+{self.country_code}{national}"

    def national(self, e164: str) -> str:
        return e164.removeprefix(f"+{self.country_code}")


def normalize_email(raw: str) -> str | None:
    candidate = (raw or "").strip().lower()
    if not candidate:
        return None
    try:
        return str(_email_adapter.validate_python(candidate)).lower()
    except ValidationError:
        return None


def normalize_identifier(
    plan: PhonePlan,
    *,
    phone: str | None = None,
    email: str | None = None,
    identifier: str | None = None,
    channel: str | None = None,
) -> NormalizeResult:
    """Pick the channel and canonicalize the identifier.

    An explicit ``channel`` wins when the matching field is usable; otherwise a
    phone number is preferred over an email, mirroring the sign-up form where
    phone is the primary identity. A bare ``identifier`` is sniffed: anything
    containing ``@`` is treated as an email.
    """
    if identifier and not phone and not email:
        if "@" in identifier:
            email = identifier
        else:
            phone = identifier

    e164 = plan.to_e164(phone) if phone else None
    canonical_email = normalize_email(email) if email else None

    wanted = (channel or "").strip().lower() or None
    if wanted not in (None, Channel.SMS.value, Channel.EMAIL.value):
        return NormalizeResult(reason="Unsupported channel", field="channel")

    if wanted == Channel.EMAIL.value and canonical_email:
        return NormalizeResult(Identifier(Channel.EMAIL, canonical_email))
    if e164 and wanted != Channel.EMAIL.value:
        return NormalizeResult(Identifier(Channel.SMS, e164, plan.national(e164)))
    if canonical_email and wanted != Channel.SMS.value:
        return NormalizeResult(Identifier(Channel.EMAIL, canonical_email))

    if phone and not e164:
        return NormalizeResult(
            reason=f"Enter a mobile number like 98xxxxxxxx or +{plan.country_code}98xxxxxxxx",
            field="phone",
        )
    if email and not canonical_email:
        return NormalizeResult(reason="Enter a valid email address", field="email")
    return NormalizeResult(reason="Either email or phone is required")


def normalize_payload(plan: PhonePlan, body: dict[str, Any]) -> NormalizeResult:
    """Normalize a raw JSON body, tolerating the legacy phone field aliases."""
    phone = next(
        (str(body[key]) for key in PHONE_ALIASES if body.get(key) not in (None, "")),
        None,
    )
    email = body.get("email")
    ident = body.get("identifier")
    return normalize_identifier(
        plan,
        phone=phone,
        email=str(email) if email else None,
        identifier=str(ident) if ident else None,
        channel=str(body["channel"]) if body.get("channel") else None,
    )


def mask_identifier(value: str) -> str:
    """Mask a phone or email for log lines."""
    value = (value or "").strip()
    if "@" in value:
        local, _, domain = value.partition("@")
        shown = local[0] + (local[-1] if len(local) > 2 else "")
        return f"{shown}***@{domain}"
    if len(value) > 6:
        return value[:4] + "****" + value[-2:]
    return "***"
