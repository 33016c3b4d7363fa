"""Hash schemes for one-time codes and PIN hashes.

Each supported scheme is a member of a closed enum with exactly one verifier.
Adding a scheme means adding a member and a verifier to the table below;
``verify_*`` refuses anything not in the table.
"""

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable, Iterable
from enum import Enum

from passlib.context import CryptContext

logger = logging.getLogger(__name__)

OTP_CODE_LENGTH = 6


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


class CodeHashScheme(str, Enum):
    SHA256_PEPPERED = "sha256_peppered"
    SHA256 = "sha256"
    # Legacy rows that kept the code itself; only honoured when explicitly enabled
    PLAINTEXT = "plaintext"


def generate_code() -> str:
    """Uniform random 6-digit code from the OS CSPRNG."""
    return str(secrets.randbelow(10**OTP_CODE_LENGTH)).zfill(OTP_CODE_LENGTH)


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_code(code: str, pepper: str) -> str:
    """Hash stored for every newly issued code."""
    return _sha256_hex(code + pepper)


def _verify_sha256_peppered(code: str, code_hash: str | None, legacy_code: str | None, pepper: str) -> bool:
    return bool(code_hash) and hmac.compare_digest(_sha256_hex(code + pepper), code_hash)


def _verify_sha256(code: str, code_hash: str | None, legacy_code: str | None, pepper: str) -> bool:
    return bool(code_hash) and hmac.compare_digest(_sha256_hex(code), code_hash)


def _verify_plaintext(code: str, code_hash: str | None, legacy_code: str | None, pepper: str) -> bool:
    return bool(legacy_code) and hmac.compare_digest(legacy_code.strip(), code)


_CODE_VERIFIERS: dict[CodeHashScheme, Callable[[str, str | None, str | None, str], bool]] = {
    CodeHashScheme.SHA256_PEPPERED: _verify_sha256_peppered,
    CodeHashScheme.SHA256: _verify_sha256,
    CodeHashScheme.PLAINTEXT: _verify_plaintext,
}


def parse_code_schemes(names: Iterable[str]) -> list[CodeHashScheme]:
    """Turn configured scheme names into enum members, rejecting unknown names."""
    schemes = [CodeHashScheme(name) for name in names]
    if CodeHashScheme.PLAINTEXT in schemes:
        logger.warning("Plaintext one-time code comparison is enabled for legacy records")
    return schemes


def verify_code(
    code: str,
    *,
    code_hash: str | None,
    legacy_code: str | None,
    pepper: str,
    schemes: Iterable[CodeHashScheme],
) -> CodeHashScheme | None:
    """Return the scheme that matched, or None."""
    for scheme in schemes:
        if _CODE_VERIFIERS[scheme](code, code_hash, legacy_code, pepper):
            return scheme
    return None


# ---------------------------------------------------------------------------
# PIN hashes (TrustedFactor.pin_hash)
# ---------------------------------------------------------------------------


class PinHashScheme(str, Enum):
    BCRYPT = "bcrypt"
    PBKDF2_SHA256 = "pbkdf2_sha256"


pin_context = CryptContext(schemes=["bcrypt", "pbkdf2_sha256"], deprecated="auto")


def hash_pin(pin: str) -> str:
    """Hash a PIN for the trusted-factor gate (independent of the derived credential)."""
    return pin_context.hash(pin)


def detect_pin_scheme(pin_hash: str) -> PinHashScheme | None:
    if pin_hash.startswith(("$2a$", "$2b$", "$2y$")):
        return PinHashScheme.BCRYPT
    if pin_hash.startswith("$pbkdf2-sha256$"):
        return PinHashScheme.PBKDF2_SHA256
    return None


_PIN_VERIFIERS: dict[PinHashScheme, Callable[[str, str], bool]] = {
    PinHashScheme.BCRYPT: lambda pin, h: pin_context.handler("bcrypt").verify(pin, h),
    PinHashScheme.PBKDF2_SHA256: lambda pin, h: pin_context.handler("pbkdf2_sha256").verify(pin, h),
}


def verify_pin_hash(pin: str, pin_hash: str) -> bool:
    scheme = detect_pin_scheme(pin_hash)
    if scheme is None:
        logger.error("Unrecognized PIN hash format; treating as mismatch")
        return False
    return _PIN_VERIFIERS[scheme](pin, pin_hash)
