"""PIN → password derivation.

The identity provider only understands passwords, so a short PIN is stretched
into a long password-equivalent with scrypt over ``pin:user_id:pepper`` and a
per-user salt. Only the salt (and the parameter label) is stored; the
password is recomputed on every sign-in.
"""

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass

SALT_BYTES = 16

# Parameter ceilings (~8 MiB per derivation)
_MAX_N = 1 << 13
_MAX_R = 8
_MAX_P = 1

_KDF_LABEL = re.compile(r"N=(\d+),r=(\d+),p=(\d+)")


@dataclass(frozen=True)
class ScryptParams:
    n: int = _MAX_N
    r: int = _MAX_R
    p: int = _MAX_P

    @property
    def label(self) -> str:
        return f"scrypt-v1(N={self.n},r={self.r},p={self.p})"

    @classmethod
    def from_label(cls, label: str | None) -> "ScryptParams":
        """Parse a stored label, clamping every parameter to the ceilings."""
        match = _KDF_LABEL.search(label or "")
        if not match:
            return cls()
        n, r, p = (int(v) for v in match.groups())
        if n < 2 or n & (n - 1) or r < 1 or p < 1:
            return cls()
        return cls(n=min(n, _MAX_N), r=min(r, _MAX_R), p=min(p, _MAX_P))


DEFAULT_PARAMS = ScryptParams()


def b64u(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64u_decode(value: str) -> bytes:
    # Accepts both url-safe and standard alphabets, with or without padding
    normalized = value.strip().replace("+", "-").replace("/", "_")
    return base64.urlsafe_b64decode(normalized + "=" * (-len(normalized) % 4))


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def derive(
    pin: str,
    user_id: str,
    salt: bytes,
    pepper: str,
    *,
    params: ScryptParams = DEFAULT_PARAMS,
    length: int = 48,
) -> str:
    """Deterministically derive the provider password for a PIN."""
    material = f"{pin}:{user_id}:{pepper}".encode("utf-8")
    out = hashlib.scrypt(
        material,
        salt=salt,
        n=params.n,
        r=params.r,
        p=params.p,
        maxmem=64 * 1024 * 1024,
        dklen=length,
    )
    return b64u(out)
