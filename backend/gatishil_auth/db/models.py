"""SQLAlchemy ORM models."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class OtpRecord(Base):
    """One issued SMS code. Never deleted once delivered; kept for audit and send quotas."""

    __tablename__ = "otp_records"
    __table_args__ = (
        Index("idx_otp_records_identifier_created", "identifier", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    # Only ever populated by rows imported from the old plaintext table
    legacy_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Profile(Base):
    """Mirror of identity-provider accounts, keyed by provider user id."""

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class TrustedFactor(Base):
    """PIN gate with its own 5-strike lockout, one row per provider user."""

    __tablename__ = "trusted_factors"

    auth_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    factor_type: Mapped[str] = mapped_column(String(16), nullable=False, default="pin")
    pin_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PinCredential(Base):
    """Salt store for the PIN-derived provider password."""

    __tablename__ = "pin_credentials"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    salt_b64: Mapped[str] = mapped_column(String(64), nullable=False)
    kdf: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class WebAuthnCredential(Base):
    """WebAuthn passkey credential registered by a provider user."""

    __tablename__ = "webauthn_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    credential_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    backed_up: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    transports: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class UserSecurity(Base):
    """Per-user passkey flags."""

    __tablename__ = "user_security"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    passkey_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    passkey_cred_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
