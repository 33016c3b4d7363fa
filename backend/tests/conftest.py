"""Shared test fixtures for the Gatishil auth backend tests."""

import re
import uuid
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import ProviderUnavailable
from gatishil_auth.core.identifiers import PhonePlan
from gatishil_auth.db.models import Base
from gatishil_auth.services.identity_provider import IdentityRejected, Session

# Use an in-memory SQLite database for tests.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionFactory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest_asyncio.fixture
async def db() -> AsyncSession:
    """Create tables and yield a fresh async session for each test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionFactory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "dev_mode": True,
        "database_url": TEST_DATABASE_URL,
        "rate_limit_enabled": False,
        "otp_pepper": "otp-pepper-for-tests-0001",
        "sms_api_key": "aakash-test-token",
        "sms_gateway_url": "https://sms.test/sms/v3/send",
        "pin_pepper": "pin-pepper-for-tests-0001",
        "identity_url": "https://id.gatishilnepal.org",
        "identity_anon_key": "anon-key",
        "identity_service_key": "service-key",
        "identity_jwt_secret": "jwt-secret-for-tests-0123456789abcdef",
        "webauthn_challenge_secret": "challenge-secret-for-tests-0123456789",
        "webauthn_origins": ["https://gatishilnepal.org", "https://www.gatishilnepal.org"],
        "admin_task_secret": "admin-task-secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build settings with a few fields overridden."""
    return make_settings


@pytest.fixture
def plan(settings: Settings) -> PhonePlan:
    return PhonePlan(settings.phone_country_code, settings.phone_national_pattern)


# ---------------------------------------------------------------------------
# Fakes for the external collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeSms:
    """Captures outgoing messages instead of calling the gateway."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def render(self, code: str) -> str:
        return f"Your Gatishil code is {code}. It expires in 5 minutes."

    async def send(self, national_number: str, text: str) -> None:
        if self.fail:
            raise ProviderUnavailable("gateway down")
        self.sent.append((national_number, text))

    @property
    def last_code(self) -> str:
        match = re.search(r"\d{6}", self.sent[-1][1])
        assert match is not None
        return match.group(0)


class FakeIdentity:
    """In-memory stand-in for the identity provider."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.email_codes: dict[str, str] = {}
        self.sign_in_calls: list[dict[str, str]] = []
        self.reject_password_updates = False
        self.phone_owner_hints: list[str | None] = []

    def add_user(self, *, phone: str | None = None, email: str | None = None, user_id: str | None = None) -> dict:
        uid = user_id or str(uuid.uuid4())
        user = {"id": uid, "phone": phone.lstrip("+") if phone else None, "email": email, "password": None}
        self.users[uid] = user
        return user

    def _session(self, user: dict) -> Session:
        return Session(access_token=f"access-{user['id']}", refresh_token=f"refresh-{user['id']}", user_id=user["id"])

    def _find(self, *, email: str | None = None, phone: str | None = None) -> dict | None:
        for user in self.users.values():
            if email and user.get("email") == email:
                return user
            if phone and user.get("phone") and user["phone"] == phone.lstrip("+"):
                return user
        return None

    async def send_email_otp(self, email: str) -> None:
        self.email_codes[email] = "246810"

    async def verify_email_otp(self, email: str, token: str) -> Session:
        if self.email_codes.get(email) != token:
            raise IdentityRejected(403, "Token has expired or is invalid")
        del self.email_codes[email]
        user = self._find(email=email) or self.add_user(email=email)
        return self._session(user)

    async def sign_in_with_password(self, password: str, *, email: str | None = None, phone: str | None = None) -> Session:
        self.sign_in_calls.append({"email": email or "", "phone": phone or ""})
        user = self._find(email=email, phone=phone)
        if user is None or user["password"] is None or user["password"] != password:
            raise IdentityRejected(400, "Invalid login credentials")
        return self._session(user)

    async def admin_get_user(self, user_id: str) -> dict | None:
        return self.users.get(user_id)

    async def admin_update_user(self, user_id: str, **attributes: Any) -> dict:
        if self.reject_password_updates and "password" in attributes:
            raise IdentityRejected(422, "Password should be at least 6 characters")
        self.users[user_id].update({k: v for k, v in attributes.items() if k != "email_confirm"})
        return self.users[user_id]

    async def ensure_canonical_email(self, user: dict) -> str:
        if not user.get("email"):
            user["email"] = f"{user['id']}@gn.local"
        return user["email"]

    async def issue_session_for_phone(self, phone: str, known_user_id: str | None = None) -> Session:
        self.phone_owner_hints.append(known_user_id)
        user = self.users.get(known_user_id or "") or self._find(phone=phone) or self.add_user(phone=phone)
        await self.ensure_canonical_email(user)
        return self._session(user)

    async def issue_session_for_user(self, user_id: str) -> Session:
        user = self.users.get(user_id)
        if user is None:
            raise ProviderUnavailable("Account missing at identity provider")
        return self._session(user)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()
