"""Tests for the identity provider REST client."""

import json

import httpx
import pytest

from gatishil_auth.core.errors import ProviderUnavailable
from gatishil_auth.services.identity_provider import IdentityProvider, IdentityRejected, Session

USER_ID = "0b7f6c55-2f0e-4d1f-8a35-6a0f7c3d9e12"

SESSION_BODY = {
    "access_token": "at-1",
    "refresh_token": "rt-1",
    "expires_in": 3600,
    "token_type": "bearer",
    "user": {"id": USER_ID},
}


class ProviderStub:
    """Routes requests by (method, path) and records them."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], tuple[int, object]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, status: int = 200, body: object = None) -> None:
        self.routes[(method, path)] = (status, body if body is not None else {})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes.get((request.method, request.url.path), (404, {"msg": "not found"}))
        return httpx.Response(status, json=body)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def provider(settings, stub) -> IdentityProvider:
    return IdentityProvider(settings, transport=httpx.MockTransport(stub))


@pytest.mark.asyncio
async def test_password_grant(provider, stub):
    stub.on("POST", "/auth/v1/token", body=SESSION_BODY)
    session = await provider.sign_in_with_password("derived", phone="+9779812345678")

    assert session == Session("at-1", "rt-1", 3600, "bearer", USER_ID)
    request = stub.requests[0]
    assert request.url.params["grant_type"] == "password"
    assert request.headers["apikey"] == "anon-key"
    assert stub.body() == {"password": "derived", "phone": "+9779812345678"}


@pytest.mark.asyncio
async def test_rejected_password_surfaces_provider_message(provider, stub):
    stub.on("POST", "/auth/v1/token", status=400, body={"error_description": "Invalid login credentials"})
    with pytest.raises(IdentityRejected) as exc_info:
        await provider.sign_in_with_password("wrong", email="a@gatishilnepal.org")
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Invalid login credentials"


@pytest.mark.asyncio
async def test_server_error_is_provider_unavailable(provider, stub):
    stub.on("POST", "/auth/v1/otp", status=502, body={"msg": "bad gateway"})
    with pytest.raises(ProviderUnavailable) as exc_info:
        await provider.send_email_otp("sita@gatishilnepal.org")
    assert exc_info.value.kind == "provider_failed"


@pytest.mark.asyncio
async def test_timeout_is_network_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    provider = IdentityProvider(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderUnavailable) as exc_info:
        await provider.verify_email_otp("sita@gatishilnepal.org", "123456")
    assert exc_info.value.kind == "network_error"


@pytest.mark.asyncio
async def test_admin_calls_use_service_key(provider, stub):
    stub.on("GET", f"/auth/v1/admin/users/{USER_ID}", body={"id": USER_ID, "phone": "9779812345678"})
    user = await provider.admin_get_user(USER_ID)
    assert user["phone"] == "9779812345678"
    assert stub.requests[0].headers["authorization"] == "Bearer service-key"


@pytest.mark.asyncio
async def test_admin_get_unknown_user_is_none(provider):
    assert await provider.admin_get_user("missing") is None


@pytest.mark.asyncio
async def test_phone_sign_in_creates_user_and_mints_session(provider, stub):
    stub.on("POST", "/auth/v1/admin/users", body={"id": USER_ID, "phone": "9779812345678", "email": None})
    stub.on("PUT", f"/auth/v1/admin/users/{USER_ID}", body={"id": USER_ID})
    stub.on("POST", "/auth/v1/admin/generate_link", body={"properties": {"hashed_token": "th-1"}})
    stub.on("POST", "/auth/v1/verify", body=SESSION_BODY)

    session = await provider.issue_session_for_phone("+9779812345678")

    assert session.access_token == "at-1"
    bodies = [json.loads(r.content) for r in stub.requests]
    assert bodies[0] == {"phone": "+9779812345678", "phone_confirm": True}
    assert bodies[1] == {"email": f"{USER_ID}@gn.local", "email_confirm": True}
    assert bodies[2] == {"type": "magiclink", "email": f"{USER_ID}@gn.local"}
    assert bodies[3] == {"type": "magiclink", "token_hash": "th-1"}


@pytest.mark.asyncio
async def test_existing_phone_user_is_found_by_scan(provider, stub):
    stub.on("POST", "/auth/v1/admin/users", status=422, body={"msg": "Phone number already registered"})
    stub.on(
        "GET",
        "/auth/v1/admin/users",
        body={"users": [{"id": "other", "phone": "9779851234567"}, {"id": USER_ID, "phone": "9779812345678"}]},
    )
    user = await provider.ensure_phone_user("+9779812345678")
    assert user["id"] == USER_ID


@pytest.mark.asyncio
async def test_known_phone_owner_skips_create_and_scan(provider, stub):
    stub.on(
        "GET",
        f"/auth/v1/admin/users/{USER_ID}",
        body={"id": USER_ID, "phone": "9779812345678", "email": f"{USER_ID}@gn.local"},
    )
    stub.on("POST", "/auth/v1/admin/generate_link", body={"properties": {"hashed_token": "th-1"}})
    stub.on("POST", "/auth/v1/verify", body=SESSION_BODY)

    session = await provider.issue_session_for_phone("+9779812345678", known_user_id=USER_ID)

    assert session.user_id == USER_ID
    calls = [(r.method, r.url.path) for r in stub.requests]
    assert ("POST", "/auth/v1/admin/users") not in calls
    assert ("GET", "/auth/v1/admin/users") not in calls


@pytest.mark.asyncio
async def test_stale_phone_owner_falls_back_to_create(provider, stub):
    stub.on("GET", "/auth/v1/admin/users/stale", body={"id": "stale", "phone": "9779851234567"})
    stub.on("POST", "/auth/v1/admin/users", body={"id": USER_ID, "phone": "9779812345678", "email": "a@gn.local"})
    stub.on("POST", "/auth/v1/admin/generate_link", body={"properties": {"hashed_token": "th-1"}})
    stub.on("POST", "/auth/v1/verify", body=SESSION_BODY)

    session = await provider.issue_session_for_phone("+9779812345678", known_user_id="stale")

    assert session.user_id == USER_ID
    assert ("POST", "/auth/v1/admin/users") in [(r.method, r.url.path) for r in stub.requests]


@pytest.mark.asyncio
async def test_missing_link_token_is_provider_failure(provider, stub):
    stub.on("POST", "/auth/v1/admin/generate_link", body={})
    with pytest.raises(ProviderUnavailable):
        await provider.issue_session("sita@gatishilnepal.org")


def test_session_without_access_token_is_rejected():
    with pytest.raises(ProviderUnavailable):
        Session.from_payload({"refresh_token": "rt"})


def test_session_public_view_hides_user():
    session = Session.from_payload({"session": SESSION_BODY})
    assert session.user_id == USER_ID
    assert "user_id" not in session.to_public()
