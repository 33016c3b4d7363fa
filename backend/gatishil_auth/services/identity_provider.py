"""Client for the hosted identity provider (GoTrue-compatible REST API).

The provider owns accounts, passwords and session issuance. This module only
wraps the handful of endpoints the verification flows depend on and maps
provider failures onto the error taxonomy:

  - timeouts and connection failures -> ``ProviderUnavailable(kind="network_error")``
  - 5xx responses                    -> ``ProviderUnavailable(kind="provider_failed")``
  - 4xx responses                    -> ``IdentityRejected`` (callers decide what it means)
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Response
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import ProviderUnavailable
from gatishil_auth.core.identifiers import mask_identifier

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "sb-access-token"
REFRESH_COOKIE = "sb-refresh-token"

_USERS_PER_PAGE = 200
_ALREADY_EXISTS = re.compile(r"already (been )?(exists|registered)", re.IGNORECASE)


class IdentityRejected(Exception):
    """The provider answered with a 4xx; ``message`` is the provider's own text."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class Session:
    """A provider-issued session. The core never mints tokens itself."""

    access_token: str
    refresh_token: str
    expires_in: int = 3600
    token_type: str = "bearer"
    user_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Session":
        data = payload.get("session") or payload
        if not data.get("access_token"):
            raise ProviderUnavailable("Provider returned no session")
        user = data.get("user") or payload.get("user") or {}
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_in=int(data.get("expires_in") or 3600),
            token_type=data.get("token_type") or "bearer",
            user_id=user.get("id"),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


def _digits(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


class IdentityProvider:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, admin: bool) -> dict[str, str]:
        if admin:
            key = self.settings.require("identity_service_key")
            return {"apikey": key, "Authorization": f"Bearer {key}"}
        return {"apikey": self.settings.require("identity_anon_key")}

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=4),
        retry=retry_if_exception_type((httpx.ConnectError,)),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        headers: dict[str, str],
    ) -> httpx.Response:
        base = self.settings.require("identity_url").rstrip("/")
        async with httpx.AsyncClient(
            base_url=base,
            timeout=httpx.Timeout(self.settings.identity_timeout_seconds, connect=3.0),
            transport=self._transport,
        ) as client:
            return await client.request(method, f"/auth/v1{path}", json=json, params=params, headers=headers)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        admin: bool = False,
    ) -> dict[str, Any]:
        headers = self._headers(admin)
        try:
            response = await self._send(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Identity provider timeout on %s %s: %s", method, path, e)
            raise ProviderUnavailable("Identity provider timed out", kind="network_error") from e
        except httpx.HTTPError as e:
            logger.error("Identity provider network error on %s %s: %s: %s", method, path, type(e).__name__, e)
            raise ProviderUnavailable("Identity provider unreachable", kind="network_error") from e

        if response.status_code >= 500:
            logger.error(
                "Identity provider error on %s %s: status=%d, body=%s",
                method, path, response.status_code,
                response.text[:300] if response.text else "(empty)",
            )
            raise ProviderUnavailable("Identity provider failed")
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if response.status_code >= 400:
            message = ""
            if isinstance(body, dict):
                message = str(body.get("msg") or body.get("error_description") or body.get("message") or "")
            logger.warning(
                "Identity provider rejected %s %s: status=%d, message=%s",
                method, path, response.status_code, message[:200],
            )
            raise IdentityRejected(response.status_code, message)
        return body if isinstance(body, dict) else {"data": body}

    # ------------------------------------------------------------------
    # Email one-time codes (delivered and verified by the provider)
    # ------------------------------------------------------------------

    async def send_email_otp(self, email: str) -> None:
        await self._request("POST", "/otp", json={"email": email, "create_user": True})
        logger.info("Email code requested for %s", mask_identifier(email))

    async def verify_email_otp(self, email: str, token: str) -> Session:
        payload = await self._request("POST", "/verify", json={"type": "email", "email": email, "token": token})
        return Session.from_payload(payload)

    # ------------------------------------------------------------------
    # Password sign-in (the PIN bridge rides on this)
    # ------------------------------------------------------------------

    async def sign_in_with_password(
        self,
        password: str,
        *,
        email: str | None = None,
        phone: str | None = None,
    ) -> Session:
        body: dict[str, str] = {"password": password}
        if email:
            body["email"] = email
        elif phone:
            body["phone"] = phone
        else:
            raise ValueError("email or phone is required")
        payload = await self._request("POST", "/token", json=body, params={"grant_type": "password"})
        return Session.from_payload(payload)

    # ------------------------------------------------------------------
    # Admin API
    # ------------------------------------------------------------------

    async def admin_get_user(self, user_id: str) -> dict[str, Any] | None:
        try:
            payload = await self._request("GET", f"/admin/users/{user_id}", admin=True)
        except IdentityRejected as e:
            if e.status_code == 404:
                return None
            raise
        return payload.get("user") or payload

    async def admin_update_user(self, user_id: str, **attributes: Any) -> dict[str, Any]:
        payload = await self._request("PUT", f"/admin/users/{user_id}", json=attributes, admin=True)
        return payload.get("user") or payload

    async def admin_create_user(self, **attributes: Any) -> dict[str, Any] | None:
        """Create an account; returns None when the identifier is already registered."""
        try:
            payload = await self._request("POST", "/admin/users", json=attributes, admin=True)
        except IdentityRejected as e:
            if e.status_code == 422 or _ALREADY_EXISTS.search(e.message):
                return None
            raise
        return payload.get("user") or payload

    async def find_user_by_phone(self, phone: str) -> dict[str, Any] | None:
        """Scan the admin user listing; the provider stores phones without ``+``."""
        wanted = _digits(phone)
        for page in range(1, self.settings.identity_user_scan_pages + 1):
            payload = await self._request(
                "GET", "/admin/users", params={"page": page, "per_page": _USERS_PER_PAGE}, admin=True
            )
            users = payload.get("users") or []
            for user in users:
                if _digits(user.get("phone")) == wanted:
                    return user
            if len(users) < _USERS_PER_PAGE:
                break
        return None

    async def ensure_phone_user(self, phone: str) -> dict[str, Any]:
        """Return the account for a verified phone, creating it on first sign-in."""
        user = await self.admin_create_user(phone=phone, phone_confirm=True)
        if user is None:
            user = await self.find_user_by_phone(phone)
        if user is None or not user.get("id"):
            logger.error("Phone account missing after create for %s", mask_identifier(phone))
            raise ProviderUnavailable("Phone account lookup failed")
        return user

    def canonical_email(self, user_id: str) -> str:
        return f"{user_id}@{self.settings.canonical_email_domain}"

    async def ensure_canonical_email(self, user: dict[str, Any]) -> str:
        """Phone-only accounts get a synthetic email so magic-link and password flows work."""
        email = user.get("email")
        if email:
            return email
        email = self.canonical_email(user["id"])
        await self.admin_update_user(user["id"], email=email, email_confirm=True)
        logger.info("Assigned canonical email to user %s", user["id"])
        return email

    # ------------------------------------------------------------------
    # Session minting for already-verified identities
    # ------------------------------------------------------------------

    async def issue_session(self, email: str) -> Session:
        """Mint a session by generating a magic link server-side and redeeming its token hash."""
        link = await self._request(
            "POST", "/admin/generate_link", json={"type": "magiclink", "email": email}, admin=True
        )
        token_hash = link.get("hashed_token") or (link.get("properties") or {}).get("hashed_token")
        if not token_hash:
            logger.error("generate_link returned no token hash for %s", mask_identifier(email))
            raise ProviderUnavailable("Provider returned no link token")
        payload = await self._request("POST", "/verify", json={"type": "magiclink", "token_hash": token_hash})
        return Session.from_payload(payload)

    async def issue_session_for_phone(self, phone: str, known_user_id: str | None = None) -> Session:
        """``known_user_id`` is a locally mirrored owner of *phone*; when the
        provider confirms it, the create-then-scan lookup is skipped."""
        user = None
        if known_user_id:
            user = await self.admin_get_user(known_user_id)
            if user is not None and _digits(user.get("phone")) != _digits(phone):
                logger.warning("Mirrored owner %s no longer holds %s", known_user_id, mask_identifier(phone))
                user = None
        if user is None:
            user = await self.ensure_phone_user(phone)
        email = await self.ensure_canonical_email(user)
        session = await self.issue_session(email)
        if session.user_id is None:
            session.user_id = user["id"]
        return session

    async def issue_session_for_user(self, user_id: str) -> Session:
        user = await self.admin_get_user(user_id)
        if user is None:
            raise ProviderUnavailable("Account missing at identity provider")
        email = await self.ensure_canonical_email(user)
        session = await self.issue_session(email)
        if session.user_id is None:
            session.user_id = user_id
        return session


def apply_session_cookies(response: Response, session: Session, settings: Settings) -> None:
    """Write the provider session into httpOnly cookies."""
    secure = not settings.dev_mode
    response.set_cookie(
        ACCESS_COOKIE,
        session.access_token,
        max_age=session.expires_in,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    if session.refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            session.refresh_token,
            max_age=settings.session_cookie_max_age,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )
