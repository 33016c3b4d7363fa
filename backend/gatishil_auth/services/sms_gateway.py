"""SMS delivery through the Aakash SMS gateway (v3 send endpoint)."""

import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import ProviderUnavailable
from gatishil_auth.core.identifiers import mask_identifier

logger = logging.getLogger(__name__)


class AakashSmsGateway:
    """Sends one text message per call. Failures surface as ``ProviderUnavailable``."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    def render(self, code: str) -> str:
        return self.settings.sms_message_template.format(code=code)

    async def send(self, national_number: str, text: str) -> None:
        """Deliver *text* to a national-format mobile number."""
        api_key = self.settings.require("sms_api_key")
        try:
            response = await self._post(national_number, text, api_key)
        except httpx.TimeoutException as e:
            logger.error("SMS gateway timeout for %s: %s", mask_identifier(national_number), e)
            raise ProviderUnavailable("SMS gateway timed out", kind="network_error") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "SMS gateway HTTP error for %s: status=%d, body=%s",
                mask_identifier(national_number),
                e.response.status_code,
                e.response.text[:300] if e.response.text else "(empty)",
            )
            raise ProviderUnavailable("SMS gateway rejected the message") from e
        except httpx.HTTPError as e:
            logger.error("SMS gateway network error: %s: %s", type(e).__name__, e)
            raise ProviderUnavailable("SMS gateway unreachable", kind="network_error") from e

        # Aakash answers 200 with {"error": true, ...} for account-level failures
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("error"):
            logger.error(
                "SMS gateway refused message for %s: %s",
                mask_identifier(national_number),
                str(body.get("message", ""))[:300],
            )
            raise ProviderUnavailable("SMS gateway refused the message")

        logger.info("SMS dispatched to %s", mask_identifier(national_number))

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=4),
        retry=retry_if_exception_type((httpx.ConnectError,)),
        reraise=True,
    )
    async def _post(self, national_number: str, text: str, api_key: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.sms_timeout_seconds, connect=3.0),
            transport=self._transport,
        ) as client:
            response = await client.post(
                self.settings.sms_gateway_url,
                data={"auth_token": api_key, "to": national_number, "text": text},
            )
            response.raise_for_status()
            return response
