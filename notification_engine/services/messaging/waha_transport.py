"""
WhatsApp delivery through a WAHA (WhatsApp HTTP API) server.

Endpoints used:
    POST {api_url}/api/sendText   {chatId, text, session}
    POST {api_url}/api/sendImage  {chatId, file: {url}, caption, session}
"""

import re
from typing import Any, Dict, Optional

import httpx

from notification_engine.config.settings import settings
from notification_engine.schemas.notification_schemas import SendResult
from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

logger = get_logger()

NON_DIGITS = re.compile(r"\D")


def format_chat_id(recipient_ref: str, country_code: Optional[str] = None) -> str:
    """
    Turn a phone number into a WAHA chat id.

    Values that already carry a domain (e.g. a group id ending in @g.us) are
    passed through unchanged.
    """
    if "@" in recipient_ref:
        return recipient_ref

    country_code = country_code or settings.WAHA_DEFAULT_COUNTRY_CODE
    digits = NON_DIGITS.sub("", recipient_ref)
    if country_code and not digits.startswith(country_code):
        digits = f"{country_code}{digits}"
    return f"{digits}@c.us"


def _extract_message_id(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    message_id = body.get("id")
    # WAHA returns either a plain id or {"_serialized": "...", ...}
    if isinstance(message_id, dict):
        message_id = message_id.get("_serialized") or message_id.get("id")
    return str(message_id) if message_id else None


class WahaTransport(MessagingTransport):
    name = "waha"

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[str] = None,
        timeout: Optional[float] = None,
        country_code: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = (api_url or settings.WAHA_API_URL).rstrip("/")
        if not self.api_url:
            raise ConfigurationError("WAHA_API_URL is not configured")

        self.api_key = api_key if api_key is not None else settings.WAHA_API_KEY
        self.session = session or settings.WAHA_SESSION
        self.country_code = country_code or settings.WAHA_DEFAULT_COUNTRY_CODE

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout or settings.MESSAGING_TIMEOUT_SECONDS,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send_text(self, recipient_ref: str, text: str) -> SendResult:
        return await self._post(
            "/api/sendText",
            {
                "chatId": format_chat_id(recipient_ref, self.country_code),
                "text": text,
                "session": self.session,
            },
        )

    async def send_image(
        self, recipient_ref: str, image_ref: str, caption: Optional[str] = None
    ) -> SendResult:
        payload: Dict[str, Any] = {
            "chatId": format_chat_id(recipient_ref, self.country_code),
            "file": {"url": image_ref},
            "session": self.session,
        }
        if caption:
            payload["caption"] = caption
        return await self._post("/api/sendImage", payload)

    async def _post(self, path: str, payload: Dict[str, Any]) -> SendResult:
        url = f"{self.api_url}{path}"
        try:
            response = await self._client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning(
                "WAHA request failed", path=path, error=f"{type(e).__name__}: {e}"
            )
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

        if response.is_error:
            error = f"WAHA {path} returned {response.status_code}: {response.text[:500]}"
            logger.warning(
                "WAHA rejected message", path=path, status_code=response.status_code
            )
            return SendResult(success=False, error=error)

        return SendResult(success=True, message_id=_extract_message_id(response))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
