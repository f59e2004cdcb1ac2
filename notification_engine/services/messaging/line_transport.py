from typing import List, Optional
from uuid import uuid4

from linebot.v3.messaging import (
    AsyncApiClient,
    AsyncMessagingApi,
    Configuration,
    ImageMessage,
    PushMessageRequest,
    TextMessage,
)
from linebot.v3.messaging.exceptions import ApiException

from notification_engine.config.settings import settings
from notification_engine.schemas.notification_schemas import SendResult
from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

logger = get_logger()


class LineTransport(MessagingTransport):
    """LINE push messages; the recipient ref is a LINE user, group or room id."""

    name = "line"

    def __init__(self, access_token: Optional[str] = None):
        token = access_token or settings.LINE_CHANNEL_ACCESS_TOKEN
        if not token:
            raise ConfigurationError("LINE_CHANNEL_ACCESS_TOKEN is not configured")
        self.configuration = Configuration(access_token=token)

    async def send_text(self, recipient_ref: str, text: str) -> SendResult:
        return await self._push(recipient_ref, [self._text(text)])

    async def send_image(
        self, recipient_ref: str, image_ref: str, caption: Optional[str] = None
    ) -> SendResult:
        # LINE images have no caption field; the caption goes in the same push
        messages: List = [
            ImageMessage(
                originalContentUrl=image_ref,
                previewImageUrl=image_ref,
                quickReply=None,
            )
        ]
        if caption:
            messages.append(self._text(caption))
        return await self._push(recipient_ref, messages)

    @staticmethod
    def _text(text: str) -> TextMessage:
        return TextMessage(text=text, quickReply=None, quoteToken=None)

    async def _push(self, recipient_ref: str, messages: List) -> SendResult:
        try:
            async with AsyncApiClient(configuration=self.configuration) as api_client:
                line_bot_api = AsyncMessagingApi(api_client)
                response = await line_bot_api.push_message(
                    PushMessageRequest(
                        to=recipient_ref,
                        messages=messages,
                        notificationDisabled=False,
                        customAggregationUnits=None,
                    ),
                    x_line_retry_key=str(uuid4()),
                )
        except ApiException as e:
            logger.warning("LINE push rejected", status=e.status, reason=e.reason)
            return SendResult(
                success=False, error=f"LINE API {e.status}: {e.reason} {e.body or ''}".strip()
            )
        except Exception as e:
            logger.error("LINE push failed", error=str(e), exc_info=True)
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

        sent = getattr(response, "sent_messages", None) or []
        message_id = sent[0].id if sent else None
        return SendResult(success=True, message_id=message_id)
