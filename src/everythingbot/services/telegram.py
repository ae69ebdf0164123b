import logging
from typing import Any, Dict

import httpx

from ..exceptions import GatewayError
from ..models import MessageRef
from ..settings import get_settings

logger = logging.getLogger(__name__)


class TelegramGateway:
    """Send, edit and delete chat messages through the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = f"{api_base.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        """POST a Bot API method and return its ``result`` field."""
        try:
            response = await self._client.post(f"{self._base_url}/{method}", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(f"Telegram {method} failed: {e}") from e
        if not data.get("ok"):
            raise GatewayError(
                f"Telegram {method} rejected: {data.get('description', 'unknown error')}"
            )
        return data.get("result")

    @staticmethod
    def _to_ref(chat_id: str, result: Dict[str, Any], fallback_text: str) -> MessageRef:
        return MessageRef(
            chat_id=chat_id,
            message_id=int(result["message_id"]),
            text=result.get("text") or fallback_text,
        )

    async def send(
        self,
        chat_id: str,
        text: str,
        reply_to: int | None = None,
        parse_mode: str | None = "Markdown",
    ) -> MessageRef:
        """Send a new message. Raises GatewayError on failure."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_to is not None:
            payload["reply_to_message_id"] = reply_to
        result = await self._call("sendMessage", payload)
        logger.info("Message sent to chat %s", chat_id)
        return self._to_ref(chat_id, result, text)

    async def edit(self, ref: MessageRef, text: str) -> MessageRef | None:
        """Edit an existing message in place. Returns None on failure."""
        try:
            result = await self._call(
                "editMessageText",
                {
                    "chat_id": ref.chat_id,
                    "message_id": ref.message_id,
                    "text": text,
                },
            )
        except GatewayError as e:
            logger.error("Failed to edit message %s: %s", ref.message_id, e)
            return None
        if isinstance(result, dict):
            return self._to_ref(ref.chat_id, result, text)
        return MessageRef(chat_id=ref.chat_id, message_id=ref.message_id, text=text)

    async def delete(self, ref: MessageRef) -> None:
        """Delete a message. Raises GatewayError on failure."""
        await self._call(
            "deleteMessage",
            {"chat_id": ref.chat_id, "message_id": ref.message_id},
        )


def get_telegram_gateway() -> TelegramGateway:
    """Build the gateway from settings."""
    settings = get_settings()
    if not settings.telegram_bot_token:
        raise ValueError("TELEGRAM_BOT_TOKEN is not configured")
    return TelegramGateway(
        token=settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.gateway_timeout_seconds,
    )
