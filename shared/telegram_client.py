"""
Telegram Bot API client for Signal Trader.

Sends notification messages to subscriber chats through the Bot API.
"""

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when a message cannot be delivered to a chat."""

    def __init__(self, message: str, chat_id: int | str | None = None):
        super().__init__(message)
        self.chat_id = chat_id


class TelegramBotClient:
    """Async client for the Telegram Bot API ``sendMessage`` method."""

    BASE_URL = "https://api.telegram.org"

    def __init__(self, settings: Settings | None = None):
        """
        Initialize bot client.

        Args:
            settings: Settings instance. If None, loads from environment.
        """
        self.settings = settings or get_settings()
        self.bot_token = self.settings.telegram.bot_token
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=15.0)
        return self._client

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, method: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.BASE_URL}/bot{self.bot_token}/{method}"
        return await self.client.post(url, json=payload)

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        parse_mode: str | None = "Markdown",
    ) -> dict[str, Any]:
        """
        Send a text message.

        Args:
            chat_id: Target chat
            text: Message text
            parse_mode: Telegram parse mode, or None for plain text

        Returns:
            The sent message object

        Raises:
            NotificationError: If the bot is not configured or delivery fails
        """
        if not self.bot_token:
            raise NotificationError("Bot token is not configured", chat_id=chat_id)

        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        try:
            response = await self._post("sendMessage", payload)
        except httpx.HTTPError as e:
            logger.error("telegram_send_error", chat_id=chat_id, error=str(e))
            raise NotificationError(f"Request failed: {str(e)}", chat_id=chat_id) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not data.get("ok"):
            description = data.get("description") or f"status {response.status_code}"
            raise NotificationError(f"sendMessage failed: {description}", chat_id=chat_id)

        return data.get("result") or {}


# Factory function
def get_telegram_client(settings: Settings | None = None) -> TelegramBotClient:
    """Create a new bot client instance."""
    return TelegramBotClient(settings=settings)
