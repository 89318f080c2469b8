"""
Notifier service implementation.

Best-effort fanout of trading messages to bot subscribers and the outbound
channel.
"""

import asyncio
from typing import Protocol

import structlog

from shared.config import Settings, get_settings
from shared.telegram_client import TelegramBotClient

logger = structlog.get_logger(__name__)


class OutboundChannel(Protocol):
    @property
    def can_send(self) -> bool: ...

    async def send_message(self, text: str) -> None: ...


class NotificationService:
    """
    Sends a message to every subscribed chat and the outbound channel.

    Deliveries run concurrently. A failed delivery is logged and never
    affects the other deliveries or the caller.
    """

    def __init__(
        self,
        bot_client: TelegramBotClient | None = None,
        outbound: OutboundChannel | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize notifier service.

        Args:
            bot_client: Optional bot client for subscriber chats
            outbound: Optional outbound channel sender
            settings: Optional Settings instance
        """
        self.settings = settings or get_settings()
        self._bot_client = bot_client
        self.outbound = outbound
        self._chat_ids: set[int | str] = set()

    @property
    def bot_client(self) -> TelegramBotClient:
        """Get or create the bot client."""
        if self._bot_client is None:
            self._bot_client = TelegramBotClient(self.settings)
        return self._bot_client

    @property
    def chat_ids(self) -> frozenset[int | str]:
        return frozenset(self._chat_ids)

    def add_chat(self, chat_id: int | str | None) -> None:
        """Subscribe a chat; None is ignored."""
        if chat_id is not None:
            self._chat_ids.add(chat_id)

    def remove_chat(self, chat_id: int | str) -> None:
        self._chat_ids.discard(chat_id)

    async def notify_all(self, message: str, outbound: str | bool = True) -> int:
        """
        Deliver a message to all subscribers and, optionally, the outbound channel.

        Args:
            message: Text for subscriber chats
            outbound: True to send ``message`` to the outbound channel too,
                a string to send different text there, False to skip it.
                An outbound channel that cannot send is skipped and not counted.

        Returns:
            Number of successful deliveries
        """
        if not message:
            return 0

        targets: list[str] = []
        tasks = []
        for chat_id in self._chat_ids:
            targets.append(str(chat_id))
            tasks.append(self.bot_client.send_message(chat_id, message))

        outbound_text = message if outbound is True else outbound or None
        if outbound_text and self.outbound is not None and self.outbound.can_send:
            targets.append("outbound")
            tasks.append(self.outbound.send_message(outbound_text))

        if not tasks:
            return 0

        results = await asyncio.gather(*tasks, return_exceptions=True)
        delivered = 0
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("notification_failed", target=target, error=str(result))
            else:
                delivered += 1
        return delivered
