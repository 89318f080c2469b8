"""
Listener service implementation.

Connects a Telegram user session, watches new messages in joined groups and
channels, and hands qualifying buy signals to a callback.
"""

from collections.abc import Awaitable, Callable

import structlog
from telethon import TelegramClient, events
from telethon.sessions import StringSession
from telethon.tl.functions.channels import ExportMessageLinkRequest, JoinChannelRequest
from telethon.tl.functions.messages import ImportChatInviteRequest

from services.listener.filters import SignalFilter, parse_tme_link
from shared.config import ConfigurationError, Settings, get_settings
from shared.models import BuySignal

logger = structlog.get_logger(__name__)

SignalCallback = Callable[[BuySignal], Awaitable[None]]


def _refuse_code_login() -> str:
    raise ConfigurationError(
        "Interactive login is required; log in once and store the session string"
    )


def outbound_target(value: str) -> int | str:
    """Convert a configured chat reference to what Telethon expects."""
    value = value.strip()
    if value.startswith("@"):
        return value
    try:
        return int(value)
    except ValueError:
        return value


class ListenerService:
    """
    Telegram user-session listener for buy signals.

    Also owns the outbound channel, since messages there are sent as the
    user rather than the bot.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        signal_filter: SignalFilter | None = None,
        client: TelegramClient | None = None,
    ):
        """
        Initialize listener service.

        Args:
            settings: Optional Settings instance
            signal_filter: Optional SignalFilter instance
            client: Optional pre-built Telethon client
        """
        self.settings = settings or get_settings()
        self.signal_filter = signal_filter or SignalFilter()
        self._client = client
        self._callback: SignalCallback | None = None
        self._event_builder: events.NewMessage | None = None

    @property
    def client(self) -> TelegramClient:
        """Get or create the Telethon client."""
        if self._client is None:
            config = self.settings.telegram
            self._client = TelegramClient(
                StringSession(config.session),
                config.api_id,
                config.api_hash,
                connection_retries=config.connection_retries,
            )
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected()

    async def connect(self) -> None:
        """
        Start the user session and join the configured target chat.

        Raises:
            ConfigurationError: If Telegram credentials are missing
        """
        config = self.settings.telegram
        if not config.is_configured:
            raise ConfigurationError("Trading client is not configured")

        await self.client.start(
            phone=lambda: config.phone,
            password=lambda: config.password,
            code_callback=_refuse_code_login,
        )
        logger.info("listener_connected")

        if config.join_target:
            try:
                await self.join_target(config.join_target)
            except Exception as e:
                logger.error("join_target_error", target=config.join_target, error=str(e))

        try:
            await self.client.get_dialogs()
        except Exception as e:
            logger.warning("get_dialogs_error", error=str(e))

    async def disconnect(self) -> None:
        """Remove the handler and close the session."""
        self.remove_handler()
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception as e:
                logger.warning("listener_disconnect_error", error=str(e))
            self._client = None
        logger.info("listener_disconnected")

    async def join_target(self, target: str) -> None:
        """Join a public chat by username or a private chat by invite link."""
        parsed = parse_tme_link(target)
        if parsed is None:
            logger.warning("join_target_unrecognised", target=target)
            return
        if parsed.type == "username":
            entity = await self.client.get_entity(parsed.value)
            await self.client(JoinChannelRequest(entity))
        else:
            await self.client(ImportChatInviteRequest(parsed.value))
        logger.info("join_target_joined", target=target, type=parsed.type)

    def add_handler(self, callback: SignalCallback) -> None:
        """Deliver buy signals from new messages to ``callback``."""
        self.remove_handler()
        self._callback = callback
        self._event_builder = events.NewMessage()
        self.client.add_event_handler(self._on_message, self._event_builder)

    def remove_handler(self) -> None:
        if self._event_builder is not None and self._client is not None:
            self._client.remove_event_handler(self._on_message, self._event_builder)
        self._event_builder = None
        self._callback = None

    async def _on_message(self, event) -> None:
        try:
            if self._callback is None:
                return
            result = self.signal_filter.parse(
                event.raw_text,
                is_group=bool(event.is_group or event.is_channel),
                chat_id=event.chat_id,
                message_id=event.id,
            )
            if not result.passed:
                return
            await self._callback(result.signal)
        except Exception as e:
            logger.error("signal_handler_error", error=str(e))

    async def export_message_link(self, chat_id: int | None, message_id: int | None) -> str | None:
        """Permalink to a channel message, or None if it cannot be exported."""
        if chat_id is None or message_id is None or self._client is None:
            return None
        try:
            channel = await self._client.get_input_entity(chat_id)
            result = await self._client(
                ExportMessageLinkRequest(channel=channel, id=message_id, grouped=False, thread=False)
            )
            return result.link or None
        except Exception as e:
            logger.debug("export_message_link_error", chat_id=chat_id, error=str(e))
            return None

    @property
    def can_send(self) -> bool:
        """Check if send_message would deliver rather than do nothing."""
        return bool(self.settings.telegram.outbound_chat_id) and self._client is not None

    async def send_message(self, text: str) -> None:
        """Send to the outbound channel; a no-op when it is not configured."""
        if not self.can_send:
            return
        await self._client.send_message(outbound_target(self.settings.telegram.outbound_chat_id), text)
