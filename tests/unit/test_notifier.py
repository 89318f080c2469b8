"""
Unit tests for the notification fanout.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from services.listener.service import ListenerService
from services.notifier.service import NotificationService
from shared.telegram_client import NotificationError


@pytest.fixture
def mock_bot_client():
    """Create a mocked bot client."""
    client = MagicMock()
    client.send_message = AsyncMock(return_value={"message_id": 1})
    return client


@pytest.fixture
def mock_outbound():
    """Create a mocked outbound channel."""
    outbound = MagicMock()
    outbound.send_message = AsyncMock()
    outbound.can_send = True
    return outbound


@pytest.fixture
def notifier(mock_bot_client, mock_outbound, test_settings):
    """Notifier with two subscribed chats."""
    service = NotificationService(
        bot_client=mock_bot_client,
        outbound=mock_outbound,
        settings=test_settings,
    )
    service.add_chat(1001)
    service.add_chat(1002)
    return service


class TestChatRegistry:
    """Tests for subscriber management."""

    def test_add_chat_dedupes(self, notifier):
        """Test subscribing the same chat twice keeps one entry."""
        notifier.add_chat(1001)
        assert notifier.chat_ids == frozenset({1001, 1002})

    def test_add_none_ignored(self, notifier):
        """Test a missing chat id is ignored."""
        notifier.add_chat(None)
        assert len(notifier.chat_ids) == 2

    def test_remove_chat(self, notifier):
        """Test unsubscribing a chat."""
        notifier.remove_chat(1001)
        notifier.remove_chat(9999)
        assert notifier.chat_ids == frozenset({1002})


class TestNotifyAll:
    """Tests for notify_all."""

    @pytest.mark.asyncio
    async def test_delivers_to_all(self, notifier, mock_bot_client, mock_outbound):
        """Test the message reaches every chat and the outbound channel."""
        delivered = await notifier.notify_all("hello")

        assert delivered == 3
        assert mock_bot_client.send_message.call_count == 2
        mock_outbound.send_message.assert_called_once_with("hello")

    @pytest.mark.asyncio
    async def test_outbound_text_override(self, notifier, mock_outbound):
        """Test different text can be sent to the outbound channel."""
        await notifier.notify_all("for subscribers", outbound="for channel")

        mock_outbound.send_message.assert_called_once_with("for channel")

    @pytest.mark.asyncio
    async def test_outbound_skipped(self, notifier, mock_outbound):
        """Test the outbound channel can be skipped."""
        delivered = await notifier.notify_all("engine started", outbound=False)

        assert delivered == 2
        mock_outbound.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, notifier, mock_bot_client, mock_outbound):
        """Test one failed delivery does not affect the others."""
        mock_bot_client.send_message.side_effect = [
            NotificationError("chat not found", chat_id=1001),
            {"message_id": 2},
        ]
        mock_outbound.send_message.side_effect = Exception("flood wait")

        delivered = await notifier.notify_all("hello")

        assert delivered == 1

    @pytest.mark.asyncio
    async def test_empty_message(self, notifier, mock_bot_client):
        """Test an empty message is not sent."""
        assert await notifier.notify_all("") == 0
        mock_bot_client.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_targets(self, mock_bot_client, test_settings):
        """Test nothing happens without chats or an outbound channel."""
        service = NotificationService(bot_client=mock_bot_client, settings=test_settings)

        assert await service.notify_all("hello") == 0
        mock_bot_client.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_unconfigured_outbound_not_counted(self, notifier, mock_bot_client, mock_outbound):
        """Test an outbound channel that cannot send is neither called nor counted."""
        mock_outbound.can_send = False

        delivered = await notifier.notify_all("hello")

        assert delivered == 2
        mock_outbound.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_unconfigured_listener_not_counted(self, mock_bot_client, test_settings):
        """Test a listener without an outbound chat adds no delivery."""
        test_settings.telegram.outbound_chat_id = ""
        service = NotificationService(
            bot_client=mock_bot_client,
            outbound=ListenerService(settings=test_settings, client=AsyncMock()),
            settings=test_settings,
        )
        service.add_chat(1001)

        assert await service.notify_all("hello") == 1
