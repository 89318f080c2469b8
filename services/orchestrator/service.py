"""
Trading engine implementation.

Owns the engine lifecycle and wires the listener, trader, monitor and
notifier around a single position ledger.
"""

import asyncio
from typing import Any

import structlog

from services.listener.service import ListenerService
from services.monitor.service import MonitorService
from services.notifier.service import NotificationService
from services.trader.service import TraderService
from shared.config import ConfigurationError, Settings, get_settings
from shared.firestore_client import FirestoreClient, PersistenceError, get_firestore_client
from shared.jupiter_client import JupiterAPIError, JupiterClient
from shared.ledger import PositionLedger, to_safe_number
from shared.models import (
    BuySignal,
    EngineState,
    HistoryEntry,
    MonitorPassResult,
    Position,
    StartResult,
    Summary,
    SwapResult,
    SwapStatus,
)
from shared.settings_store import SettingsStore

logger = structlog.get_logger(__name__)


class TradingEngine:
    """
    Signal trading engine.

    Lifecycle: stopped -> starting -> running -> stopping -> stopped.
    While running, buy signals from the listener and monitor ticks are
    handled concurrently on the event loop.
    """

    def __init__(
        self,
        trader_service: TraderService | None = None,
        monitor_service: MonitorService | None = None,
        listener: ListenerService | None = None,
        notifier: NotificationService | None = None,
        jupiter_client: JupiterClient | None = None,
        firestore_client: FirestoreClient | None = None,
        settings_store: SettingsStore | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the engine with all collaborators."""
        self.settings = settings or get_settings()
        self.settings_store = settings_store or SettingsStore(settings=self.settings)
        self.firestore_client = firestore_client or get_firestore_client(self.settings)
        self.jupiter_client = jupiter_client or JupiterClient(self.settings)
        self.listener = listener or ListenerService(settings=self.settings)
        self.notifier = notifier or NotificationService(
            outbound=self.listener, settings=self.settings
        )
        self.trader = trader_service or TraderService(
            jupiter_client=self.jupiter_client,
            firestore_client=self.firestore_client,
            notifier=self.notifier,
            settings_store=self.settings_store,
            settings=self.settings,
        )
        self.monitor = monitor_service or MonitorService(
            trader_service=self.trader,
            jupiter_client=self.jupiter_client,
            settings_store=self.settings_store,
            settings=self.settings,
        )
        self.state = EngineState.STOPPED
        self._lifecycle_lock = asyncio.Lock()

    @property
    def ledger(self) -> PositionLedger:
        return self.trader.ledger

    @property
    def is_running(self) -> bool:
        return self.state == EngineState.RUNNING

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, notify_chat_id: int | str | None = None) -> StartResult:
        """
        Start the engine.

        Loads the persisted state, connects the listener and starts the
        monitor timer. Starting a running engine only registers the chat.

        Args:
            notify_chat_id: Chat to subscribe to notifications

        Returns:
            StartResult

        Raises:
            ConfigurationError: If Telegram credentials are missing
        """
        self.add_notify_chat(notify_chat_id)

        async with self._lifecycle_lock:
            if self.state != EngineState.STOPPED:
                return StartResult(already_running=True)

            if not self.settings.telegram.is_configured:
                raise ConfigurationError("Trading client is not configured")

            self.state = EngineState.STARTING
            try:
                await self._load_state()
                await self.listener.connect()
                self.listener.add_handler(self.handle_signal)
                self.monitor.start(self.settings.trading.monitor_interval_seconds)
            except Exception:
                self.state = EngineState.STOPPED
                await self.monitor.stop()
                await self.listener.disconnect()
                raise

            self.state = EngineState.RUNNING

        logger.info("engine_started", positions=len(self.ledger))
        await self.notifier.notify_all("Trading engine started", outbound=False)
        return StartResult(started=True)

    async def _load_state(self) -> None:
        self.ledger.reset()
        if not self.firestore_client.is_active():
            logger.info("persistence_inactive_starting_empty")
            return
        try:
            snapshot = await self.firestore_client.load_trading_state()
        except PersistenceError as e:
            logger.error("load_state_error", error=str(e))
            return
        if snapshot is not None:
            self.ledger.restore(snapshot)

    async def stop(self) -> bool:
        """
        Stop the engine.

        The monitor timer is cancelled and the listener disconnected. A
        monitor pass that is already running finishes on its own.

        Returns:
            True if the engine was running
        """
        async with self._lifecycle_lock:
            if self.state != EngineState.RUNNING:
                return False
            self.state = EngineState.STOPPING
            try:
                await self.monitor.stop()
                await self.listener.disconnect()
            finally:
                self.state = EngineState.STOPPED

        logger.info("engine_stopped")
        await self.notifier.notify_all("Trading engine stopped", outbound=False)
        return True

    async def close(self) -> None:
        """Stop the engine and release clients."""
        await self.stop()
        await self.jupiter_client.close()
        await self.firestore_client.close()
        await self.notifier.bot_client.close()

    # =========================================================================
    # Signals
    # =========================================================================

    async def handle_signal(self, signal: BuySignal) -> SwapResult | None:
        """
        Buy the token named by a signal and record the position.

        Never raises; failures are logged and, where useful, announced.

        Args:
            signal: Buy signal from the listener

        Returns:
            SwapResult, or None if no swap was attempted or it failed
        """
        ticker = signal.ticker
        try:
            if not self.is_running:
                logger.info("signal_ignored_engine_not_running", ticker=ticker)
                return None

            trading_settings = await self.settings_store.get_all()
            amount = to_safe_number(
                signal.amount if signal.amount is not None else trading_settings.amount
            )
            base_token = signal.base_currency or trading_settings.base_token
            market_cap_minimum = (
                signal.min_market_cap
                if signal.min_market_cap is not None
                else trading_settings.market_cap_minimum
            )

            if not amount or amount <= 0 or not base_token:
                logger.warning("signal_skipped_not_configured", ticker=ticker)
                await self.notifier.notify_all(
                    f"Skipping signal {ticker}: configure token and amount first.",
                    outbound=False,
                )
                return None

            token = await self.jupiter_client.lookup_ticker(ticker)
            # No sell of this mint runs between the swap and the ledger update.
            async with self.trader.mint_lock(token["id"]):
                swap_result = await self.jupiter_client.buy_token(
                    token, amount, base_token, market_cap_minimum or 0.0
                )
                if swap_result.status == SwapStatus.SUCCESS:
                    await self.trader.record_buy(ticker, swap_result)

            if swap_result.status != SwapStatus.SUCCESS:
                await self.notifier.notify_all(
                    swap_result.text or f"Swap {swap_result.status.value} for {ticker}",
                    outbound=False,
                )
                return swap_result

            source_link = await self.listener.export_message_link(
                signal.chat_id, signal.message_id
            )
            await self.trader.announce_buy(ticker, swap_result, signal, source_link)
            return swap_result
        except JupiterAPIError as e:
            logger.error("signal_swap_error", ticker=ticker, error=str(e))
            await self.notifier.notify_all(f"Swap failed for {ticker}: {e}", outbound=False)
            return None
        except Exception as e:
            logger.error("signal_handler_error", ticker=ticker, error=str(e))
            return None

    # =========================================================================
    # Monitor and Reads
    # =========================================================================

    async def trigger_monitor(self) -> MonitorPassResult:
        """Run a monitor pass now, or join the one in progress."""
        return await self.monitor.run_pass()

    def add_notify_chat(self, chat_id: int | str | None) -> None:
        self.notifier.add_chat(chat_id)

    def get_summary(self) -> Summary:
        return self.ledger.summary.model_copy()

    def get_positions(self) -> list[Position]:
        return self.ledger.positions()

    def get_history(self, limit: int | None = None) -> list[HistoryEntry]:
        return self.ledger.history.entries(limit)

    def get_status(self) -> dict[str, Any]:
        """Engine state overview."""
        return {
            "state": self.state.value,
            "running": self.is_running,
            "monitor_running": self.monitor.is_running,
            "monitor_in_flight": self.monitor.in_flight,
            "open_positions": len(self.ledger),
            "history_entries": len(self.ledger.history),
            "persistence_active": self.firestore_client.is_active(),
            "notify_chats": len(self.notifier.chat_ids),
        }


# Factory function
def get_trading_engine(settings: Settings | None = None) -> TradingEngine:
    """Create a new trading engine instance."""
    return TradingEngine(settings=settings)
