"""
Position Monitor service implementation.

Periodically values open positions and triggers automatic sells once the
profit target is reached.
"""

import asyncio
import math

import structlog

from services.trader.service import TraderService, get_trader_service
from shared.config import Settings, get_settings
from shared.jupiter_client import JupiterClient
from shared.ledger import PositionLedger, to_safe_number
from shared.models import MonitorPassResult, Position, WalletToken, utc_now
from shared.settings_store import SettingsStore

logger = structlog.get_logger(__name__)


class MonitorService:
    """
    Service for monitoring open positions.

    At most one pass runs at a time. A trigger that arrives while a pass is
    running waits for that pass and receives its result; it never starts or
    queues a second pass.
    """

    def __init__(
        self,
        trader_service: TraderService | None = None,
        jupiter_client: JupiterClient | None = None,
        settings_store: SettingsStore | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize monitor service.

        Args:
            trader_service: Optional TraderService for executing sells
            jupiter_client: Optional Jupiter client for wallet valuations
            settings_store: Optional runtime settings store
            settings: Optional Settings instance
        """
        self.settings = settings or get_settings()
        self._trader_service = trader_service
        self._jupiter_client = jupiter_client
        self._settings_store = settings_store
        self._pass_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None

    @property
    def trader_service(self) -> TraderService:
        """Get or create trader service."""
        if self._trader_service is None:
            self._trader_service = get_trader_service(self.settings)
        return self._trader_service

    @property
    def jupiter_client(self) -> JupiterClient:
        """Get or create Jupiter client."""
        if self._jupiter_client is None:
            self._jupiter_client = self.trader_service.jupiter_client
        return self._jupiter_client

    @property
    def settings_store(self) -> SettingsStore:
        """Get or create settings store."""
        if self._settings_store is None:
            self._settings_store = self.trader_service.settings_store
        return self._settings_store

    @property
    def ledger(self) -> PositionLedger:
        return self.trader_service.ledger

    @property
    def in_flight(self) -> bool:
        """Check if a pass is currently running."""
        return self._pass_task is not None and not self._pass_task.done()

    @property
    def is_running(self) -> bool:
        """Check if the periodic timer is active."""
        return self._timer_task is not None and not self._timer_task.done()

    # =========================================================================
    # Evaluation
    # =========================================================================

    @staticmethod
    def compute_profit_percent(position: Position, wallet_token: WalletToken | None) -> float | None:
        """
        Profit of a position at the current valuation, in percent of cost.

        Returns:
            Profit percent, or None when there is no valuation or no positive cost
        """
        if wallet_token is None:
            return None
        cost = to_safe_number(position.cost_base_amount)
        if cost is None or cost <= 0:
            return None
        value = to_safe_number(wallet_token.value_in_base)
        if value is None or not math.isfinite(value):
            return None
        return (value - cost) / cost * 100

    def evaluate_position(
        self,
        position: Position,
        wallet_token: WalletToken | None,
        profit_target: float,
    ) -> bool:
        """Check whether a position has reached the profit target."""
        profit_percent = self.compute_profit_percent(position, wallet_token)
        if profit_percent is None:
            return False
        logger.debug(
            "position_evaluated",
            mint=position.mint,
            profit_percent=round(profit_percent, 4),
            profit_target=profit_target,
        )
        return profit_percent >= profit_target

    # =========================================================================
    # Passes
    # =========================================================================

    async def run_pass(self) -> MonitorPassResult:
        """
        Run a monitor pass, or join the one already running.

        Returns:
            MonitorPassResult of the pass that ran
        """
        task = self._pass_task
        if task is None or task.done():
            task = asyncio.create_task(self._execute_pass())
            task.add_done_callback(self._clear_pass)
            self._pass_task = task
        else:
            logger.debug("monitor_pass_joined")
        return await asyncio.shield(task)

    def _clear_pass(self, task: asyncio.Task) -> None:
        if self._pass_task is task:
            self._pass_task = None

    async def _execute_pass(self) -> MonitorPassResult:
        result = MonitorPassResult()
        try:
            if len(self.ledger) == 0:
                result.skipped_reason = "no_open_positions"
                return result

            trading_settings = await self.settings_store.get_all()
            profit_target = to_safe_number(trading_settings.profit_target_percent) or 0.0
            if profit_target <= 0:
                result.skipped_reason = "profit_target_disabled"
                return result

            tokens = await self.jupiter_client.get_wallet_tokens(
                trading_settings.base_token or None
            )
            by_mint = {token.mint: token for token in tokens}

            for position in self.ledger.positions():
                result.positions_checked += 1
                wallet_token = by_mint.get(position.mint)
                if not self.evaluate_position(position, wallet_token, profit_target):
                    continue
                base_token = by_mint.get(position.base_mint) if position.base_mint else None
                result.sells_triggered += 1
                sold = await self.trader_service.sell_position(position, wallet_token, base_token)
                if not sold:
                    result.sells_failed += 1
        except Exception as e:
            logger.error("monitor_pass_error", error=str(e))
            result.errors.append(str(e))
        finally:
            result.completed_at = utc_now()

        logger.info(
            "monitor_pass_completed",
            positions_checked=result.positions_checked,
            sells_triggered=result.sells_triggered,
            sells_failed=result.sells_failed,
        )
        return result

    async def wait_idle(self) -> None:
        """Wait for the running pass, if any, to finish."""
        task = self._pass_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # =========================================================================
    # Timer
    # =========================================================================

    def start(self, interval_seconds: float | None = None) -> None:
        """Start the periodic timer; a no-op if it is already running."""
        if self.is_running:
            return
        interval = interval_seconds or self.settings.trading.monitor_interval_seconds
        self._timer_task = asyncio.create_task(self._run_timer(interval))
        logger.info("monitor_started", interval_seconds=interval)

    async def _run_timer(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_pass()
            except Exception as e:
                logger.error("monitor_tick_error", error=str(e))

    async def stop(self) -> None:
        """
        Stop the periodic timer.

        A pass that is already running is not cancelled and finishes on its own.
        """
        task = self._timer_task
        self._timer_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("monitor_stopped")


# Factory function
def get_monitor_service(settings: Settings | None = None) -> MonitorService:
    """Create a new monitor service instance."""
    return MonitorService(settings=settings)
