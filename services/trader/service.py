"""
Trader service implementation.

Applies buy results to the position ledger and runs automatic sells, then
persists the trading state and notifies subscribers.

Within one buy or sell the order is always: ledger mutation, history append,
persistence, notification. A failure after the ledger mutation does not roll
it back.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from services.notifier.service import NotificationService
from shared.config import Settings, get_settings
from shared.firestore_client import FirestoreClient, PersistenceError, get_firestore_client
from shared.jupiter_client import JupiterClient, from_raw_amount
from shared.ledger import PositionLedger, to_safe_number
from shared.models import (
    BuySignal,
    HistoryEntry,
    HistoryEventType,
    Position,
    PositionPatch,
    Summary,
    SwapResult,
    WalletToken,
)
from shared.settings_store import SettingsStore

logger = structlog.get_logger(__name__)


def format_signed(value: float, decimals: int, prefix: str = "", suffix: str = "") -> str:
    """Format with an explicit sign, e.g. ``+$1.2300`` or ``-4.50%``."""
    sign = "+" if value >= 0 else "-"
    return f"{sign}{prefix}{abs(value):.{decimals}f}{suffix}"


def build_buy_message(ticker: str, swap_result: SwapResult) -> str:
    """Subscriber notification for a buy."""
    parts = [f"• Bought: `{ticker}`"]
    if swap_result.market_cap_formatted:
        parts.append(f"Market cap: {swap_result.market_cap_formatted}")
    if swap_result.text:
        parts.append(f"Link: {swap_result.text}")
    return "\n".join(parts)


def build_outbound_buy_message(
    ticker: str,
    swap_result: SwapResult,
    header: str | None = None,
    source_link: str | None = None,
) -> str:
    """Outbound channel message for a buy, with the signal header and source link."""
    parts = [f"• Bought: `{ticker}`"]
    if header:
        parts.append(f"Header: {header}")
    if source_link:
        parts.append(f"Source: {source_link}")
    if swap_result.text:
        parts.append(f"Tx: {swap_result.text}")
    return "\n".join(parts)


def build_sell_message(
    position: Position,
    signature: str,
    explorer_tx_url: str,
    profit: float | None,
    profit_percent: float | None,
    currency: str = "USD",
) -> str:
    """Notification for an automatic sell."""
    lines = [
        f"• Sold: {position.symbol or position.mint}",
        f"Tx: {explorer_tx_url}{signature}",
    ]
    if profit is not None:
        if currency == "USD":
            lines.append(f"Profit: {format_signed(profit, 4, prefix='$')}")
        else:
            lines.append(f"Profit: {format_signed(profit, 4, suffix=f' {currency}')}")
    if profit_percent is not None:
        lines.append(f"Δ: {format_signed(profit_percent, 2, suffix='%')}")
    return "\n".join(lines)


class TraderService:
    """
    Buy and sell transition handlers for the position ledger.

    Ledger changes for one mint are serialised by ``mint_lock``. A sell holds
    it from the position re-check until the ledger is updated; a buy from
    before its swap executes (see ``TradingEngine.handle_signal``) until the
    position is recorded. A sell that finds the position changed is aborted.
    """

    def __init__(
        self,
        ledger: PositionLedger | None = None,
        jupiter_client: JupiterClient | None = None,
        firestore_client: FirestoreClient | None = None,
        notifier: NotificationService | None = None,
        settings_store: SettingsStore | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize trader service.

        Args:
            ledger: Optional ledger; a new empty one is created if None
            jupiter_client: Optional Jupiter client for sells
            firestore_client: Optional Firestore client for persistence
            notifier: Optional notification fanout
            settings_store: Optional runtime settings store
            settings: Optional Settings instance
        """
        self.settings = settings or get_settings()
        self.ledger = ledger or PositionLedger(
            history_limit=self.settings.trading.history_limit,
            currency=self.settings.trading.accounting_currency,
        )
        self._jupiter_client = jupiter_client
        self._firestore_client = firestore_client
        self._notifier = notifier
        self._settings_store = settings_store
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def jupiter_client(self) -> JupiterClient:
        """Get or create Jupiter client."""
        if self._jupiter_client is None:
            self._jupiter_client = JupiterClient(self.settings)
        return self._jupiter_client

    @property
    def firestore_client(self) -> FirestoreClient:
        """Get or create Firestore client."""
        if self._firestore_client is None:
            self._firestore_client = get_firestore_client(self.settings)
        return self._firestore_client

    @property
    def notifier(self) -> NotificationService:
        """Get or create notifier."""
        if self._notifier is None:
            self._notifier = NotificationService(settings=self.settings)
        return self._notifier

    @property
    def settings_store(self) -> SettingsStore:
        """Get or create settings store."""
        if self._settings_store is None:
            self._settings_store = SettingsStore(settings=self.settings)
        return self._settings_store

    @asynccontextmanager
    async def mint_lock(self, mint: str) -> AsyncIterator[None]:
        """
        Hold the lock guarding ledger changes for ``mint``.

        The lock is dropped once no task holds or waits for it.
        """
        lock = self._locks.get(mint)
        if lock is None:
            lock = self._locks[mint] = asyncio.Lock()
        self._lock_users[mint] = self._lock_users.get(mint, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[mint] -= 1
            if not self._lock_users[mint]:
                del self._lock_users[mint]
                del self._locks[mint]

    # =========================================================================
    # Persistence
    # =========================================================================

    async def persist_state(self, reason: str) -> Summary:
        """
        Refresh the derived summary fields and save the trading state.

        Saving is best-effort: failures are logged and never raised.

        Args:
            reason: Why the state changed (e.g. "buy", "sell")

        Returns:
            The refreshed summary
        """
        summary = self.ledger.refresh_summary(reason)
        if not self.firestore_client.is_active():
            return summary
        try:
            await self.firestore_client.save_trading_state(self.ledger.snapshot())
        except PersistenceError as e:
            logger.error("persist_state_error", reason=reason, error=str(e))
        return summary

    # =========================================================================
    # Buy
    # =========================================================================

    async def handle_buy_success(
        self,
        ticker: str,
        swap_result: SwapResult,
        signal: BuySignal | None = None,
        source_link: str | None = None,
    ) -> Position | None:
        """
        Record a successful buy and announce it.

        Args:
            ticker: Ticker from the signal
            swap_result: Result of the executed swap
            signal: Originating signal (for the header line)
            source_link: Permalink to the originating message, if resolved

        Returns:
            The merged position, or None if the swap result has no mint or amount
        """
        mint = swap_result.purchased_mint
        if mint:
            async with self.mint_lock(mint):
                position = await self.record_buy(ticker, swap_result)
        else:
            position = await self.record_buy(ticker, swap_result)
        await self.announce_buy(ticker, swap_result, signal, source_link)
        return position

    async def record_buy(self, ticker: str, swap_result: SwapResult) -> Position | None:
        """
        Merge a buy into the ledger and append it to the history.

        The caller must hold ``mint_lock`` for the purchased mint.

        Returns:
            The merged position, or None if the swap result has no mint or amount
        """
        mint = swap_result.purchased_mint
        amount_raw = swap_result.purchased_amount_raw
        amount_ui = to_safe_number(swap_result.purchased_amount_ui)
        cost = to_safe_number(swap_result.spent_amount_ui)
        symbol = swap_result.purchased_symbol or ticker
        trading_settings = await self.settings_store.get_all()

        position = None
        if mint and amount_raw:
            base_symbol = swap_result.base_symbol or trading_settings.token or None
            currency = self.ledger.currency
            if base_symbol and base_symbol.upper() != currency.upper():
                logger.warning(
                    "mixed_accounting_currency",
                    mint=mint,
                    base_symbol=base_symbol,
                    accounting_currency=currency,
                )
            patch = PositionPatch(
                mint=mint,
                symbol=symbol,
                amount_raw=amount_raw,
                amount_ui=amount_ui,
                base_mint=swap_result.base_mint or trading_settings.token_mint or None,
                base_symbol=base_symbol,
                base_decimals=swap_result.base_decimals,
                cost_base_amount=cost,
                market_cap=swap_result.market_cap,
                transaction_signature=swap_result.transaction_signature,
                target_profit_percent=trading_settings.profit_target_percent,
            )
            position = self.ledger.upsert_on_buy(patch)
            logger.info(
                "position_bought",
                mint=mint,
                symbol=symbol,
                amount_raw=position.amount_raw,
                cost_base_amount=position.cost_base_amount,
            )

        signatures = {}
        if swap_result.transaction_signature:
            signatures["buy"] = swap_result.transaction_signature
        self.ledger.append_history(
            HistoryEntry(
                type=HistoryEventType.BUY,
                mint=mint,
                symbol=symbol,
                amount_ui=amount_ui,
                cost_usd=cost,
                market_cap=swap_result.market_cap,
                signatures=signatures,
            )
        )
        return position

    async def announce_buy(
        self,
        ticker: str,
        swap_result: SwapResult,
        signal: BuySignal | None = None,
        source_link: str | None = None,
    ) -> None:
        """Persist the state after a recorded buy and notify subscribers."""
        await self.persist_state("buy")

        await self.notifier.notify_all(
            build_buy_message(ticker, swap_result),
            outbound=build_outbound_buy_message(
                ticker,
                swap_result,
                header=signal.header if signal else None,
                source_link=source_link,
            ),
        )

    # =========================================================================
    # Sell
    # =========================================================================

    async def sell_position(
        self,
        position: Position,
        wallet_token: WalletToken | None = None,
        base_token: WalletToken | None = None,
    ) -> bool:
        """
        Liquidate a whole position into its base token.

        The sell is aborted without changes when there is no balance or base
        mint, or when the position was sold or topped up since ``position``
        was read.

        Args:
            position: Position as read by the caller
            wallet_token: Current wallet entry for the position's mint
            base_token: Current wallet entry for the base token

        Returns:
            True if the position was sold and removed
        """
        mint = position.mint
        signature = None
        try:
            raw_amount = wallet_token.raw_amount if wallet_token else position.amount_raw
            if not raw_amount or int(raw_amount) <= 0:
                logger.info("sell_skipped_no_balance", mint=mint)
                return False
            if not position.base_mint:
                logger.info("sell_skipped_no_base_mint", mint=mint)
                return False

            async with self.mint_lock(mint):
                current = self.ledger.get(mint)
                if (
                    current is None
                    or current.last_updated_at != position.last_updated_at
                    or current.amount_raw != position.amount_raw
                ):
                    logger.info("sell_aborted_position_changed", mint=mint)
                    return False

                quote = await self.jupiter_client.get_quote(mint, position.base_mint, raw_amount)
                base_decimals = (
                    base_token.decimals
                    if base_token is not None and base_token.decimals is not None
                    else position.base_decimals
                )
                cost = to_safe_number(position.cost_base_amount) or 0.0

                signature = await self.jupiter_client.execute_quote(quote)

                received = from_raw_amount(quote.out_amount, base_decimals)
                profit = received - cost if received is not None else None
                profit_percent = profit / cost * 100 if profit is not None and cost > 0 else None

                self.ledger.remove_on_sell(mint)
                self.ledger.record_close(cost, received)
                signatures = {"sell": signature}
                if position.last_buy_signature:
                    signatures["buy"] = position.last_buy_signature
                self.ledger.append_history(
                    HistoryEntry(
                        type=HistoryEventType.SELL,
                        mint=mint,
                        symbol=position.symbol,
                        amount_ui=position.amount_ui,
                        cost_usd=cost,
                        received_usd=received,
                        profit_usd=profit,
                        profit_percent=profit_percent,
                        signatures=signatures,
                    )
                )

            logger.info(
                "position_sold",
                mint=mint,
                signature=signature,
                cost=cost,
                received=received,
                profit_percent=profit_percent,
            )

            await self.persist_state("sell")

            await self.notifier.notify_all(
                build_sell_message(
                    position,
                    signature,
                    self.settings.trading.explorer_tx_url,
                    profit,
                    profit_percent,
                    currency=self.ledger.currency,
                )
            )
            return True
        except Exception as e:
            logger.error("auto_sell_error", mint=mint, signature=signature, error=str(e))
            return False


# Factory function
def get_trader_service(settings: Settings | None = None) -> TraderService:
    """Create a new trader service instance."""
    return TraderService(settings=settings)
