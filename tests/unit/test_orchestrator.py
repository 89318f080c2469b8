"""
Unit tests for the trading engine.
"""

import asyncio

import pytest

from services.orchestrator.service import TradingEngine, get_trading_engine
from shared.config import ConfigurationError
from shared.firestore_client import PersistenceError
from shared.jupiter_client import ExecutionError, QuoteError
from shared.models import (
    BuySignal,
    EngineState,
    MonitorPassResult,
    PositionPatch,
    SwapQuote,
    SwapResult,
    SwapStatus,
    TradingSettings,
    WalletToken,
)

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def engine_settings(test_settings):
    """Settings with a Telegram session configured."""
    test_settings.telegram.api_id = 12345
    test_settings.telegram.api_hash = "hash"
    test_settings.telegram.session = "1Asession"
    return test_settings


@pytest.fixture
def engine(
    engine_settings,
    mock_listener,
    mock_notifier,
    mock_jupiter_client,
    mock_firestore_client,
    mock_settings_store,
):
    """Engine wired to mocked clients."""
    return TradingEngine(
        listener=mock_listener,
        notifier=mock_notifier,
        jupiter_client=mock_jupiter_client,
        firestore_client=mock_firestore_client,
        settings_store=mock_settings_store,
        settings=engine_settings,
    )


@pytest.fixture
def signal():
    """Buy signal from a channel message."""
    return BuySignal(ticker="$BONK", header="NEW TRENDING", chat_id=-100555, message_id=9)


class TestLifecycle:
    """Tests for starting and stopping the engine."""

    @pytest.mark.asyncio
    async def test_start(self, engine, mock_listener, mock_notifier):
        """Test starting connects the listener and the monitor timer."""
        result = await engine.start(notify_chat_id=1001)

        assert result.started is True
        assert engine.state == EngineState.RUNNING
        assert engine.is_running is True
        assert engine.monitor.is_running is True
        mock_notifier.add_chat.assert_called_with(1001)
        mock_listener.connect.assert_called_once()
        mock_listener.add_handler.assert_called_once_with(engine.handle_signal)
        mock_notifier.notify_all.assert_called_with("Trading engine started", outbound=False)

        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_twice(self, engine, mock_listener, mock_notifier):
        """Test starting a running engine only registers the chat."""
        await engine.start()

        result = await engine.start(notify_chat_id=2002)

        assert result.already_running is True
        assert result.started is False
        assert mock_listener.connect.call_count == 1
        mock_notifier.add_chat.assert_called_with(2002)

        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_not_configured(self, engine, engine_settings, mock_listener):
        """Test starting without Telegram credentials raises."""
        engine_settings.telegram.session = ""

        with pytest.raises(ConfigurationError):
            await engine.start()

        assert engine.state == EngineState.STOPPED
        mock_listener.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_connect_failure(self, engine, mock_listener):
        """Test a failed connect leaves the engine stopped."""
        mock_listener.connect.side_effect = Exception("auth key unregistered")

        with pytest.raises(Exception, match="auth key"):
            await engine.start()

        assert engine.state == EngineState.STOPPED
        assert engine.monitor.is_running is False
        mock_listener.disconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_restores_state(self, engine, mock_firestore_client, trading_snapshot):
        """Test persisted positions, history and summary are restored."""
        mock_firestore_client.load_trading_state.return_value = trading_snapshot

        await engine.start()

        assert len(engine.ledger) == 1
        assert len(engine.ledger.history) == 2
        assert engine.get_summary().total_closed_trades == 1

        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_with_load_failure(self, engine, mock_firestore_client):
        """Test a failed load starts with an empty ledger."""
        mock_firestore_client.load_trading_state.side_effect = PersistenceError("unavailable")

        result = await engine.start()

        assert result.started is True
        assert len(engine.ledger) == 0

        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_without_persistence(self, engine, mock_firestore_client):
        """Test nothing is loaded when persistence is inactive."""
        mock_firestore_client.is_active.return_value = False

        await engine.start()

        mock_firestore_client.load_trading_state.assert_not_called()

        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop(self, engine, mock_listener, mock_notifier):
        """Test stopping the engine."""
        await engine.start()

        assert await engine.stop() is True

        assert engine.state == EngineState.STOPPED
        assert engine.monitor.is_running is False
        mock_listener.disconnect.assert_called_once()
        mock_notifier.notify_all.assert_called_with("Trading engine stopped", outbound=False)

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self, engine, mock_listener):
        """Test stopping a stopped engine is a no-op."""
        assert await engine.stop() is False
        mock_listener.disconnect.assert_not_called()

    @pytest.mark.asyncio
    async def test_close(self, engine, mock_jupiter_client, mock_firestore_client):
        """Test closing releases the clients."""
        await engine.close()

        mock_jupiter_client.close.assert_called_once()
        mock_firestore_client.close.assert_called_once()


class TestHandleSignal:
    """Tests for handling buy signals."""

    @pytest.fixture
    def token(self, mint):
        """Exact symbol match for the signal's ticker."""
        return {"id": mint, "symbol": "BONK", "decimals": 6}

    @pytest.mark.asyncio
    async def test_ignored_when_stopped(self, engine, signal, mock_jupiter_client):
        """Test signals are ignored while the engine is stopped."""
        assert await engine.handle_signal(signal) is None
        mock_jupiter_client.lookup_ticker.assert_not_called()
        mock_jupiter_client.buy_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_buy(self, engine, signal, token, swap_result, mint, mock_jupiter_client, mock_listener):
        """Test a signal buys the token and records the position."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.return_value = swap_result
        mock_listener.export_message_link.return_value = "https://t.me/c/555/9"

        result = await engine.handle_signal(signal)

        assert result is swap_result
        mock_jupiter_client.lookup_ticker.assert_called_once_with("$BONK")
        mock_jupiter_client.buy_token.assert_called_once_with(token, 10.0, USDC_MINT, 0.0)
        mock_listener.export_message_link.assert_called_once_with(-100555, 9)
        assert mint in engine.ledger
        assert engine.get_positions()[0].amount_raw == "1000"
        assert engine.trader._locks == {}

        await engine.stop()

    @pytest.mark.asyncio
    async def test_signal_overrides(self, engine, token, swap_result, mock_jupiter_client):
        """Test amount, base and market cap from the signal take precedence."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.return_value = swap_result
        signal = BuySignal(ticker="$WIF", amount=2.5, base_currency="SOL", min_market_cap=50_000)

        await engine.handle_signal(signal)

        mock_jupiter_client.lookup_ticker.assert_called_once_with("$WIF")
        mock_jupiter_client.buy_token.assert_called_once_with(token, 2.5, "SOL", 50_000)

        await engine.stop()

    @pytest.mark.asyncio
    async def test_not_configured(self, engine, signal, mock_settings_store, mock_jupiter_client, mock_notifier):
        """Test a signal is skipped until token and amount are set."""
        await engine.start()
        mock_settings_store.get_all.return_value = TradingSettings()

        assert await engine.handle_signal(signal) is None

        mock_jupiter_client.lookup_ticker.assert_not_called()
        mock_jupiter_client.buy_token.assert_not_called()
        mock_notifier.notify_all.assert_called_with(
            "Skipping signal $BONK: configure token and amount first.", outbound=False
        )

        await engine.stop()

    @pytest.mark.asyncio
    async def test_skipped_swap(self, engine, signal, token, mock_jupiter_client, mock_notifier):
        """Test a skipped swap is announced and not recorded."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.return_value = SwapResult(
            status=SwapStatus.SKIPPED, text="Skipping $BONK: market cap $50.00K is below minimum"
        )

        result = await engine.handle_signal(signal)

        assert result.status == SwapStatus.SKIPPED
        assert len(engine.ledger) == 0
        assert engine.trader._locks == {}
        assert "below minimum" in mock_notifier.notify_all.call_args[0][0]

        await engine.stop()

    @pytest.mark.asyncio
    async def test_lookup_error(self, engine, signal, mock_jupiter_client, mock_notifier):
        """Test an unknown ticker is announced and contained."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.side_effect = QuoteError('No exact symbol match for "BONK"')

        assert await engine.handle_signal(signal) is None

        message = mock_notifier.notify_all.call_args[0][0]
        assert message.startswith("Swap failed for $BONK:")
        assert len(engine.ledger) == 0
        mock_jupiter_client.buy_token.assert_not_called()

        await engine.stop()

    @pytest.mark.asyncio
    async def test_swap_error(self, engine, signal, token, mint, mock_jupiter_client, mock_notifier):
        """Test a failed swap releases the mint lock."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.side_effect = ExecutionError("Transaction expired")

        assert await engine.handle_signal(signal) is None

        assert "Transaction expired" in mock_notifier.notify_all.call_args[0][0]
        assert engine.trader._locks == {}

        await engine.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error(self, engine, signal, token, mock_jupiter_client):
        """Test unexpected errors never propagate."""
        await engine.start()
        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.side_effect = RuntimeError("boom")

        assert await engine.handle_signal(signal) is None

        await engine.stop()

    @pytest.mark.asyncio
    async def test_sell_waits_for_recorded_buy(self, engine, signal, token, mint, mock_jupiter_client):
        """Test a sell valued against a pending buy's tokens does not close the old position."""
        await engine.start()
        engine.ledger.upsert_on_buy(
            PositionPatch(
                mint=mint,
                symbol="BONK",
                amount_raw="1000000",
                base_mint=USDC_MINT,
                base_decimals=6,
                cost_base_amount=10.0,
            )
        )
        swapped = asyncio.Event()
        release = asyncio.Event()
        valued = asyncio.Event()

        async def buy_token(*args):
            swapped.set()
            await release.wait()
            return SwapResult(
                status=SwapStatus.SUCCESS,
                purchased_mint=mint,
                purchased_symbol="BONK",
                purchased_amount_raw="1000000",
                purchased_amount_ui=1.0,
                spent_amount_ui=10.0,
                base_mint=USDC_MINT,
                base_decimals=6,
                transaction_signature="BUY_SIG",
            )

        async def get_wallet_tokens(*args):
            # The wallet already holds the tokens of the unrecorded buy.
            valued.set()
            return [WalletToken(mint=mint, raw_amount="2000000", decimals=6, value_in_base=25.0)]

        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.side_effect = buy_token
        mock_jupiter_client.get_wallet_tokens.side_effect = get_wallet_tokens

        buy = asyncio.create_task(engine.handle_signal(signal))
        await swapped.wait()
        monitor_pass = asyncio.create_task(engine.trigger_monitor())
        await valued.wait()
        while engine.trader._lock_users.get(mint, 0) < 2:
            await asyncio.sleep(0)
        release.set()
        buy_result, pass_result = await asyncio.gather(buy, monitor_pass)

        assert buy_result.status == SwapStatus.SUCCESS
        assert pass_result.sells_triggered == 1
        assert pass_result.sells_failed == 1
        mock_jupiter_client.get_quote.assert_not_called()

        position = engine.ledger.get(mint)
        assert position.amount_raw == "2000000"
        assert position.cost_base_amount == 20.0
        assert engine.get_summary().total_closed_trades == 0
        assert engine.trader._locks == {}

        await engine.stop()

    @pytest.mark.asyncio
    async def test_buy_recorded_before_link_export(self, engine, signal, token, mint, mock_jupiter_client, mock_listener):
        """Test a pass during the link export sells the merged position at its full cost."""
        await engine.start()
        engine.ledger.upsert_on_buy(
            PositionPatch(
                mint=mint,
                symbol="BONK",
                amount_raw="1000000",
                base_mint=USDC_MINT,
                base_decimals=6,
                cost_base_amount=10.0,
            )
        )
        exporting = asyncio.Event()
        release = asyncio.Event()

        async def export_message_link(*args):
            exporting.set()
            await release.wait()
            return None

        mock_jupiter_client.lookup_ticker.return_value = token
        mock_jupiter_client.buy_token.return_value = SwapResult(
            status=SwapStatus.SUCCESS,
            purchased_mint=mint,
            purchased_amount_raw="1000000",
            spent_amount_ui=10.0,
            base_mint=USDC_MINT,
            base_decimals=6,
        )
        mock_listener.export_message_link.side_effect = export_message_link
        mock_jupiter_client.get_wallet_tokens.return_value = [
            WalletToken(mint=mint, raw_amount="2000000", decimals=6, value_in_base=25.0)
        ]
        mock_jupiter_client.get_quote.return_value = SwapQuote(
            input_mint=mint, output_mint=USDC_MINT, in_amount="2000000", out_amount="25000000"
        )

        buy = asyncio.create_task(engine.handle_signal(signal))
        await exporting.wait()
        pass_result = await engine.trigger_monitor()
        release.set()
        await buy

        assert pass_result.sells_triggered == 1
        assert pass_result.sells_failed == 0
        mock_jupiter_client.get_quote.assert_called_once_with(mint, USDC_MINT, "2000000")
        assert mint not in engine.ledger
        summary = engine.get_summary()
        assert summary.total_invested_usd == 20.0
        assert summary.total_returned_usd == 25.0

        await engine.stop()


class TestReads:
    """Tests for engine accessors."""

    @pytest.mark.asyncio
    async def test_trigger_monitor(self, engine):
        """Test a manual monitor pass."""
        result = await engine.trigger_monitor()

        assert isinstance(result, MonitorPassResult)
        assert result.skipped_reason == "no_open_positions"

    def test_status(self, engine):
        """Test the status overview."""
        status = engine.get_status()

        assert status == {
            "state": "stopped",
            "running": False,
            "monitor_running": False,
            "monitor_in_flight": False,
            "open_positions": 0,
            "history_entries": 0,
            "persistence_active": True,
            "notify_chats": 0,
        }

    def test_summary_is_copy(self, engine):
        """Test the returned summary cannot change the ledger."""
        engine.get_summary().total_closed_trades = 5
        assert engine.get_summary().total_closed_trades == 0

    def test_history_limit(self, engine, trading_snapshot):
        """Test history reads return the newest entries."""
        engine.ledger.restore(trading_snapshot)

        history = engine.get_history(1)

        assert len(history) == 1
        assert history[0].symbol == "POPCAT"

    def test_wiring(self, engine, mock_jupiter_client, mock_settings_store):
        """Test the trader and monitor share the engine's collaborators."""
        assert engine.trader.jupiter_client is mock_jupiter_client
        assert engine.monitor.trader_service is engine.trader
        assert engine.monitor.settings_store is mock_settings_store

    def test_factory(self, test_settings):
        """Test the factory builds a stopped engine."""
        engine = get_trading_engine(test_settings)
        assert engine.state == EngineState.STOPPED
        assert engine.notifier.outbound is engine.listener
