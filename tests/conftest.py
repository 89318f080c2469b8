"""
Shared pytest fixtures and test configuration for Signal Trader.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from faker import Faker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["GCP_PROJECT_ID"] = "test-project"
os.environ["FIRESTORE__ENABLED"] = "false"
os.environ["TRADING__SETTINGS_FILE"] = os.path.join(
    tempfile.mkdtemp(prefix="signal-trader-"), "settings.json"
)
os.environ["LOGGING__FORMAT"] = "console"

from shared.config import Settings  # noqa: E402
from shared.ledger import PositionLedger  # noqa: E402
from shared.models import (  # noqa: E402
    MonitorPassResult,
    Position,
    Summary,
    SwapQuote,
    SwapResult,
    SwapStatus,
    TradingSettings,
    TradingSnapshot,
)

fake = Faker()

FIXTURES_DIR = Path(__file__).parent / "fixtures"

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


# ============================================================================
# Fixture Loading Helpers
# ============================================================================


def load_fixture(filename: str) -> dict[str, Any]:
    """Load a JSON fixture file."""
    filepath = FIXTURES_DIR / filename
    with open(filepath) as f:
        return json.load(f)


def fake_mint() -> str:
    """Random base58-looking mint address."""
    return fake.pystr(min_chars=44, max_chars=44)


def fake_signature() -> str:
    """Random base58-looking transaction signature."""
    return fake.pystr(min_chars=88, max_chars=88)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with persistence disabled and a temp settings file."""
    return Settings(
        environment="test",
        gcp_project_id="test-project",
        firestore={"enabled": False},
        trading={"settings_file": str(tmp_path / "settings.json")},
    )


@pytest.fixture
def trading_settings() -> TradingSettings:
    """Runtime settings with a configured base token and a 20% target."""
    return TradingSettings(
        token="USDC",
        token_mint=USDC_MINT,
        amount=10.0,
        market_cap_minimum=0.0,
        profit_target_percent=20.0,
    )


# ============================================================================
# Trading State Fixtures
# ============================================================================


@pytest.fixture
def trading_state_doc() -> dict[str, Any]:
    """Load the stored trading state document from fixtures."""
    return load_fixture("trading_state.json")


@pytest.fixture
def trading_snapshot(trading_state_doc) -> TradingSnapshot:
    """Well-formed part of the trading state fixture as a snapshot."""
    return TradingSnapshot.model_validate(
        {
            **trading_state_doc,
            "positions": trading_state_doc["positions"][:1],
            "history": trading_state_doc["history"][:2],
        }
    )


@pytest.fixture
def ledger() -> PositionLedger:
    """Empty ledger."""
    return PositionLedger(history_limit=100, currency="USD")


@pytest.fixture
def mint() -> str:
    """Random mint."""
    return fake_mint()


@pytest.fixture
def signature() -> str:
    """Random transaction signature."""
    return fake_signature()


@pytest.fixture
def swap_result(mint, signature) -> SwapResult:
    """Successful buy of 1000 raw units for 10 USDC."""
    return SwapResult(
        status=SwapStatus.SUCCESS,
        text=f"https://solscan.io/tx/{signature}",
        purchased_mint=mint,
        purchased_symbol="BONK",
        purchased_amount_raw="1000",
        purchased_amount_ui=1.0,
        spent_amount_ui=10.0,
        base_mint=USDC_MINT,
        base_symbol="USD",
        base_decimals=6,
        market_cap=1_250_000.0,
        market_cap_formatted="$1.25M",
        transaction_signature=signature,
    )


@pytest.fixture
def sell_quote(mint) -> SwapQuote:
    """Quote selling 1000000 raw units for 15 USDC."""
    return SwapQuote(
        input_mint=mint,
        output_mint=USDC_MINT,
        in_amount="1000000",
        out_amount="15000000",
        other_amount_threshold="14925000",
        slippage_bps=50,
        quote_response={"outAmount": "15000000"},
    )


# ============================================================================
# Mock Client Fixtures
# ============================================================================


@pytest.fixture
def mock_jupiter_client() -> MagicMock:
    """Create a mocked Jupiter client."""
    client = MagicMock()
    client.get_quote = AsyncMock()
    client.execute_quote = AsyncMock(return_value=fake_signature())
    client.get_wallet_tokens = AsyncMock(return_value=[])
    client.lookup_ticker = AsyncMock(return_value={"id": fake_mint(), "symbol": "BONK"})
    client.buy_token = AsyncMock()
    client.search_token = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_firestore_client() -> MagicMock:
    """Create a mocked Firestore trading state adapter."""
    client = MagicMock()
    client.is_active = MagicMock(return_value=True)
    client.save_trading_state = AsyncMock(return_value=True)
    client.load_trading_state = AsyncMock(return_value=None)
    client.get_trading_summary = AsyncMock(return_value=None)
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_notifier() -> MagicMock:
    """Create a mocked notification fanout."""
    notifier = MagicMock()
    notifier.notify_all = AsyncMock(return_value=1)
    notifier.add_chat = MagicMock()
    notifier.chat_ids = frozenset()
    notifier.bot_client = MagicMock()
    notifier.bot_client.close = AsyncMock()
    return notifier


@pytest.fixture
def mock_settings_store(trading_settings) -> MagicMock:
    """Create a mocked settings store returning ``trading_settings``."""
    store = MagicMock()
    store.get_all = AsyncMock(return_value=trading_settings)
    return store


@pytest.fixture
def mock_listener() -> MagicMock:
    """Create a mocked Telegram listener."""
    listener = MagicMock()
    listener.connect = AsyncMock()
    listener.disconnect = AsyncMock()
    listener.add_handler = MagicMock()
    listener.remove_handler = MagicMock()
    listener.export_message_link = AsyncMock(return_value=None)
    listener.send_message = AsyncMock()
    listener.can_send = True
    return listener


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Create a mocked httpx async client."""
    client = MagicMock()
    client.get = AsyncMock()
    client.post = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client


# ============================================================================
# Result Fixtures
# ============================================================================


@pytest.fixture
def monitor_result() -> MonitorPassResult:
    """A completed monitor pass with one sell."""
    return MonitorPassResult(
        positions_checked=2,
        sells_triggered=1,
        completed_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def sample_summary() -> Summary:
    """Summary after two closed trades."""
    return Summary(
        total_invested_usd=20.0,
        total_returned_usd=27.0,
        total_profit_usd=7.0,
        total_profit_percent=35.0,
        total_closed_trades=2,
        total_open_positions=1,
    )


@pytest.fixture
def sample_position(mint) -> Position:
    """Open position of 1000000 raw units that cost 10 USDC."""
    return Position(
        mint=mint,
        symbol="M1",
        amount_raw="1000000",
        amount_ui=1.0,
        base_mint=USDC_MINT,
        base_symbol="USDC",
        base_decimals=6,
        cost_base_amount=10.0,
        cost_usd=10.0,
        target_profit_percent=20.0,
    )


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def anyio_backend() -> str:
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Cleanup Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_environment() -> Generator[None, None, None]:
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
