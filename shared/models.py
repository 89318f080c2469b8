"""
Pydantic models for Signal Trader.

Defines all data models used across services.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)  # noqa: UP017


# =============================================================================
# Enums
# =============================================================================


class HistoryEventType(str, Enum):
    """Ledger history event type."""

    BUY = "buy"
    SELL = "sell"


class SwapStatus(str, Enum):
    """Outcome of a buy swap attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class EngineState(str, Enum):
    """Trading engine lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# =============================================================================
# Ledger Models
# =============================================================================


class Position(BaseModel):
    """An open, tracked holding of a token with its cost basis."""

    mint: str
    symbol: str = ""
    amount_raw: str = "0"
    amount_ui: float | None = None
    base_mint: str | None = None
    base_symbol: str | None = None
    base_decimals: int | None = None
    cost_base_amount: float = 0.0
    cost_usd: float = 0.0
    cost_currency: str | None = None
    market_cap: float | None = None
    last_buy_signature: str | None = None
    target_profit_percent: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("amount_raw", mode="before")
    @classmethod
    def coerce_amount_raw(cls, v: Any) -> str:
        """Keep raw amounts as exact decimal strings."""
        return "0" if v is None else str(v)


class PositionPatch(BaseModel):
    """
    Result of a single buy, merged into the ledger by ``merge_position``.

    Fields left as None are not applied.
    """

    mint: str
    symbol: str | None = None
    amount_raw: str | None = None
    amount_ui: float | None = None
    base_mint: str | None = None
    base_symbol: str | None = None
    base_decimals: int | None = None
    cost_base_amount: float | None = None
    market_cap: float | None = None
    transaction_signature: str | None = None
    target_profit_percent: float | None = None


class HistoryEntry(BaseModel):
    """Immutable record of a buy or sell event."""

    model_config = ConfigDict(frozen=True)

    type: HistoryEventType
    mint: str | None = None
    symbol: str | None = None
    amount_ui: float | None = None
    cost_usd: float | None = None
    received_usd: float | None = None
    profit_usd: float | None = None
    profit_percent: float | None = None
    market_cap: float | None = None
    signatures: dict[str, str] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utc_now)


class Summary(BaseModel):
    """Running aggregate over all closed trades."""

    total_invested_usd: float = 0.0
    total_returned_usd: float = 0.0
    total_profit_usd: float = 0.0
    total_profit_percent: float = 0.0
    total_closed_trades: int = 0
    total_open_positions: int = 0
    currency: str = "USD"
    last_updated_at: datetime | None = None
    last_update_reason: str | None = None

    @field_validator(
        "total_invested_usd",
        "total_returned_usd",
        "total_profit_usd",
        "total_profit_percent",
        mode="before",
    )
    @classmethod
    def coerce_float(cls, v: Any) -> float:
        """Treat missing numbers in stored documents as zero."""
        try:
            return float(v or 0)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("total_closed_trades", "total_open_positions", mode="before")
    @classmethod
    def coerce_int(cls, v: Any) -> int:
        """Treat missing counters in stored documents as zero."""
        try:
            return int(v or 0)
        except (TypeError, ValueError):
            return 0


class TradingSnapshot(BaseModel):
    """Whole-document persisted trading state."""

    positions: list[Position] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    updated_at: datetime | None = None


# =============================================================================
# Swap Models
# =============================================================================


class WalletToken(BaseModel):
    """A token held by the trading wallet with its current valuation."""

    mint: str
    symbol: str = ""
    raw_amount: str = "0"
    ui_amount: float | None = None
    decimals: int | None = None
    value_in_base: float | None = None
    price_in_base: float | None = None


class SwapQuote(BaseModel):
    """Swap route quote returned by the aggregator."""

    input_mint: str
    output_mint: str
    in_amount: str
    out_amount: str
    other_amount_threshold: str = "0"
    price_impact_pct: float = 0.0
    slippage_bps: int = 0
    quote_response: dict[str, Any] = Field(default_factory=dict)


class SwapResult(BaseModel):
    """Outcome of buying a token from a signal."""

    status: SwapStatus
    text: str | None = None
    purchased_mint: str | None = None
    purchased_symbol: str | None = None
    purchased_amount_raw: str | None = None
    purchased_amount_ui: float | None = None
    spent_amount_ui: float | None = None
    base_mint: str | None = None
    base_symbol: str | None = None
    base_decimals: int | None = None
    market_cap: float | None = None
    market_cap_formatted: str | None = None
    transaction_signature: str | None = None


# =============================================================================
# Settings and Signal Models
# =============================================================================


class TradingSettings(BaseModel):
    """Runtime trading parameters managed by the settings store."""

    token: str = ""
    token_mint: str = ""
    amount: float = 0.0
    market_cap_minimum: float = 0.0
    profit_target_percent: float = 0.0

    @property
    def base_token(self) -> str:
        """Mint if configured, otherwise the base token symbol."""
        return self.token_mint or self.token


class BuySignal(BaseModel):
    """A qualifying buy signal extracted from an incoming message."""

    ticker: str
    header: str = ""
    chat_id: int | None = None
    message_id: int | None = None
    amount: float | None = None
    base_currency: str | None = None
    min_market_cap: float | None = None


# =============================================================================
# Engine Models
# =============================================================================


class MonitorPassResult(BaseModel):
    """Result of a single monitor pass."""

    positions_checked: int = 0
    sells_triggered: int = 0
    sells_failed: int = 0
    skipped_reason: str | None = None
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class StartResult(BaseModel):
    """Result of starting the trading engine."""

    started: bool = False
    already_running: bool = False


# =============================================================================
# API Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str = "0.1.0"
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str
    detail: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
