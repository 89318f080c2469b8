"""
Signal Trader Shared Modules

This package contains shared utilities, clients, models and the position
ledger used across all services.
"""

from shared.config import ConfigurationError, Settings, get_settings
from shared.ledger import HistoryLog, PositionLedger, merge_position
from shared.models import (
    BuySignal,
    EngineState,
    HistoryEntry,
    HistoryEventType,
    MonitorPassResult,
    Position,
    PositionPatch,
    Summary,
    SwapQuote,
    SwapResult,
    SwapStatus,
    TradingSettings,
    TradingSnapshot,
    WalletToken,
)

__all__ = [
    # Config
    "ConfigurationError",
    "Settings",
    "get_settings",
    # Ledger
    "HistoryLog",
    "PositionLedger",
    "merge_position",
    # Models
    "BuySignal",
    "EngineState",
    "HistoryEntry",
    "HistoryEventType",
    "MonitorPassResult",
    "Position",
    "PositionPatch",
    "Summary",
    "SwapQuote",
    "SwapResult",
    "SwapStatus",
    "TradingSettings",
    "TradingSnapshot",
    "WalletToken",
]
