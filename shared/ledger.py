"""
Position ledger for Signal Trader.

Owns the open positions keyed by mint, the bounded buy/sell history and the
running summary. All mutation goes through the trader service; readers get
copies, never the ledger's own objects.

Raw token amounts are decimal strings and are added with exact integer
arithmetic. UI amounts and cost bases are floats and accumulate by ordinary
addition, so they are subject to normal floating point drift.
"""

import math
from datetime import datetime
from typing import Any

import structlog

from shared.models import (
    HistoryEntry,
    Position,
    PositionPatch,
    Summary,
    TradingSnapshot,
    utc_now,
)

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 100


def to_safe_number(value: Any) -> float | None:
    """Convert to a finite float, or None when that is not possible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def add_raw_amounts(existing: str | None, addition: str) -> str:
    """
    Add two raw on-chain amounts exactly.

    If either side is not an integer string the addition's value is used
    verbatim. That loses the existing amount, so it is logged.
    """
    try:
        return str(int(existing or "0") + int(addition))
    except (TypeError, ValueError):
        logger.warning(
            "raw_amount_merge_fallback",
            existing=existing,
            addition=addition,
        )
        return addition


def merge_position(
    existing: Position | None,
    patch: PositionPatch,
    now: datetime | None = None,
) -> Position:
    """
    Merge a buy into an existing position, or create the position.

    Merge rules for an existing position:
    - amount_raw: exact integer sum
    - amount_ui, cost_base_amount: summed when the patch value is finite
    - cost_usd: always re-derived from cost_base_amount
    - market_cap, last_buy_signature, target_profit_percent: latest wins
    - identity and base token fields: kept from the first buy

    Args:
        existing: Current position for the mint, if any
        patch: Values from the buy
        now: Timestamp to apply (defaults to current UTC time)

    Returns:
        A new Position; ``existing`` is not modified
    """
    now = now or utc_now()
    amount_ui = to_safe_number(patch.amount_ui)
    cost = to_safe_number(patch.cost_base_amount)

    if existing is None:
        cost_base_amount = cost or 0.0
        return Position(
            mint=patch.mint,
            symbol=patch.symbol or patch.mint,
            amount_raw=patch.amount_raw or "0",
            amount_ui=amount_ui,
            base_mint=patch.base_mint,
            base_symbol=patch.base_symbol,
            base_decimals=patch.base_decimals,
            cost_base_amount=cost_base_amount,
            cost_usd=cost_base_amount,
            cost_currency=patch.base_symbol,
            market_cap=patch.market_cap,
            last_buy_signature=patch.transaction_signature,
            target_profit_percent=to_safe_number(patch.target_profit_percent) or 0.0,
            created_at=now,
            last_updated_at=now,
        )

    update: dict[str, Any] = {"last_updated_at": now}

    if patch.amount_raw is not None:
        update["amount_raw"] = add_raw_amounts(existing.amount_raw, patch.amount_raw)

    if amount_ui is not None:
        update["amount_ui"] = (to_safe_number(existing.amount_ui) or 0.0) + amount_ui

    cost_base_amount = existing.cost_base_amount
    if cost is not None:
        cost_base_amount = (to_safe_number(existing.cost_base_amount) or 0.0) + cost
    update["cost_base_amount"] = cost_base_amount
    update["cost_usd"] = cost_base_amount

    if patch.market_cap is not None:
        update["market_cap"] = patch.market_cap
    if patch.transaction_signature:
        update["last_buy_signature"] = patch.transaction_signature
    if patch.target_profit_percent is not None:
        update["target_profit_percent"] = to_safe_number(patch.target_profit_percent) or 0.0

    return existing.model_copy(update=update)


class HistoryLog:
    """Bounded append-only sequence of history entries; oldest are dropped."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT):
        self.limit = limit
        self._entries: list[HistoryEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)
        if len(self._entries) > self.limit:
            self._entries = self._entries[-self.limit:]

    def entries(self, limit: int | None = None) -> list[HistoryEntry]:
        """Return the newest ``limit`` entries (all by default), oldest first."""
        if limit is None:
            return list(self._entries)
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def load(self, entries: list[HistoryEntry]) -> None:
        self._entries = list(entries)[-self.limit:]

    def clear(self) -> None:
        self._entries = []


class PositionLedger:
    """
    Open positions, history and summary for one engine instance.

    Position objects handed out are copies; callers cannot reach the
    ledger's internal state.
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        currency: str = "USD",
    ):
        """
        Initialize an empty ledger.

        Args:
            history_limit: Maximum number of in-memory history entries
            currency: Accounting currency recorded in the summary
        """
        self.currency = currency
        self.history = HistoryLog(history_limit)
        self._positions: dict[str, Position] = {}
        self.summary = Summary(currency=currency)

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, mint: object) -> bool:
        return mint in self._positions

    def get(self, mint: str) -> Position | None:
        position = self._positions.get(mint)
        return position.model_copy() if position else None

    def positions(self) -> list[Position]:
        """Copies of all open positions, in insertion order."""
        return [p.model_copy() for p in self._positions.values()]

    def upsert_on_buy(self, patch: PositionPatch, now: datetime | None = None) -> Position:
        """
        Create or top up the position for ``patch.mint``.

        Args:
            patch: Values from the buy
            now: Timestamp to apply

        Returns:
            Copy of the resulting position
        """
        merged = merge_position(self._positions.get(patch.mint), patch, now)
        self._positions[patch.mint] = merged
        return merged.model_copy()

    def remove_on_sell(self, mint: str) -> Position | None:
        """Delete and return the position; None if there is none."""
        return self._positions.pop(mint, None)

    def record_close(self, cost: float | None, received: float | None) -> None:
        """
        Account for one closed trade in the summary.

        Cost is only added when positive, proceeds only when known.
        """
        self.summary.total_closed_trades += 1
        cost = to_safe_number(cost)
        if cost is not None and cost > 0:
            self.summary.total_invested_usd += cost
        received = to_safe_number(received)
        if received is not None:
            self.summary.total_returned_usd += received

    def append_history(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def refresh_summary(self, reason: str | None = None, now: datetime | None = None) -> Summary:
        """
        Recompute the derived summary fields.

        Profit and profit percent are always derived from invested and
        returned totals; open positions always equal the ledger size.

        Returns:
            Copy of the refreshed summary
        """
        summary = self.summary
        summary.last_update_reason = reason or summary.last_update_reason
        summary.last_updated_at = now or utc_now()
        summary.total_profit_usd = summary.total_returned_usd - summary.total_invested_usd
        summary.total_profit_percent = (
            summary.total_profit_usd / summary.total_invested_usd * 100
            if summary.total_invested_usd > 0
            else 0.0
        )
        summary.total_open_positions = len(self._positions)
        return summary.model_copy()

    def snapshot(self) -> TradingSnapshot:
        """Deep copy of the ledger state for persistence or display."""
        return TradingSnapshot(
            positions=[p.model_copy(deep=True) for p in self._positions.values()],
            history=self.history.entries(),
            summary=self.summary.model_copy(deep=True),
        )

    def restore(self, snapshot: TradingSnapshot) -> None:
        """Replace the ledger state with a loaded snapshot."""
        self._positions = {
            p.mint: p.model_copy(deep=True) for p in snapshot.positions if p.mint
        }
        self.history.load(snapshot.history)
        summary = snapshot.summary.model_copy(deep=True)
        if summary.currency != self.currency:
            logger.warning(
                "summary_currency_mismatch",
                stored=summary.currency,
                configured=self.currency,
            )
            summary.currency = self.currency
        self.summary = summary
        logger.info(
            "ledger_restored",
            positions=len(self._positions),
            history=len(self.history),
        )

    def reset(self) -> None:
        """Return to the empty state."""
        self._positions = {}
        self.history.clear()
        self.summary = Summary(currency=self.currency)
