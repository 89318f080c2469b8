"""
Runtime trading settings for Signal Trader.

Token, buy amount, market cap minimum and profit target can change while the
engine runs, so they are kept in a small JSON file instead of the static
settings. The engine reads them through ``get_all()`` whenever it needs them.
"""

import asyncio
import json
import math
import os
from pathlib import Path
from typing import Any

import structlog

from shared.config import Settings, get_settings
from shared.models import TradingSettings

logger = structlog.get_logger(__name__)


def _finite(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number") from None
    if not math.isfinite(number):
        raise ValueError(f"{name} must be a number")
    return number


class SettingsStore:
    """
    JSON file backed store for TradingSettings.

    Writes go to a temporary file that replaces the target, and are
    serialised by a lock so concurrent setters never interleave.
    """

    def __init__(self, path: str | Path | None = None, settings: Settings | None = None):
        """
        Initialize the store.

        Args:
            path: Settings file location. Defaults to trading.settings_file.
            settings: Settings instance. If None, loads from environment.
        """
        if path is None:
            path = (settings or get_settings()).trading.settings_file
        self.path = Path(path)
        self._cache: TradingSettings | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> TradingSettings:
        """
        Read the settings file, creating it with defaults if it is missing.

        Raises:
            ValueError: If the file exists but is not valid JSON
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("settings_file_created", path=str(self.path))
            return self._write(TradingSettings())

        data = json.loads(raw) if raw.strip() else {}
        self._cache = TradingSettings.model_validate(data)
        return self._cache.model_copy()

    def _write(self, next_settings: TradingSettings) -> TradingSettings:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(next_settings.model_dump(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        self._cache = next_settings.model_copy()
        return next_settings.model_copy()

    async def save(self, next_settings: TradingSettings) -> TradingSettings:
        """Atomically replace the settings file."""
        async with self._lock:
            return self._write(next_settings)

    async def get_all(self) -> TradingSettings:
        """Return a copy of the current settings."""
        if self._cache is None:
            return await self.load()
        return self._cache.model_copy()

    async def update(
        self,
        token: str | None = None,
        token_mint: str | None = None,
        amount: Any = None,
        market_cap_minimum: Any = None,
        profit_target_percent: Any = None,
    ) -> TradingSettings:
        """
        Change several settings in one write.

        Every given value is validated before anything is written, so a
        rejected value leaves the file and the cache untouched. A new token
        symbol is upper-cased and resets the buy amount to 0 unless an amount
        is given in the same call.

        Raises:
            ValueError: If a value is not a finite number or is negative
                where only non-negative values are allowed
        """
        fields: dict[str, Any] = {}
        if token is not None:
            fields["token"] = str(token).strip().upper()
            fields["token_mint"] = ""
        if token_mint is not None:
            fields["token_mint"] = str(token_mint).strip()
        if amount is not None:
            fields["amount"] = _finite(amount, "amount")
        if market_cap_minimum is not None:
            fields["market_cap_minimum"] = _finite(market_cap_minimum, "market_cap_minimum")
            if fields["market_cap_minimum"] < 0:
                raise ValueError("market_cap_minimum must be a non-negative number")
        if profit_target_percent is not None:
            fields["profit_target_percent"] = _finite(profit_target_percent, "profit_target_percent")
            if fields["profit_target_percent"] < 0:
                raise ValueError("profit_target_percent must be a non-negative number")

        async with self._lock:
            current = self._cache if self._cache is not None else await self.load()
            amount_reset = (
                "token" in fields and fields["token"] != current.token and "amount" not in fields
            )
            if amount_reset:
                fields["amount"] = 0.0
            result = self._write(current.model_copy(update=fields))
        logger.info("settings_updated", fields=sorted(fields), amount_reset=amount_reset)
        return result

    async def set_token(self, value: str, mint: str = "") -> TradingSettings:
        """
        Set the base token symbol.

        The symbol is upper-cased. Changing the token resets the buy amount
        to 0 because the old amount was denominated in the old token.
        """
        return await self.update(token=value, token_mint=mint)

    async def set_amount(self, value: Any) -> TradingSettings:
        return await self.update(amount=value)

    async def set_market_cap_minimum(self, value: Any) -> TradingSettings:
        return await self.update(market_cap_minimum=value)

    async def set_profit_target_percent(self, value: Any) -> TradingSettings:
        return await self.update(profit_target_percent=value)


# Factory function
def get_settings_store(settings: Settings | None = None) -> SettingsStore:
    """Create a new settings store instance."""
    return SettingsStore(settings=settings)
