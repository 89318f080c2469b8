"""
Jupiter and Solana client for Signal Trader.

Provides async interface to:
- Jupiter token search (ticker to mint)
- Jupiter quotes and swap transaction building
- Solana JSON-RPC for sending and confirming swaps
- Wallet token enumeration with valuations in a base token
"""

import asyncio
import base64
import json
import math
import re
import time
from typing import Any

import base58
import httpx
import structlog
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import ConfigurationError, Settings, get_settings
from shared.models import SwapQuote, SwapResult, SwapStatus, WalletToken

logger = structlog.get_logger(__name__)

WSOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
PRICE_BATCH_SIZE = 50

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class JupiterAPIError(Exception):
    """Custom exception for Jupiter and Solana RPC errors."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class QuoteError(JupiterAPIError):
    """No route was found or the quote request was rejected."""

    pass


class ExecutionError(JupiterAPIError):
    """Swap building, signing, submission or confirmation failed."""

    pass


def to_raw_amount(ui_amount: float, decimals: int) -> str:
    """
    Convert a UI amount to raw on-chain units.

    Raises:
        ValueError: If the amount is not a positive finite number
    """
    if not math.isfinite(ui_amount) or ui_amount <= 0:
        raise ValueError(f"Invalid UI amount: {ui_amount}")
    return str(round(ui_amount * 10**decimals))


def from_raw_amount(raw_amount: str | int | None, decimals: int | None) -> float | None:
    """Convert raw units to a UI amount; None when either side is unknown."""
    if raw_amount is None or decimals is None:
        return None
    try:
        return int(raw_amount) / 10 ** int(decimals)
    except (TypeError, ValueError):
        return None


def format_market_cap(value: float | None) -> str | None:
    """Format a market cap as a short dollar string, e.g. ``$1.25M``."""
    if value is None or not math.isfinite(value):
        return None
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:.2f}"


def load_keypair(secret: str) -> Keypair:
    """
    Load a Solana keypair from base58, a JSON byte array or hex.

    Both 64-byte secret keys and 32-byte seeds are accepted.

    Raises:
        ConfigurationError: If the secret is missing or malformed
    """
    s = (secret or "").strip()
    if not s:
        raise ConfigurationError("Wallet secret key is not configured")

    try:
        if s.startswith("["):
            data = bytes(json.loads(s))
        elif _BASE58_RE.match(s) and not _HEX_RE.match(s):
            data = base58.b58decode(s)
        elif _HEX_RE.match(s):
            data = bytes.fromhex(s)
        else:
            raise ConfigurationError("Unsupported wallet secret key format")
        if len(data) == 64:
            return Keypair.from_bytes(data)
        if len(data) == 32:
            return Keypair.from_seed(data)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid wallet secret key: {e}") from e
    raise ConfigurationError(f"Unexpected wallet secret key length={len(data)}")


def pick_exact_symbol(results: list[dict[str, Any]], symbol: str) -> dict[str, Any]:
    """
    Pick the token whose symbol matches exactly, preferring verified tokens.

    Raises:
        QuoteError: If no token matches
    """
    want = symbol.upper()
    exact = [t for t in results or [] if (t.get("symbol") or "").upper() == want]
    if not exact:
        raise QuoteError(f'No exact symbol match for "{symbol}"')
    exact.sort(key=lambda t: not (t.get("isVerified") or t.get("verified")))
    return exact[0]


class JupiterClient:
    """
    Async client for Jupiter swaps on Solana.

    HTTP calls share one httpx client. Transport failures are retried;
    HTTP error statuses are not.
    """

    def __init__(self, settings: Settings | None = None, keypair: Keypair | None = None):
        """
        Initialize Jupiter client.

        Args:
            settings: Settings instance. If None, loads from environment.
            keypair: Signing keypair. If None, loaded from solana.wallet_secret_key.
        """
        self.settings = settings or get_settings()
        self._keypair = keypair
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.jupiter.timeout_seconds,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    @property
    def keypair(self) -> Keypair:
        """Wallet keypair, loaded on first use."""
        if self._keypair is None:
            self._keypair = load_keypair(self.settings.solana.wallet_secret_key)
        return self._keypair

    @property
    def owner(self) -> str:
        return str(self.keypair.pubkey())

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # HTTP and RPC
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> httpx.Response:
        return await self.client.request(method=method, url=url, params=params, json=json_data)

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> Any:
        """
        Make an HTTP request and decode the JSON body.

        Raises:
            JupiterAPIError: On transport failure or an error status
        """
        logger.debug("jupiter_request", method=method, url=url)
        try:
            response = await self._send(method, url, params=params, json_data=json_data)
        except httpx.HTTPError as e:
            logger.error("jupiter_request_error", url=url, error=str(e))
            raise JupiterAPIError(f"Request failed: {str(e)}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json() if response.content else {}
            except ValueError:
                error_data = {"body": response.text}
            raise JupiterAPIError(
                f"API request failed: {response.status_code}",
                status_code=response.status_code,
                response=error_data,
            )
        return response.json() if response.content else {}

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """
        Call a Solana JSON-RPC method.

        Raises:
            JupiterAPIError: If the call fails or returns an error object
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        data = await self._request("POST", self.settings.solana.rpc_url, json_data=payload)
        if "error" in data:
            raise JupiterAPIError(f"RPC {method} failed: {data['error']}", response=data)
        return data.get("result")

    async def _with_fallback(self, method: str, path: str, **kwargs: Any) -> Any:
        """Call the primary Jupiter host, retrying on the fallback host on 401/403."""
        config = self.settings.jupiter
        try:
            return await self._request(method, f"{config.swap_api_url}{path}", **kwargs)
        except JupiterAPIError as e:
            if e.status_code not in (401, 403) or not config.fallback_api_url:
                raise
            logger.warning("jupiter_fallback_host", path=path, status_code=e.status_code)
            return await self._request(method, f"{config.fallback_api_url}{path}", **kwargs)

    # =========================================================================
    # Tokens
    # =========================================================================

    async def search_token(self, query: str) -> list[dict[str, Any]]:
        """
        Search tokens by symbol, name or mint.

        Args:
            query: Search text

        Returns:
            List of token info dictionaries
        """
        data = await self._request(
            "GET",
            self.settings.jupiter.token_search_url,
            params={"query": query},
        )
        return data if isinstance(data, list) else []

    async def resolve_token(self, symbol_or_mint: str) -> dict[str, Any]:
        """
        Resolve a symbol or mint to ``{mint, symbol, decimals}``.

        Raises:
            QuoteError: If the token cannot be found
        """
        value = symbol_or_mint.strip()
        if value.upper() in ("SOL", "WSOL") or value == WSOL_MINT:
            return {"mint": WSOL_MINT, "symbol": "SOL", "decimals": SOL_DECIMALS}

        results = await self.search_token(value)
        if len(value) >= 32 and _BASE58_RE.match(value):
            match = next((t for t in results if t.get("id") == value), None)
            if match is None:
                raise QuoteError(f"Unknown token mint {value}")
        else:
            match = pick_exact_symbol(results, value.lstrip("$"))
        return {
            "mint": match.get("id"),
            "symbol": match.get("symbol") or value,
            "decimals": match.get("decimals"),
            "market_cap": match.get("mcap"),
        }

    # =========================================================================
    # Quotes and Swaps
    # =========================================================================

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: str,
        slippage_bps: int | None = None,
    ) -> SwapQuote:
        """
        Get a swap quote.

        Args:
            input_mint: Mint being sold
            output_mint: Mint being bought
            amount: Raw input amount
            slippage_bps: Slippage tolerance. Defaults to jupiter.slippage_bps.

        Returns:
            SwapQuote

        Raises:
            QuoteError: If no route is available or the request is rejected
        """
        if slippage_bps is None:
            slippage_bps = self.settings.jupiter.slippage_bps
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        try:
            data = await self._with_fallback("GET", "/quote", params=params)
        except JupiterAPIError as e:
            raise QuoteError(str(e), status_code=e.status_code, response=e.response) from e

        if not data or not data.get("outAmount"):
            raise QuoteError(
                f"No route found for {input_mint} -> {output_mint}",
                response=data,
            )

        try:
            price_impact = float(data.get("priceImpactPct") or 0)
        except (TypeError, ValueError):
            price_impact = 0.0

        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=str(data.get("inAmount") or amount),
            out_amount=str(data["outAmount"]),
            other_amount_threshold=str(data.get("otherAmountThreshold") or "0"),
            price_impact_pct=price_impact,
            slippage_bps=int(data.get("slippageBps") or slippage_bps),
            quote_response=data,
        )

    def sign_transaction(self, swap_transaction: str) -> str:
        """
        Sign a base64 Jupiter swap transaction with the wallet keypair.

        Returns:
            Base64 encoded signed transaction
        """
        tx = VersionedTransaction.from_bytes(base64.b64decode(swap_transaction))
        signature = self.keypair.sign_message(to_bytes_versioned(tx.message))
        signatures = list(tx.signatures)
        signatures[0] = signature
        tx.signatures = signatures
        return base64.b64encode(bytes(tx)).decode()

    async def execute_quote(self, quote: SwapQuote) -> str:
        """
        Build, sign, send and confirm the swap for a quote.

        Args:
            quote: Quote from get_quote

        Returns:
            Transaction signature

        Raises:
            ExecutionError: If any step fails
        """
        body = {
            "quoteResponse": quote.quote_response,
            "userPublicKey": self.owner,
            "asLegacyTransaction": False,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": self.settings.jupiter.priority_max_lamports,
                },
            },
        }
        try:
            built = await self._with_fallback("POST", "/swap", json_data=body)
            swap_transaction = built.get("swapTransaction")
            if not swap_transaction:
                raise ExecutionError("Swap build returned no transaction", response=built)

            signed = self.sign_transaction(swap_transaction)
            signature = await self._rpc(
                "sendTransaction",
                [signed, {"encoding": "base64", "skipPreflight": False, "maxRetries": 3}],
            )
        except ExecutionError:
            raise
        except (JupiterAPIError, ValueError) as e:
            logger.error("swap_execution_error", input_mint=quote.input_mint, error=str(e))
            raise ExecutionError(f"Swap execution failed: {str(e)}") from e

        await self.confirm_signature(signature)
        logger.info(
            "swap_executed",
            signature=signature,
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
        )
        return signature

    async def confirm_signature(self, signature: str, poll_interval: float = 2.0) -> None:
        """
        Wait for a transaction to reach the configured commitment.

        Raises:
            ExecutionError: If the transaction failed or was not confirmed in time
        """
        wanted = {"confirmed", "finalized"}
        if self.settings.solana.commitment == "finalized":
            wanted = {"finalized"}
        deadline = time.monotonic() + self.settings.jupiter.confirm_timeout_seconds

        while True:
            try:
                result = await self._rpc(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}],
                )
            except JupiterAPIError as e:
                logger.warning("signature_status_error", signature=signature, error=str(e))
                result = None

            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise ExecutionError(
                        f"Transaction error: {status['err']}",
                        response={"signature": signature},
                    )
                if status.get("confirmationStatus") in wanted:
                    return

            if time.monotonic() >= deadline:
                raise ExecutionError(
                    f"Transaction {signature} not confirmed in time",
                    response={"signature": signature},
                )
            await asyncio.sleep(poll_interval)

    # =========================================================================
    # Wallet
    # =========================================================================

    async def get_prices(self, mints: list[str]) -> dict[str, float]:
        """
        Get USD prices for mints.

        Returns:
            Mapping of mint to USD price; mints without a price are omitted
        """
        prices: dict[str, float] = {}
        unique = list(dict.fromkeys(m for m in mints if m))
        for i in range(0, len(unique), PRICE_BATCH_SIZE):
            batch = unique[i:i + PRICE_BATCH_SIZE]
            data = await self._request(
                "GET",
                self.settings.jupiter.price_api_url,
                params={"ids": ",".join(batch)},
            )
            for mint, info in (data or {}).items():
                if not isinstance(info, dict):
                    continue
                try:
                    price = float(info.get("usdPrice"))
                except (TypeError, ValueError):
                    continue
                if math.isfinite(price):
                    prices[mint] = price
        return prices

    async def _token_accounts(self, program_id: str) -> list[dict[str, Any]]:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [self.owner, {"programId": program_id}, {"encoding": "jsonParsed"}],
        )
        return (result or {}).get("value") or []

    async def get_wallet_tokens(self, base_token: str | None = None) -> list[WalletToken]:
        """
        List wallet holdings valued in the base token.

        Includes all SPL token accounts of both token programs, summed per
        mint. Native SOL is listed under the wrapped SOL mint only when the
        wallet has no wrapped SOL account, so ``raw_amount`` is always an
        amount a single swap can spend. When the base token has no price,
        values are in USD.

        Args:
            base_token: Base token symbol or mint

        Returns:
            List of WalletToken
        """
        holdings: dict[str, dict[str, Any]] = {}

        lamports = await self._rpc("getBalance", [self.owner])
        sol_raw = int((lamports or {}).get("value") or 0)

        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            for account in await self._token_accounts(program_id):
                info = (
                    account.get("account", {})
                    .get("data", {})
                    .get("parsed", {})
                    .get("info", {})
                )
                mint = info.get("mint")
                token_amount = info.get("tokenAmount") or {}
                try:
                    raw = int(token_amount.get("amount") or 0)
                except (TypeError, ValueError):
                    continue
                if not mint or raw <= 0:
                    continue
                entry = holdings.setdefault(
                    mint, {"raw": 0, "decimals": token_amount.get("decimals"), "symbol": ""}
                )
                entry["raw"] += raw

        if sol_raw > 0 and WSOL_MINT not in holdings:
            holdings[WSOL_MINT] = {"raw": sol_raw, "decimals": SOL_DECIMALS, "symbol": "SOL"}

        base_mint = None
        if base_token:
            try:
                base_mint = (await self.resolve_token(base_token))["mint"]
            except QuoteError as e:
                logger.warning("base_token_unresolved", base_token=base_token, error=str(e))

        prices = await self.get_prices(list(holdings) + ([base_mint] if base_mint else []))
        base_price = prices.get(base_mint) if base_mint else None

        tokens = []
        for mint, entry in holdings.items():
            ui_amount = from_raw_amount(entry["raw"], entry["decimals"])
            usd_price = prices.get(mint)
            price_in_base = None
            if usd_price is not None:
                price_in_base = usd_price / base_price if base_price else usd_price
            value_in_base = (
                ui_amount * price_in_base
                if ui_amount is not None and price_in_base is not None
                else None
            )
            tokens.append(
                WalletToken(
                    mint=mint,
                    symbol=entry["symbol"],
                    raw_amount=str(entry["raw"]),
                    ui_amount=ui_amount,
                    decimals=entry["decimals"],
                    value_in_base=value_in_base,
                    price_in_base=price_in_base,
                )
            )
        return tokens

    # =========================================================================
    # Buy
    # =========================================================================

    async def lookup_ticker(self, ticker: str) -> dict[str, Any]:
        """
        Token info for the exact symbol match of a signal ticker.

        Raises:
            QuoteError: If no token matches the symbol exactly
        """
        symbol = ticker.strip().lstrip("$").upper()
        return pick_exact_symbol(await self.search_token(symbol), symbol)

    async def buy_token(
        self,
        token: dict[str, Any],
        amount: float,
        base_token: str,
        market_cap_minimum: float = 0.0,
    ) -> SwapResult:
        """
        Buy a resolved token, spending ``amount`` of the base token.

        Args:
            token: Token info from ``lookup_ticker``
            amount: UI amount of the base token to spend
            base_token: Base token symbol or mint
            market_cap_minimum: Skip tokens below this market cap (0 disables)

        Returns:
            SwapResult with status success or skipped

        Raises:
            QuoteError: If no route can be found
            ExecutionError: If the swap fails
        """
        symbol = str(token.get("symbol") or "").upper()
        market_cap = token.get("mcap")
        market_cap = float(market_cap) if market_cap is not None else None
        market_cap_formatted = format_market_cap(market_cap)

        if market_cap_minimum and market_cap_minimum > 0:
            if market_cap is None or market_cap < market_cap_minimum:
                logger.info(
                    "buy_skipped_market_cap",
                    ticker=symbol,
                    market_cap=market_cap,
                    minimum=market_cap_minimum,
                )
                return SwapResult(
                    status=SwapStatus.SKIPPED,
                    text=(
                        f"Skipping ${symbol}: market cap {market_cap_formatted or 'unknown'} "
                        f"is below minimum {format_market_cap(market_cap_minimum)}"
                    ),
                    purchased_mint=token.get("id"),
                    purchased_symbol=token.get("symbol") or symbol,
                    market_cap=market_cap,
                    market_cap_formatted=market_cap_formatted,
                )

        base = await self.resolve_token(base_token)
        if base.get("decimals") is None:
            raise QuoteError(f"Unknown decimals for base token {base_token}")
        raw_in = to_raw_amount(amount, int(base["decimals"]))

        quote = await self.get_quote(base["mint"], token["id"], raw_in)
        signature = await self.execute_quote(quote)

        return SwapResult(
            status=SwapStatus.SUCCESS,
            text=f"{self.settings.trading.explorer_tx_url}{signature}",
            purchased_mint=token["id"],
            purchased_symbol=token.get("symbol") or symbol,
            purchased_amount_raw=quote.out_amount,
            purchased_amount_ui=from_raw_amount(quote.out_amount, token.get("decimals")),
            spent_amount_ui=from_raw_amount(quote.in_amount, base["decimals"]),
            base_mint=base["mint"],
            base_symbol=base["symbol"],
            base_decimals=int(base["decimals"]),
            market_cap=market_cap,
            market_cap_formatted=market_cap_formatted,
            transaction_signature=signature,
        )

    async def buy_token_by_ticker(
        self,
        ticker: str,
        amount: float,
        base_token: str,
        market_cap_minimum: float = 0.0,
    ) -> SwapResult:
        """
        Buy a token by ticker such as ``$BONK`` or ``BONK``.

        Raises:
            QuoteError: If the token or a route cannot be found
            ExecutionError: If the swap fails
        """
        token = await self.lookup_ticker(ticker)
        return await self.buy_token(token, amount, base_token, market_cap_minimum)


# Factory function
def get_jupiter_client(settings: Settings | None = None) -> JupiterClient:
    """Create a new Jupiter client instance."""
    return JupiterClient(settings=settings)
