"""
Configuration management for Signal Trader.

Loads configuration from YAML files and environment variables.
Environment variables take precedence over YAML config.

Runtime trading parameters (token, amount, profit target) are not part of
these settings; they live in the settings store and are read on demand.
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""

    pass


class TelegramConfig(BaseSettings):
    """Telegram user session and bot configuration."""

    api_id: int = 0
    api_hash: str = ""
    session: str = ""
    phone: str = ""
    password: str = ""
    join_target: str = ""
    outbound_chat_id: str = ""
    bot_token: str = ""
    connection_retries: int = 5

    @property
    def is_configured(self) -> bool:
        """Check if the user session can be started non-interactively."""
        return bool(self.api_id and self.api_hash and self.session)


class SolanaConfig(BaseSettings):
    """Solana RPC and wallet configuration."""

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    wallet_secret_key: str = ""
    commitment: str = "confirmed"


class JupiterConfig(BaseSettings):
    """Jupiter aggregator configuration."""

    swap_api_url: str = "https://lite-api.jup.ag/swap/v1"
    fallback_api_url: str = "https://quote-api.jup.ag/v6"
    token_search_url: str = "https://lite-api.jup.ag/tokens/v2/search"
    price_api_url: str = "https://lite-api.jup.ag/price/v3"
    slippage_bps: int = 50
    priority_max_lamports: int = 200_000
    timeout_seconds: float = 15.0
    confirm_timeout_seconds: float = 60.0


class TradingConfig(BaseSettings):
    """Position ledger and monitor configuration."""

    monitor_interval_ms: int = Field(default=60_000, gt=0)
    history_limit: int = Field(default=100, gt=0)
    persisted_history_limit: int = Field(default=200, gt=0)
    accounting_currency: str = "USD"
    settings_file: str = "./data/settings.json"
    explorer_tx_url: str = "https://solscan.io/tx/"

    @property
    def monitor_interval_seconds(self) -> float:
        """Monitor interval in seconds."""
        return self.monitor_interval_ms / 1000


class FirestoreConfig(BaseSettings):
    """Trading state persistence configuration."""

    enabled: bool = True
    state_collection: str = "bot_state"
    state_document: str = "tradingResults"


class APIConfig(BaseSettings):
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from various formats."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in v:
                return [origin.strip() for origin in v.split(",")]
            return [v]
        return ["*"]


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    include_timestamp: bool = True


class Settings(BaseSettings):
    """
    Main settings class for Signal Trader.

    Settings are loaded from:
    1. Default values
    2. config/config.yaml
    3. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development")

    # GCP
    gcp_project_id: str = Field(default="")

    # Nested configs
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    solana: SolanaConfig = Field(default_factory=SolanaConfig)
    jupiter: JupiterConfig = Field(default_factory=JupiterConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    firestore: FirestoreConfig = Field(default_factory=FirestoreConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "test"

    @property
    def persistence_enabled(self) -> bool:
        """Check if trading state should be persisted to Firestore."""
        return self.firestore.enabled and bool(self.gcp_project_id)


def load_yaml_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config/config.yaml

    Returns:
        Dictionary with configuration values
    """
    if config_path is None:
        possible_paths = [
            Path("config/config.yaml"),
            Path("../config/config.yaml"),
            Path(__file__).parent.parent / "config" / "config.yaml",
        ]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return {}

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def flatten_dict(d: dict[str, Any], parent_key: str = "", sep: str = "__") -> dict[str, Any]:
    """
    Flatten a nested dictionary for environment variable style keys.

    Args:
        d: Dictionary to flatten
        parent_key: Parent key prefix
        sep: Separator between keys

    Returns:
        Flattened dictionary
    """
    items: list[tuple[str, Any]] = []
    for k, v in d.items():
        new_key = f"{parent_key}{sep}{k}" if parent_key else k
        if isinstance(v, dict):
            items.extend(flatten_dict(v, new_key, sep).items())
        else:
            items.append((new_key, v))
    return dict(items)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    YAML values are exported as environment variables (without overriding
    variables that are already set) and then read by pydantic-settings.

    Returns:
        Settings instance
    """
    yaml_config = load_yaml_config()
    flat_config = flatten_dict(yaml_config)
    env_style_config = {k.upper(): v for k, v in flat_config.items()}

    for key, value in env_style_config.items():
        if key not in os.environ and value is not None:
            if isinstance(value, (list, dict)):
                os.environ[key] = json.dumps(value)
            elif isinstance(value, bool):
                os.environ[key] = str(value).lower()
            else:
                os.environ[key] = str(value)

    return Settings()


def reset_settings() -> None:
    """Reset cached settings. Useful for testing."""
    get_settings.cache_clear()
