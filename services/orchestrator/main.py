"""
Orchestrator Service - Main FastAPI Application

Main entry point for the Signal Trader engine.
Provides an API to control the engine and read the trading state.
"""

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from services.orchestrator.service import TradingEngine, get_trading_engine
from shared.config import ConfigurationError, get_settings
from shared.firestore_client import PersistenceError
from shared.logging_config import configure_logging
from shared.models import HealthResponse, MonitorPassResult, StartResult, Summary

logger = structlog.get_logger(__name__)

settings = get_settings()
configure_logging(settings)

# Initialize FastAPI app
app = FastAPI(
    title="Signal Trader - Orchestrator",
    description="Signal-driven Solana trading engine",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Service instance
_engine: TradingEngine | None = None


def get_service() -> TradingEngine:
    """Get or create trading engine instance."""
    global _engine
    if _engine is None:
        _engine = get_trading_engine()
    return _engine


# =============================================================================
# Request/Response Models
# =============================================================================


class StartEngineRequest(BaseModel):
    """Request model for starting the engine."""

    notify_chat_id: int | str | None = Field(
        default=None, description="Chat to subscribe to notifications"
    )


class NotifyChatRequest(BaseModel):
    """Request model for subscribing a chat."""

    chat_id: int | str = Field(..., description="Telegram chat id")


class UpdateSettingsRequest(BaseModel):
    """Request model for changing runtime trading settings."""

    token: str | None = None
    token_mint: str | None = None
    amount: float | None = None
    market_cap_minimum: float | None = None
    profit_target_percent: float | None = None


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", version="0.1.0")


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready"}


@app.get("/status", tags=["Health"])
async def system_status() -> dict[str, Any]:
    """Get engine state, monitor state and ledger size."""
    service = get_service()

    try:
        return service.get_status()
    except Exception as e:
        logger.error("status_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Engine Endpoints
# =============================================================================


@app.post("/engine/start", response_model=StartResult, tags=["Engine"])
async def start_engine(request: StartEngineRequest) -> StartResult:
    """
    Start the trading engine.

    Loads persisted state, connects the Telegram listener and starts the
    monitor timer. Returns ``already_running`` if it is running.
    """
    service = get_service()

    try:
        return await service.start(notify_chat_id=request.notify_chat_id)
    except ConfigurationError as e:
        logger.error("engine_start_config_error", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("engine_start_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/engine/stop", tags=["Engine"])
async def stop_engine() -> dict[str, bool]:
    """Stop the trading engine."""
    service = get_service()

    try:
        stopped = await service.stop()
        return {"stopped": stopped}
    except Exception as e:
        logger.error("engine_stop_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/monitor/run", response_model=MonitorPassResult, tags=["Engine"])
async def run_monitor() -> MonitorPassResult:
    """Run a monitor pass now, or wait for the pass in progress."""
    service = get_service()

    try:
        return await service.trigger_monitor()
    except Exception as e:
        logger.error("monitor_run_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/notify-chats", tags=["Engine"])
async def add_notify_chat(request: NotifyChatRequest) -> dict[str, Any]:
    """Subscribe a chat to trading notifications."""
    service = get_service()
    service.add_notify_chat(request.chat_id)
    return {"success": True, "chat_id": request.chat_id}


# =============================================================================
# Trading State Endpoints
# =============================================================================


@app.get("/summary", response_model=Summary, tags=["Trading"])
async def get_summary(
    persisted: bool = Query(default=False, description="Read the stored summary instead"),
) -> Summary:
    """Get the trading summary."""
    service = get_service()

    if not persisted:
        return service.get_summary()

    try:
        summary = await service.firestore_client.get_trading_summary()
    except PersistenceError as e:
        logger.error("get_summary_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    if summary is None:
        raise HTTPException(status_code=404, detail="No persisted trading state")
    return summary


@app.get("/positions", tags=["Trading"])
async def get_positions() -> list[dict[str, Any]]:
    """Get open positions."""
    service = get_service()
    return [p.model_dump(mode="json") for p in service.get_positions()]


@app.get("/history", tags=["Trading"])
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
) -> list[dict[str, Any]]:
    """Get the newest history entries, oldest first."""
    service = get_service()
    return [e.model_dump(mode="json") for e in service.get_history(limit)]


# =============================================================================
# Configuration Endpoints
# =============================================================================


@app.get("/config", tags=["Configuration"])
async def get_config() -> dict[str, Any]:
    """Get static configuration and current runtime trading settings."""
    service = get_service()

    try:
        runtime = await service.settings_store.get_all()
    except Exception as e:
        logger.error("get_config_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "trading": {
            "monitor_interval_ms": settings.trading.monitor_interval_ms,
            "history_limit": settings.trading.history_limit,
            "persisted_history_limit": settings.trading.persisted_history_limit,
            "accounting_currency": settings.trading.accounting_currency,
        },
        "jupiter": {
            "slippage_bps": settings.jupiter.slippage_bps,
            "priority_max_lamports": settings.jupiter.priority_max_lamports,
        },
        "runtime": runtime.model_dump(),
        "persistence_enabled": settings.persistence_enabled,
    }


@app.put("/settings", tags=["Configuration"])
async def update_settings(request: UpdateSettingsRequest) -> dict[str, Any]:
    """
    Change runtime trading settings.

    All given fields are written together, or none when one is rejected.
    Changing the token resets the amount unless one is given.
    """
    store = get_service().settings_store

    try:
        current = await store.update(**request.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error("update_settings_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    return current.model_dump()


# =============================================================================
# Main Entry Point
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.api.debug,
    )
