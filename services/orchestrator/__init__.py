"""
Orchestrator Service

Runs the trading engine and exposes its control API.
"""

from services.orchestrator.service import TradingEngine

__all__ = ["TradingEngine"]
