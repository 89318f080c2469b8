"""
Trader Service

Applies buys to the position ledger and executes automatic sells.
"""

from services.trader.service import TraderService

__all__ = ["TraderService"]
