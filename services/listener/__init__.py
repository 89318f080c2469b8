"""
Signal Listener Service

Watches Telegram channels for buy signals.
"""

from services.listener.filters import FilterResult, SignalFilter
from services.listener.service import ListenerService

__all__ = ["SignalFilter", "FilterResult", "ListenerService"]
