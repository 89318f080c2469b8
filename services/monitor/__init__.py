"""
Position Monitor Service

Values open positions on a timer and triggers automatic sells once the
profit target is reached.
"""

from services.monitor.service import MonitorService

__all__ = ["MonitorService"]
