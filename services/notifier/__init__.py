"""
Notifier Service

Fans trading messages out to Telegram subscribers.
"""

from services.notifier.service import NotificationService

__all__ = ["NotificationService"]
