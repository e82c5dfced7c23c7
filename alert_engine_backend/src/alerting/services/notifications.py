"""Notification collaborator used by the `notification` action.

The engine only needs `send_notification(payload)`; delivery channels (email,
SMS, push) live behind this interface in the surrounding service.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


class NotificationService(Protocol):
    async def send_notification(self, payload: Dict[str, Any]) -> None:
        """Deliver {type, recipients, title, message, alertId}. Raise on failure."""
        ...


class LogNotificationService:
    """Default NotificationService: writes notifications to the log."""

    async def send_notification(self, payload: Dict[str, Any]) -> None:
        logger.warning(
            "Notification type=%s recipients=%s alertId=%s: %s - %s",
            payload.get("type"),
            payload.get("recipients"),
            payload.get("alertId"),
            payload.get("title"),
            payload.get("message"),
        )
