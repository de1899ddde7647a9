"""
Abstract base class for the notification dispatcher.

The engines only enqueue notification intents ("alert X should go out on
channels Y because Z"). Delivery, retries and at-least-once bookkeeping
belong to the dispatcher implementation.
"""

from abc import ABC, abstractmethod
from typing import Iterable


class NotificationEnqueueError(Exception):
    """Raised when a notification intent could not be enqueued."""

    pass


class NotificationDispatcher(ABC):
    """Receives notification intents from the engines."""

    @abstractmethod
    async def enqueue(
        self,
        alert_id: str,
        channels: Iterable[str],
        reason: str,
    ) -> None:
        """
        Enqueue a notification intent.

        Args:
            alert_id: Alert to notify about.
            channels: Channels to notify (e.g., email, webhook, dashboard).
            reason: Why the intent exists (immediate, escalation:critical).

        Raises:
            NotificationEnqueueError: If the intent could not be enqueued.
        """
        pass
