"""
Abstract interfaces for the detection engine's collaborators.

The engines depend only on these contracts; storage and delivery are
plugged in by the hosting service.

Modules:
    repository: EventRepository ABC, query filters and repository errors
    notifier: NotificationDispatcher ABC and NotificationEnqueueError
"""

from siem_engine.interfaces.notifier import (
    NotificationDispatcher,
    NotificationEnqueueError,
)
from siem_engine.interfaces.repository import (
    AlertFilter,
    AlertNotFoundError,
    AlertVersionConflict,
    EventFilter,
    EventRepository,
    RepositoryError,
)

__all__: list[str] = [
    "AlertFilter",
    "AlertNotFoundError",
    "AlertVersionConflict",
    "EventFilter",
    "EventRepository",
    "NotificationDispatcher",
    "NotificationEnqueueError",
    "RepositoryError",
]
