"""Repository layer.

These repositories encapsulate common query patterns for the app's entities.
Keep them focused on persistence/query shaping; business logic lives in services.
"""

from cadence.db.repos.events import EventRepository
from cadence.db.repos.notifications import CancellationNotificationRepository
from cadence.db.repos.subscriptions import CalendarSubscriptionRepository

__all__ = [
    "CalendarSubscriptionRepository",
    "CancellationNotificationRepository",
    "EventRepository",
]
