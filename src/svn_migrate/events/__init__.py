"""Migration event broadcasting."""

from .broadcaster import EventBroadcaster, EventType, MigrationEvent, Subscription

__all__ = ['EventBroadcaster', 'EventType', 'MigrationEvent', 'Subscription']
