"""
Ingestion and live fan-out engine.

This package implements the hot path for captured requests:
- The endpoint registry gates ingestion and joins
- The ingestion pipeline persists requests and dispatches them
- The live fan-out bus pushes them to subscribers, with catch-up on join
- The notification router decides whether the owner hears about it
"""

from fanout.event_bus import LiveFanoutBus, Subscriber
from fanout.ingestion import IngestionPipeline
from fanout.notification_router import NotificationPreferences, NotificationRouter
from fanout.registry import EndpointRegistry

__all__ = [
    "EndpointRegistry",
    "IngestionPipeline",
    "LiveFanoutBus",
    "NotificationPreferences",
    "NotificationRouter",
    "Subscriber",
]
