"""Topics - nombres deterministas y suscripciones persistidas."""

from .registry import (
    BROADCAST_DEVICE_ID,
    DEVICE_USE_CASES,
    TopicRegistry,
    broadcast_topic,
    build_topic,
    device_id_from_topic,
    discovery_listener_topic,
)
from .repository import TopicRecord, TopicRepository

__all__ = [
    "BROADCAST_DEVICE_ID",
    "DEVICE_USE_CASES",
    "TopicRegistry",
    "TopicRecord",
    "TopicRepository",
    "broadcast_topic",
    "build_topic",
    "device_id_from_topic",
    "discovery_listener_topic",
]
