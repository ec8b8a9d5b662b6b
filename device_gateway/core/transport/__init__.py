"""Transport - conexión MQTT y cola de ingesta."""

from .mqtt_client import BrokerConnection, BrokerSettings
from .message_handler import MessageHandler
from .async_processor import AsyncMessageProcessor, PipelineConfig

__all__ = [
    "BrokerConnection",
    "BrokerSettings",
    "MessageHandler",
    "AsyncMessageProcessor",
    "PipelineConfig",
]
