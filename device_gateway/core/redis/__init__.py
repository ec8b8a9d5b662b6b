"""Redis layer - correlación de requests pendientes."""

from .connection import RedisConnection
from .correlation import CorrelationStore, PendingRequest

__all__ = ["RedisConnection", "CorrelationStore", "PendingRequest"]
