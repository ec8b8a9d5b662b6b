"""Eventos de dominio y canales hacia los consumidores.

Cada consumidor (bridge WebSocket, read models, tests) se suscribe con su
propio canal acotado. Un canal lleno descarta el evento más antiguo y lo
cuenta: un consumidor lento nunca bloquea la ingesta.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 500


class EventType:
    DEVICE_DISCOVERED = "device.discovered"
    DEVICE_REDISCOVERED = "device.rediscovered"
    DEVICE_ASSIGNED = "device.assigned"
    DEVICE_HEARTBEAT = "device.heartbeat"
    CONFIG_APPLIED = "config.applied"
    TELEMETRY_RECORDED = "telemetry.recorded"
    HARDWARE_STATUS_RECORDED = "hardware_status.recorded"
    REBOOT_PROGRESS = "reboot.progress"
    REBOOT_COMPLETED = "reboot.completed"
    FIRMWARE_PROGRESS = "firmware.progress"
    FIRMWARE_UPGRADED = "firmware.upgraded"
    REQUEST_REJECTED = "request.rejected"


@dataclass
class DomainEvent:
    """Notificación de una respuesta procesada (o rechazada por el dominio)."""

    event_type: str
    device_id: Optional[str]
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    occurred_at: float = field(default_factory=time.time)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "event": self.event_type,
            "deviceId": self.device_id,
            "requestId": self.request_id,
            "userId": self.user_id,
            "payload": self.payload,
            "error": self.error,
            "occurredAt": self.occurred_at,
        }


class EventChannel:
    """Cola acotada de un consumidor."""

    def __init__(self, name: str, max_size: int = DEFAULT_CHANNEL_SIZE):
        self.name = name
        self._queue: queue.Queue = queue.Queue(maxsize=max_size)
        self._lock = threading.Lock()
        self._delivered = 0
        self._dropped = 0

    def put(self, event: DomainEvent) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    self._delivered += 1
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self._dropped += 1
                    except queue.Empty:
                        pass

    def get(self, timeout: Optional[float] = None) -> Optional[DomainEvent]:
        """Siguiente evento, o None si no llega ninguno en `timeout`."""
        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[DomainEvent]:
        events = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "depth": self._queue.qsize(),
                "max": self._queue.maxsize,
                "delivered": self._delivered,
                "dropped": self._dropped,
            }


class EventBus:
    """Reparte cada evento a todos los canales suscritos."""

    def __init__(self, channel_size: int = DEFAULT_CHANNEL_SIZE):
        self._channel_size = channel_size
        self._channels: Dict[str, EventChannel] = {}
        self._lock = threading.Lock()
        self._published = 0

    def subscribe(self, name: str, max_size: Optional[int] = None) -> EventChannel:
        with self._lock:
            if name in self._channels:
                return self._channels[name]
            channel = EventChannel(name, max_size or self._channel_size)
            self._channels[name] = channel
        logger.info("[EVENTS] Channel subscribed: %s", name)
        return channel

    def unsubscribe(self, name: str) -> None:
        with self._lock:
            removed = self._channels.pop(name, None)
        if removed is not None:
            logger.info("[EVENTS] Channel unsubscribed: %s", name)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._published += 1
        for channel in channels:
            channel.put(event)

    @property
    def stats(self) -> dict:
        with self._lock:
            channels = dict(self._channels)
            published = self._published
        return {
            "published": published,
            "channels": {name: ch.stats for name, ch in channels.items()},
        }
