"""Nombres de topics por dispositivo y bookkeeping de suscripciones.

Formato: {base}/{deviceId}/{useCase}

Los nombres se calculan con funciones puras (nunca a partir de estado en
runtime). Las filas persistidas solo registran qué topics existen y cuáles
están suscritos en el broker.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..domain.enums import TopicUseCase
from .repository import TopicRecord, TopicRepository

logger = logging.getLogger(__name__)

BROADCAST_DEVICE_ID = "broadcast"

# Topics que se suscriben por dispositivo. Discovery lo cubre el listener
# de toda la flota ({base}/+/discovery).
DEVICE_USE_CASES: Tuple[TopicUseCase, ...] = (
    TopicUseCase.ASSIGN,
    TopicUseCase.CONFIG,
    TopicUseCase.REBOOT,
    TopicUseCase.FIRMWARE_UPGRADE,
    TopicUseCase.HEARTBEAT,
    TopicUseCase.TELEMETRY,
    TopicUseCase.HARDWARE_STATUS,
)

_FORBIDDEN_CHARS = ("/", "+", "#")


def validate_device_id(device_id: str) -> str:
    """Un deviceId es un único segmento de topic, sin wildcards."""
    if not device_id or not isinstance(device_id, str):
        raise ValueError("deviceId is required")
    if any(c in device_id for c in _FORBIDDEN_CHARS):
        raise ValueError(f"deviceId contains reserved topic characters: {device_id!r}")
    if device_id == BROADCAST_DEVICE_ID:
        raise ValueError("deviceId 'broadcast' is reserved")
    return device_id


def device_base_topic(base: str, device_id: str) -> str:
    return f"{base}/{validate_device_id(device_id)}"


def build_topic(base: str, device_id: str, use_case: TopicUseCase) -> str:
    """Topic determinista de un (dispositivo, caso de uso)."""
    return f"{device_base_topic(base, device_id)}/{TopicUseCase(use_case).value}"


def broadcast_topic(base: str, use_case: TopicUseCase = TopicUseCase.DISCOVERY) -> str:
    """Topic donde se publican los requests a toda la flota."""
    return f"{base}/{BROADCAST_DEVICE_ID}/{TopicUseCase(use_case).value}"


def discovery_listener_topic(base: str) -> str:
    """Suscripción que recibe las respuestas de discovery de cualquier dispositivo."""
    return f"{base}/+/{TopicUseCase.DISCOVERY.value}"


def device_id_from_topic(topic: str) -> Optional[str]:
    """Segmento {deviceId} de un topic {base}/{deviceId}/{useCase}, o None."""
    parts = topic.rsplit("/", 2) if isinstance(topic, str) else []
    if len(parts) < 3 or not parts[1]:
        return None
    return parts[1]


class TopicRegistry:
    """Registro de topics de la flota para un broker.

    Responsabilidades:
    - Nombres deterministas por (deviceId, useCase)
    - Find-or-create idempotente de filas
    - Estado de suscripción para re-suscribir tras reconexión
    """

    def __init__(self, repository: TopicRepository, base_topic: str, broker_url: str):
        self._repo = repository
        self._base = base_topic.strip("/")
        self._broker_url = broker_url

    @property
    def base_topic(self) -> str:
        return self._base

    def name_for(self, device_id: str, use_case: TopicUseCase) -> str:
        return build_topic(self._base, device_id, use_case)

    def base_for(self, device_id: str) -> str:
        return device_base_topic(self._base, device_id)

    def broadcast_name(self, use_case: TopicUseCase = TopicUseCase.DISCOVERY) -> str:
        return broadcast_topic(self._base, use_case)

    def ensure(self, device_id: str, use_case: TopicUseCase) -> TopicRecord:
        """Find-or-create de la fila del topic. Nunca duplica."""
        topic = self.name_for(device_id, use_case)
        record = self._repo.upsert(self._broker_url, device_id, topic, TopicUseCase(use_case))
        logger.debug("[TOPICS] ensured %s", topic)
        return record

    def ensure_device_topics(self, device_id: str) -> List[TopicRecord]:
        return [self.ensure(device_id, use_case) for use_case in DEVICE_USE_CASES]

    def ensure_discovery_listener(self) -> TopicRecord:
        return self._repo.upsert(
            self._broker_url,
            BROADCAST_DEVICE_ID,
            discovery_listener_topic(self._base),
            TopicUseCase.BROADCAST,
        )

    def find(self, topic: str) -> Optional[TopicRecord]:
        return self._repo.find(self._broker_url, topic)

    def all_for_device(self, device_id: str) -> List[TopicRecord]:
        return self._repo.for_device(self._broker_url, device_id)

    def all_subscribed(self) -> List[TopicRecord]:
        return self._repo.subscribed(self._broker_url)

    def pending_subscriptions(self) -> List[TopicRecord]:
        """Topics activos que deben estar suscritos tras (re)conectar."""
        return self._repo.active(self._broker_url)

    def mark_subscribed(self, topic: str, subscribed: bool = True) -> None:
        self._repo.set_subscribed(self._broker_url, topic, subscribed)

    def mark_all_inactive(self) -> int:
        """Marca todas las suscripciones como no vigentes (las filas se conservan)."""
        count = self._repo.clear_subscriptions(self._broker_url)
        if count:
            logger.info("[TOPICS] %d subscriptions marked inactive", count)
        return count

    def deactivate_device(self, device_id: str) -> int:
        return self._repo.deactivate_device(self._broker_url, device_id)
