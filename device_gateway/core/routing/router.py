"""Router de mensajes entrantes: topic → tipo de mensaje.

La tabla de rutas es estática: (sufijo, prioridad, tipo). Se evalúa en
orden de prioridad descendente; a igual prioridad gana el sufijo más
largo y después el orden de registro. Así `/discovery/ack` nunca queda
tapado por `/ack`.

Un topic sin ruta devuelve "unknown": el router nunca lanza excepción.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple, Union

from ..domain.enums import MessageKind

logger = logging.getLogger(__name__)

UNKNOWN = MessageKind.UNKNOWN.value


@dataclass(frozen=True)
class Route:
    suffix: str
    kind: str
    priority: int = 0

    def can_handle(self, topic: str) -> bool:
        return topic.endswith(self.suffix)


DEFAULT_ROUTES: Tuple[Route, ...] = (
    Route("/discovery", MessageKind.DISCOVERY.value, 10),
    Route("/assign", MessageKind.ASSIGN.value, 10),
    Route("/config", MessageKind.CONFIG.value, 10),
    Route("/reboot", MessageKind.REBOOT.value, 10),
    Route("/firmware-upgrade", MessageKind.FIRMWARE_UPGRADE.value, 10),
    Route("/telemetry", MessageKind.TELEMETRY.value, 8),
    Route("/hardware-status", MessageKind.HARDWARE_STATUS.value, 8),
    Route("/heartbeat", MessageKind.HEARTBEAT.value, 5),
)


def order_routes(routes: Iterable[Route]) -> Tuple[Route, ...]:
    """Orden de evaluación determinista (sorted es estable)."""
    return tuple(sorted(routes, key=lambda r: (-r.priority, -len(r.suffix))))


def route_topic(topic: Any, ordered_routes: Sequence[Route]) -> str:
    """Tipo de la primera ruta que acepta el topic, o "unknown".

    Args:
        topic: Topic MQTT recibido (cualquier valor, se valida aquí)
        ordered_routes: Rutas ya ordenadas con order_routes()
    """
    if not isinstance(topic, str) or not topic:
        return UNKNOWN
    for route in ordered_routes:
        if route.can_handle(topic):
            return route.kind
    return UNKNOWN


class MessageRouter:
    """Clasifica mensajes entrantes por su topic.

    Solo valida estructura (payload es un objeto JSON). La validación
    semántica queda para ResponseValidator.
    """

    def __init__(self, routes: Iterable[Route] = DEFAULT_ROUTES):
        self._routes: List[Route] = list(routes)
        self._ordered = order_routes(self._routes)
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def register(self, suffix: str, kind: Union[str, MessageKind], priority: int = 0) -> Route:
        """Añade una ruta. El sufijo se ancla a un límite de segmento."""
        if not suffix or suffix == "/":
            raise ValueError("route suffix must not be empty")
        if not suffix.startswith("/"):
            suffix = "/" + suffix
        label = kind.value if isinstance(kind, MessageKind) else str(kind)
        route = Route(suffix, label, int(priority))
        with self._lock:
            self._routes.append(route)
            self._ordered = order_routes(self._routes)
        logger.info("[ROUTER] Registered route suffix=%s kind=%s priority=%d", suffix, label, priority)
        return route

    @property
    def routes(self) -> Tuple[Route, ...]:
        return self._ordered

    def route(self, topic: Any, payload: Any) -> str:
        """Etiqueta de tipo para el mensaje. Nunca lanza."""
        kind = route_topic(topic, self._ordered)

        if kind == UNKNOWN:
            logger.warning("[ROUTER] No route for topic=%r", topic)
        elif not isinstance(payload, dict):
            logger.warning(
                "[ROUTER] Non-object payload on topic=%s (%s)",
                topic, type(payload).__name__,
            )
            kind = UNKNOWN

        with self._lock:
            self._counts[kind] += 1
        return kind

    @property
    def stats(self) -> dict:
        with self._lock:
            return dict(self._counts)
