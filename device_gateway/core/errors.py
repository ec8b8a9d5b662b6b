"""Taxonomía de errores del núcleo.

Cada categoría decide qué pasa con el mensaje que la provoca:

- TransportError: broker inalcanzable u operación sin conexión. Se propaga
  a quien llamó (publish/subscribe) tras el reconnect acotado.
- PayloadValidationError: payload mal formado. Se descarta y se loguea con
  todos los campos que fallan.
- CorrelationError: requestId desconocido o expirado. Respuesta rechazada,
  sin mutar estado.
- DomainRejection: el dispositivo rechazó la operación. Evento de error de
  dominio, no es un fallo del sistema.
- PersistenceError: fallo de escritura. El mensaje queda sin procesar y se
  puede reintentar.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    """Error base del gateway."""


class ConfigurationError(GatewayError):
    """Configuración inválida del broker u otro componente."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


class TransportError(GatewayError):
    """Operación de transporte fallida o sin conexión establecida."""


class PayloadValidationError(GatewayError):
    """Payload que no cumple el esquema. Lista TODOS los campos inválidos."""

    def __init__(self, kind: str, errors: List[Dict[str, Any]]):
        self.kind = kind
        self.errors = errors
        fields = ", ".join(e.get("field", "?") for e in errors)
        super().__init__(f"invalid {kind} payload: {fields}")


class CorrelationError(GatewayError):
    """La respuesta no corresponde a un request pendiente válido."""

    NO_PENDING_REQUEST = "no_pending_request"
    DEVICE_MISMATCH = "device_mismatch"
    REQUEST_KIND_MISMATCH = "request_kind_mismatch"
    IN_FLIGHT = "in_flight"
    TOPIC_MISMATCH = "topic_mismatch"

    def __init__(self, reason: str, request_id: Optional[str], message: str = ""):
        self.reason = reason
        self.request_id = request_id
        super().__init__(message or reason)


class DomainRejection(GatewayError):
    """Respuesta bien formada que indica que la operación no se aplicó."""

    def __init__(self, reason: str, device_id: Optional[str] = None):
        self.reason = reason
        self.device_id = device_id
        super().__init__(reason)


class DeviceNotFoundError(DomainRejection):
    def __init__(self, device_id: Optional[str]):
        super().__init__("device not found", device_id)


class PersistenceError(GatewayError):
    """Fallo de escritura en BD al aplicar una transición."""
