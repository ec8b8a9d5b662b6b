"""Validación de respuestas de dispositivos.

Dos pasos, en este orden:

1. Estructura: el payload se valida contra el esquema del tipo. Se
   reportan TODOS los campos inválidos, no solo el primero.
2. Correlación: el requestId debe seguir pendiente, el deviceId debe
   coincidir con el del request y el tipo de respuesta con el tipo de
   request. Un mismatch de deviceId se rechaza (no solo se loguea), igual
   que un deviceId distinto del segmento {deviceId} del topic.

Nada parcialmente tipado sale de aquí hacia el motor de estados.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..domain.catalog import profile_for
from ..domain.enums import MessageKind
from ..domain.messages import RESPONSE_SCHEMAS, DeviceResponse
from ..errors import CorrelationError, PayloadValidationError
from ..redis.correlation import CorrelationStore, PendingRequest
from ..topics.registry import device_id_from_topic

logger = logging.getLogger(__name__)


@dataclass
class ValidatedResponse:
    """Respuesta tipada y correlacionada, lista para el motor de estados."""

    kind: MessageKind
    message: DeviceResponse
    pending: Optional[PendingRequest] = None
    topic: Optional[str] = None

    @property
    def device_id(self) -> str:
        return self.message.device_id

    @property
    def request_id(self) -> Optional[str]:
        return self.message.request_id

    @property
    def user_id(self) -> Optional[str]:
        if self.pending is not None:
            return self.pending.user_id
        return self.message.user_id

    @property
    def is_broadcast(self) -> bool:
        return self.pending is not None and self.pending.is_broadcast


def format_validation_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    """Una entrada por campo inválido: {field, message, type}."""
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        errors.append({
            "field": field,
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        })
    return errors


class ResponseValidator:
    """Valida y correlaciona respuestas entrantes."""

    def __init__(self, store: CorrelationStore):
        self._store = store
        self._lock = threading.Lock()
        self._valid = 0
        self._invalid = 0
        self._uncorrelated = 0

    def parse(self, kind: str, payload: Any) -> DeviceResponse:
        """Valida solo la estructura.

        Raises:
            PayloadValidationError: tipo sin esquema o campos inválidos
        """
        try:
            message_kind = MessageKind(kind)
            schema = RESPONSE_SCHEMAS[message_kind]
        except (ValueError, KeyError):
            raise PayloadValidationError(
                str(kind),
                [{"field": "__kind__", "message": f"no schema for kind {kind!r}", "type": "unsupported_kind"}],
            )

        if not isinstance(payload, dict):
            raise PayloadValidationError(
                message_kind.value,
                [{"field": "__root__", "message": "payload must be a JSON object", "type": "dict_type"}],
            )

        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(message_kind.value, format_validation_errors(e)) from e

    def validate(self, kind: str, payload: Any, topic: Optional[str] = None) -> ValidatedResponse:
        """Estructura + correlación. Devuelve la respuesta lista para aplicar.

        Raises:
            PayloadValidationError: payload mal formado
            CorrelationError: request desconocido, expirado, de otro
                dispositivo o de otro tipo, ya en proceso, o recibido en
                el topic de otro dispositivo
        """
        try:
            message = self.parse(kind, payload)
        except PayloadValidationError as e:
            with self._lock:
                self._invalid += 1
            logger.error(
                "[VALIDATOR] Invalid %s payload topic=%s errors=%s",
                e.kind, topic, e.errors,
            )
            raise

        message_kind = MessageKind(kind)
        try:
            self._check_topic(topic, message)
            pending = self._correlate(message_kind, message)
        except CorrelationError as e:
            with self._lock:
                self._uncorrelated += 1
            logger.warning(
                "[VALIDATOR] Rejected %s response request=%s device=%s reason=%s",
                message_kind.value, e.request_id, message.device_id, e.reason,
            )
            raise

        with self._lock:
            self._valid += 1
        return ValidatedResponse(kind=message_kind, message=message, pending=pending, topic=topic)

    def _check_topic(self, topic: Optional[str], message: DeviceResponse) -> None:
        # Un dispositivo solo habla por sus propios topics
        topic_device = device_id_from_topic(topic) if topic else None
        if topic_device is not None and topic_device != message.device_id:
            raise CorrelationError(
                CorrelationError.TOPIC_MISMATCH, message.request_id,
                f"topic {topic} belongs to {topic_device}, "
                f"payload deviceId is {message.device_id}",
            )

    def _correlate(self, kind: MessageKind, message: DeviceResponse) -> Optional[PendingRequest]:
        profile = profile_for(kind)
        request_id = message.request_id

        if request_id is None:
            # Solo llega aquí si el esquema lo permite (tráfico periódico)
            return None

        pending = self._store.lookup(request_id)
        if pending is None:
            raise CorrelationError(
                CorrelationError.NO_PENDING_REQUEST, request_id,
                "No pending request found",
            )

        if int(pending.request_code) != int(profile.request_code):
            raise CorrelationError(
                CorrelationError.REQUEST_KIND_MISMATCH, request_id,
                f"request {request_id} was code {pending.request_code}, "
                f"not a {kind.value} request",
            )

        if pending.device_id is not None and pending.device_id != message.device_id:
            raise CorrelationError(
                CorrelationError.DEVICE_MISMATCH, request_id,
                f"request {request_id} was sent to {pending.device_id}, "
                f"answered by {message.device_id}",
            )

        if not self._store.claim(request_id, message.device_id):
            raise CorrelationError(
                CorrelationError.IN_FLIGHT, request_id,
                "response already being processed",
            )

        return pending

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "valid": self._valid,
                "invalid": self._invalid,
                "uncorrelated": self._uncorrelated,
            }
