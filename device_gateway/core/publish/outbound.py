"""Publicación de requests hacia dispositivos.

Orden de `issue`:
1. Validar parámetros (y dispositivo) sin tocar Redis ni el broker
2. Registrar `pending:{requestId}` con el TTL del tipo
3. Publicar en {base}/{deviceId}/{useCase}
4. Si el publish falla, borrar la entrada (sin requests fantasma)
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

import orjson
from pydantic import ValidationError

from ..domain.catalog import profile_for
from ..domain.enums import MessageKind, TTLClass
from ..domain.requests import PARAMS_MODELS, AssignParams, DeviceRequest
from ..errors import DeviceNotFoundError, DomainRejection, PayloadValidationError, TransportError
from ..monitoring.metrics import OUTBOUND_REQUESTS
from ..redis.correlation import CorrelationStore, PendingRequest
from ..state.repository import DeviceRepository
from ..timeutils import now_ms
from ..topics.registry import TopicRegistry
from ..validation.response_validator import format_validation_errors

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, topic: str, payload: Union[str, bytes], qos: Optional[int] = None, retain: bool = False) -> None: ...


@dataclass(frozen=True)
class PendingTTLConfig:
    """TTL (segundos) de la espera de respuesta por clase de request."""

    short: int = 30
    default: int = 120
    firmware: int = 900

    @classmethod
    def from_env(cls) -> "PendingTTLConfig":
        return cls(
            short=int(os.getenv("PENDING_TTL_SHORT", "30")),
            default=int(os.getenv("PENDING_TTL_DEFAULT", "120")),
            firmware=int(os.getenv("PENDING_TTL_FIRMWARE", "900")),
        )

    def ttl_for(self, ttl_class: TTLClass) -> int:
        return {
            TTLClass.SHORT: self.short,
            TTLClass.DEFAULT: self.default,
            TTLClass.FIRMWARE: self.firmware,
        }[TTLClass(ttl_class)]


class OutboundPublisher:
    """Construye, registra y publica requests tipados."""

    def __init__(
        self,
        publisher: Publisher,
        store: CorrelationStore,
        topics: TopicRegistry,
        devices: DeviceRepository,
        ttl_config: Optional[PendingTTLConfig] = None,
        qos: int = 1,
    ):
        self._publisher = publisher
        self._store = store
        self._topics = topics
        self._devices = devices
        self._ttl = ttl_config or PendingTTLConfig()
        self._qos = qos

        self._lock = threading.Lock()
        self._published = 0
        self._failed = 0

    def issue(
        self,
        device_id: Optional[str],
        request_kind: Union[str, MessageKind],
        params: Optional[Dict[str, Any]] = None,
        user_id: str = "system",
    ) -> str:
        """Publica un request y devuelve su requestId.

        Args:
            device_id: Dispositivo destino. None solo para discovery broadcast.
            request_kind: Tipo de request (discovery, assign, reboot, ...)
            params: Parámetros propios del tipo
            user_id: Usuario que origina el request (viene de la capa de auth)

        Raises:
            PayloadValidationError: tipo o parámetros inválidos
            DeviceNotFoundError: dispositivo desconocido o borrado
            DomainRejection: request incompatible con el dispositivo
            TransportError: el broker no aceptó el publish
        """
        try:
            kind = MessageKind(request_kind)
            profile = profile_for(kind)
        except (ValueError, KeyError):
            OUTBOUND_REQUESTS.labels(kind=str(request_kind), outcome="invalid").inc()
            raise PayloadValidationError(
                str(request_kind),
                [{"field": "kind", "message": f"unsupported request kind {request_kind!r}", "type": "enum"}],
            )

        try:
            request_params = PARAMS_MODELS[kind].model_validate(params or {})
        except ValidationError as e:
            OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="invalid").inc()
            raise PayloadValidationError(kind.value, format_validation_errors(e)) from e

        broadcast = device_id is None
        if broadcast and kind != MessageKind.DISCOVERY:
            OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="invalid").inc()
            raise PayloadValidationError(
                kind.value,
                [{"field": "deviceId", "message": "only discovery can be broadcast", "type": "missing"}],
            )

        if broadcast:
            topic = self._topics.broadcast_name(profile.use_case)
        else:
            try:
                topic = self._topics.name_for(device_id, profile.use_case)
            except ValueError as e:
                OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="invalid").inc()
                raise PayloadValidationError(
                    kind.value, [{"field": "deviceId", "message": str(e), "type": "value_error"}]
                ) from e
            self._check_device(device_id, kind, request_params)

        request_id = uuid.uuid4().hex
        envelope = DeviceRequest(
            user_id=user_id,
            request_id=request_id,
            request_code=int(profile.request_code),
            device_id=device_id,
            is_broadcast=broadcast,
            timestamp=now_ms(),
        )
        payload = orjson.dumps(envelope.to_wire(request_params))

        ttl = self._ttl.ttl_for(profile.ttl_class)
        self._store.register(
            request_id,
            PendingRequest(
                user_id=user_id,
                request_id=request_id,
                request_code=int(profile.request_code),
                device_id=device_id,
            ),
            ttl,
        )

        try:
            self._publisher.publish(topic, payload, qos=self._qos, retain=False)
        except TransportError:
            self._store.discard(request_id)
            with self._lock:
                self._failed += 1
            OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="transport_error").inc()
            logger.error(
                "[PUBLISH] %s to %s failed, pending request %s rolled back",
                kind.value, device_id or "broadcast", request_id,
            )
            raise

        with self._lock:
            self._published += 1
        OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="published").inc()
        logger.info(
            "[PUBLISH] %s request=%s device=%s topic=%s ttl=%ds",
            kind.value, request_id, device_id or "broadcast", topic, ttl,
        )
        return request_id

    def _check_device(self, device_id: str, kind: MessageKind, params) -> None:
        if kind == MessageKind.DISCOVERY:
            # Discovery unicast puede dirigirse a un dispositivo aún no registrado
            return
        device = self._devices.get(device_id)
        if device is None or device.is_deleted:
            OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="rejected").inc()
            raise DeviceNotFoundError(device_id)
        if isinstance(params, AssignParams):
            unsupported = sorted({f.value for f in params.functionality} - set(device.capabilities))
            if unsupported:
                OUTBOUND_REQUESTS.labels(kind=kind.value, outcome="rejected").inc()
                raise DomainRejection(
                    f"functionality not supported: {', '.join(unsupported)}", device_id
                )

    @property
    def stats(self) -> dict:
        with self._lock:
            return {"published": self._published, "failed": self._failed}
