"""Motor de estados de dispositivos.

Aplica cada respuesta validada al registro del dispositivo y emite un
evento de dominio:

| Estado actual       | Respuesta                      | Siguiente estado |
|---------------------|--------------------------------|------------------|
| (ninguno)           | discovery                      | DISCOVERED       |
| DISCOVERED          | assign ACCEPTED, func ⊆ caps   | ASSIGNED         |
| ASSIGNED/ACTIVE     | heartbeat                      | ACTIVE           |
| cualquiera          | telemetry / hardware / reboot  | sin cambio       |

Cada camino terminal (éxito o rechazo de dominio) retira el request
pendiente una sola vez. Un fallo de BD suelta el claim y deja el request
pendiente para reintentar.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..domain.catalog import profile_for
from ..domain.enums import AckStatus, MessageKind, OperationStatus, ProvisionState
from ..domain.messages import (
    AssignmentAck,
    ConfigAck,
    DiscoveryResponse,
    FirmwareUpgradeAck,
    HardwareStatusResponse,
    HeartbeatResponse,
    RebootAck,
    TelemetryResponse,
)
from ..errors import DeviceNotFoundError, DomainRejection, PersistenceError, TransportError
from ..events import DomainEvent, EventBus, EventType
from ..redis.correlation import CorrelationStore
from ..resilience.retry import RetryExecutor
from ..timeutils import from_epoch_ms
from ..topics.registry import TopicRegistry
from ..topics.repository import TopicRecord
from ..validation.response_validator import ValidatedResponse
from .models import Device, is_valid_transition, sources_for
from .repository import DeviceRepository

logger = logging.getLogger(__name__)

# (evento, terminal). Un resultado no terminal deja el request pendiente.
HandlerResult = Tuple[DomainEvent, bool]


class Subscriber(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def subscribe(self, topic: str, qos: Optional[int] = None) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...


class DeviceStateEngine:
    """Aplica respuestas validadas a la máquina de estados del dispositivo."""

    def __init__(
        self,
        devices: DeviceRepository,
        topics: TopicRegistry,
        store: CorrelationStore,
        events: EventBus,
        subscriber: Optional[Subscriber] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self._devices = devices
        self._topics = topics
        self._store = store
        self._events = events
        self._subscriber = subscriber
        self._retry = retry or RetryExecutor()

        self._handlers: Dict[MessageKind, Callable[[ValidatedResponse], HandlerResult]] = {
            MessageKind.DISCOVERY: self._on_discovery,
            MessageKind.ASSIGN: self._on_assignment,
            MessageKind.CONFIG: self._on_config_ack,
            MessageKind.REBOOT: self._on_reboot,
            MessageKind.FIRMWARE_UPGRADE: self._on_firmware_upgrade,
            MessageKind.HEARTBEAT: self._on_heartbeat,
            MessageKind.TELEMETRY: self._on_telemetry,
            MessageKind.HARDWARE_STATUS: self._on_hardware_status,
        }

        self._lock = threading.Lock()
        self._applied = 0
        self._rejected = 0
        self._failed = 0

    def set_subscriber(self, subscriber: Subscriber) -> None:
        self._subscriber = subscriber

    # ------------------------------------------------------------------
    # Entrada
    # ------------------------------------------------------------------

    def apply(self, response: ValidatedResponse) -> DomainEvent:
        """Aplica la respuesta y publica el evento resultante.

        Returns:
            Evento emitido (is_error=True si fue un rechazo de dominio)

        Raises:
            PersistenceError: la escritura falló tras los reintentos
        """
        handler = self._handlers[response.kind]
        try:
            self._check_response_code(response)
            event, terminal = self._retry.execute(handler, response)
        except DomainRejection as e:
            event = self._rejection_event(response, e)
            terminal = True
            with self._lock:
                self._rejected += 1
            logger.warning(
                "[STATE] %s rejected device=%s request=%s reason=%s",
                response.kind.value, response.device_id, response.request_id, e.reason,
            )
        except SQLAlchemyError as e:
            with self._lock:
                self._failed += 1
            self._release(response)
            raise PersistenceError(
                f"{response.kind.value} for {response.device_id} not persisted: {e}"
            ) from e
        except Exception:
            with self._lock:
                self._failed += 1
            self._release(response)
            raise
        else:
            with self._lock:
                self._applied += 1

        # El cambio ya está commiteado: el evento sale aunque Redis falle
        self._events.publish(event)
        self._finish(response, terminal)
        return event

    def soft_delete(self, device_id: str) -> bool:
        """Borrado lógico: marca el dispositivo y desactiva sus topics."""
        if not self._devices.soft_delete(device_id):
            return False
        records = self._topics.all_for_device(device_id)
        self._topics.deactivate_device(device_id)
        if self._subscriber is not None and self._subscriber.is_connected:
            for record in records:
                try:
                    self._subscriber.unsubscribe(record.topic)
                except TransportError as e:
                    logger.warning("[STATE] unsubscribe %s failed: %s", record.topic, e)
        logger.info("[STATE] Device %s soft-deleted", device_id)
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_discovery(self, response: ValidatedResponse) -> HandlerResult:
        msg: DiscoveryResponse = response.message
        try:
            base_topic = self._topics.base_for(msg.device_id)
        except ValueError as e:
            raise DomainRejection(f"invalid deviceId: {e}", msg.device_id)

        created = self._devices.create_discovered(msg, base_topic)
        restored = False
        if not created:
            restored = self._devices.refresh_inventory(msg, base_topic)

        records = self._topics.ensure_device_topics(msg.device_id)
        self._subscribe(records)

        device = self._devices.get(msg.device_id)
        if created:
            logger.info("[STATE] Device %s discovered", msg.device_id)
        else:
            logger.info("[STATE] Device %s rediscovered restored=%s", msg.device_id, restored)

        return self._event(
            EventType.DEVICE_DISCOVERED if created else EventType.DEVICE_REDISCOVERED,
            response,
            device=device.to_dict(),
            restored=restored,
            topics=[r.topic for r in records],
        ), True

    def _on_assignment(self, response: ValidatedResponse) -> HandlerResult:
        msg: AssignmentAck = response.message
        device = self._require_device(msg.device_id)

        if msg.status != AckStatus.ACCEPTED:
            raise DomainRejection("assignment rejected", msg.device_id)

        functionality = [f.value for f in msg.functionality]
        unsupported = sorted(set(functionality) - set(device.capabilities))
        if unsupported:
            raise DomainRejection(
                f"functionality not supported: {', '.join(unsupported)}", msg.device_id
            )

        if not is_valid_transition(device.provision_state, ProvisionState.ASSIGNED):
            raise DomainRejection(
                f"invalid transition {device.provision_state.value} -> assigned", msg.device_id
            )

        if not self._devices.assign(msg.device_id, functionality, sources_for(ProvisionState.ASSIGNED)):
            raise DomainRejection("device state changed concurrently", msg.device_id)

        logger.info("[STATE] Device %s assigned %s", msg.device_id, functionality)
        return self._event(
            EventType.DEVICE_ASSIGNED, response,
            assignedFunctionality=functionality,
            provisionState=ProvisionState.ASSIGNED.value,
        ), True

    def _on_config_ack(self, response: ValidatedResponse) -> HandlerResult:
        msg: ConfigAck = response.message
        self._require_device(msg.device_id)
        if msg.ack_status != AckStatus.ACCEPTED:
            raise DomainRejection(
                f"configuration rejected: {msg.details or 'no details'}", msg.device_id
            )
        return self._event(EventType.CONFIG_APPLIED, response, details=msg.details), True

    def _on_reboot(self, response: ValidatedResponse) -> HandlerResult:
        msg: RebootAck = response.message
        self._require_device(msg.device_id)

        if msg.status == OperationStatus.PROCESSING:
            return self._event(EventType.REBOOT_PROGRESS, response, status=msg.status.value), False
        if msg.status != OperationStatus.SUCCESS:
            raise DomainRejection("reboot failed", msg.device_id)

        at = from_epoch_ms(msg.timestamp)
        self._devices.set_last_reboot(msg.device_id, at)
        return self._event(EventType.REBOOT_COMPLETED, response, lastReboot=at.isoformat()), True

    def _on_firmware_upgrade(self, response: ValidatedResponse) -> HandlerResult:
        msg: FirmwareUpgradeAck = response.message
        self._require_device(msg.device_id)

        if msg.status == OperationStatus.PROCESSING:
            # Progreso: sin persistencia y el request sigue pendiente
            return self._event(
                EventType.FIRMWARE_PROGRESS, response,
                progress=msg.progress, version=msg.version,
            ), False
        if msg.status != OperationStatus.SUCCESS:
            raise DomainRejection("firmware upgrade failed", msg.device_id)

        at = from_epoch_ms(msg.timestamp)
        self._devices.set_last_upgrade(msg.device_id, at, msg.version)
        return self._event(
            EventType.FIRMWARE_UPGRADED, response,
            lastUpgrade=at.isoformat(), version=msg.version,
        ), True

    def _on_heartbeat(self, response: ValidatedResponse) -> HandlerResult:
        msg: HeartbeatResponse = response.message
        self._require_device(msg.device_id)

        promoted = self._devices.record_heartbeat(
            msg.device_id, msg.connection_state, sources_for(ProvisionState.ACTIVE)
        )
        device = self._devices.get(msg.device_id)
        return self._event(
            EventType.DEVICE_HEARTBEAT, response,
            connectionState=msg.connection_state.value,
            provisionState=device.provision_state.value,
            promoted=bool(promoted),
        ), True

    def _on_telemetry(self, response: ValidatedResponse) -> HandlerResult:
        msg: TelemetryResponse = response.message
        inserted = self._devices.append_telemetry(
            response_id=msg.response_id,
            device_id=msg.device_id,
            metric=msg.metric.value,
            value=msg.value,
            meta=msg.meta,
            recorded_at=from_epoch_ms(msg.timestamp),
        )
        return self._event(
            EventType.TELEMETRY_RECORDED, response,
            metric=msg.metric.value, value=msg.value, duplicate=not inserted,
        ), True

    def _on_hardware_status(self, response: ValidatedResponse) -> HandlerResult:
        msg: HardwareStatusResponse = response.message
        self._require_device(msg.device_id)
        inserted = self._devices.append_hardware_status(
            response_id=msg.response_id,
            device_id=msg.device_id,
            memory_usage=msg.memory_usage,
            cpu_usage=msg.cpu_usage,
            uptime=msg.uptime,
            internal_temp=msg.internal_temp,
            wifi_rssi=msg.wifi_rssi,
            recorded_at=from_epoch_ms(msg.timestamp),
        )
        return self._event(
            EventType.HARDWARE_STATUS_RECORDED, response,
            memoryUsage=msg.memory_usage, cpuUsage=msg.cpu_usage,
            duplicate=not inserted,
        ), True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_response_code(self, response: ValidatedResponse) -> None:
        expected = int(profile_for(response.kind).response_code)
        if int(response.message.response_code) != expected:
            raise DomainRejection(
                f"unexpected response code {response.message.response_code} (expected {expected})",
                response.device_id,
            )

    def _require_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None or device.is_deleted:
            raise DeviceNotFoundError(device_id)
        return device

    def _subscribe(self, records: List[TopicRecord]) -> None:
        if self._subscriber is None or not self._subscriber.is_connected:
            # Quedan activos en el registro; se suscriben al reconectar
            logger.info("[STATE] Broker offline, %d subscriptions deferred", len(records))
            return
        for record in records:
            try:
                self._subscriber.subscribe(record.topic)
            except TransportError as e:
                logger.warning("[STATE] subscribe %s deferred: %s", record.topic, e)

    def _finish(self, response: ValidatedResponse, terminal: bool) -> None:
        """Cierra la correlación. Nunca lanza: el estado ya está aplicado."""
        if response.request_id is None or response.pending is None:
            return
        try:
            if not terminal:
                self._store.release(response.request_id, response.device_id)
            elif response.is_broadcast:
                # Otros dispositivos pueden responder hasta el TTL
                self._store.complete(response.request_id, response.device_id)
            else:
                self._store.retire(response.request_id, response.device_id)
        except PersistenceError as e:
            logger.warning(
                "[STATE] Applied %s device=%s but request=%s not closed: %s",
                response.kind.value, response.device_id, response.request_id, e,
            )
            self._release(response)

    def _release(self, response: ValidatedResponse) -> None:
        if response.request_id is not None and response.pending is not None:
            self._store.release(response.request_id, response.device_id)

    def _event(self, event_type: str, response: ValidatedResponse, **payload) -> DomainEvent:
        return DomainEvent(
            event_type=event_type,
            device_id=response.device_id,
            request_id=response.request_id,
            user_id=response.user_id,
            payload={"kind": response.kind.value, **payload},
        )

    def _rejection_event(self, response: ValidatedResponse, error: DomainRejection) -> DomainEvent:
        return DomainEvent(
            event_type=EventType.REQUEST_REJECTED,
            device_id=response.device_id,
            request_id=response.request_id,
            user_id=response.user_id,
            payload={"kind": response.kind.value},
            error=error.reason,
        )

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "applied": self._applied,
                "rejected": self._rejected,
                "failed": self._failed,
                "retry": self._retry.stats,
            }
