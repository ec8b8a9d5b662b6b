"""Gateway de dispositivos - raíz de composición.

Construye cada componente una sola vez y lo pasa por constructor:

    BrokerConnection ──raw──▶ AsyncMessageProcessor ──▶ MessageHandler
                                                         │ route / validate / apply
    OutboundPublisher ──▶ CorrelationStore ◀─────────────┘
                                                         ▼
                                        EventBus ──▶ canales (WebSocket, ...)

No hay singletons de módulo: la app HTTP guarda la instancia en su estado.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt
import redis
from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine

from .core.errors import ConfigurationError, TransportError
from .core.events import EventBus
from .core.monitoring.health import HealthChecker, HealthStatus
from .core.publish.outbound import OutboundPublisher, PendingTTLConfig
from .core.redis.connection import RedisConnection
from .core.redis.correlation import CorrelationStore
from .core.resilience.retry import RetryConfig, RetryExecutor
from .core.routing.router import MessageRouter
from .core.state.engine import DeviceStateEngine
from .core.state.repository import DeviceRepository
from .core.topics.registry import TopicRegistry
from .core.topics.repository import TopicRepository
from .core.transport.async_processor import AsyncMessageProcessor, PipelineConfig
from .core.transport.message_handler import MessageHandler
from .core.transport.mqtt_client import BrokerConnection, BrokerSettings
from .core.validation.response_validator import ResponseValidator
from .infrastructure.persistence.schema import ensure_schema

logger = logging.getLogger(__name__)


def broker_settings_from(settings: Settings) -> BrokerSettings:
    return BrokerSettings(
        url=settings.mqtt_broker_url,
        username=settings.mqtt_username or None,
        password=settings.mqtt_password or None,
        client_prefix=settings.mqtt_client_prefix,
        keepalive=settings.mqtt_keepalive,
        connect_timeout_ms=settings.mqtt_connect_timeout_ms,
        reconnect_period_ms=settings.mqtt_reconnect_period_ms,
        max_reconnect_attempts=settings.mqtt_max_reconnect_attempts,
        qos=settings.mqtt_qos,
    )


class DeviceGateway:
    """Núcleo de comunicación con la flota.

    Componentes:
    - BrokerConnection: sesión MQTT única
    - TopicRegistry: nombres y suscripciones persistidas
    - MessageRouter / ResponseValidator / DeviceStateEngine: ingesta
    - CorrelationStore: requests pendientes en Redis
    - OutboundPublisher: requests hacia dispositivos
    - EventBus: eventos de dominio hacia los consumidores
    """

    def __init__(
        self,
        db_engine: Engine,
        redis_client: "redis.Redis",
        broker_settings: BrokerSettings,
        base_topic: str = "devices",
        ttl_config: Optional[PendingTTLConfig] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        event_channel_size: int = 500,
        retry_config: Optional[RetryConfig] = None,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
        redis_url: Optional[str] = None,
    ):
        self._db_engine = db_engine
        self._redis = RedisConnection(url=redis_url, client=redis_client)

        self.events = EventBus(channel_size=event_channel_size)
        self.store = CorrelationStore(redis_client)
        self.devices = DeviceRepository(db_engine)
        self.topics = TopicRegistry(TopicRepository(db_engine), base_topic, broker_settings.safe_url)
        self.connection = BrokerConnection(
            settings=broker_settings,
            topic_registry=self.topics,
            client_factory=client_factory,
        )
        self.router = MessageRouter()
        self.validator = ResponseValidator(self.store)
        self.state_engine = DeviceStateEngine(
            devices=self.devices,
            topics=self.topics,
            store=self.store,
            events=self.events,
            subscriber=self.connection,
            retry=RetryExecutor(retry_config or RetryConfig.from_env()),
        )
        self.handler = MessageHandler(self.router, self.validator, self.state_engine)
        self.processor = AsyncMessageProcessor(self.handler, pipeline_config or PipelineConfig())
        self.publisher = OutboundPublisher(
            publisher=self.connection,
            store=self.store,
            topics=self.topics,
            devices=self.devices,
            ttl_config=ttl_config,
            qos=broker_settings.qos,
        )
        self._health = HealthChecker(db_engine, self._redis)
        self.connection.set_message_sink(self.processor.enqueue)
        self._running = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "DeviceGateway":
        """Crea el gateway con engine y cliente Redis reales."""
        settings = settings or get_settings()
        redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        kwargs: Dict[str, Any] = dict(
            db_engine=get_engine(settings),
            redis_client=redis_client,
            broker_settings=broker_settings_from(settings),
            base_topic=settings.mqtt_base_topic,
            ttl_config=PendingTTLConfig(
                short=settings.pending_ttl_short,
                default=settings.pending_ttl_default,
                firmware=settings.pending_ttl_firmware,
            ),
            pipeline_config=PipelineConfig(
                queue_size=settings.ingest_queue_size,
                workers=settings.ingest_workers,
            ),
            event_channel_size=settings.event_channel_size,
            redis_url=settings.redis_url,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def start(self) -> bool:
        """Inicia el gateway. False si el broker no está disponible."""
        try:
            # 1. Esquema de BD
            ensure_schema(self._db_engine)

            # 2. Redis (correlación)
            if not self._redis.connect():
                logger.error("[GATEWAY] Redis unavailable, responses cannot be correlated")

            # 3. Workers de ingesta antes de recibir mensajes
            self.processor.start()

            # 4. Broker (re-suscribe los topics activos)
            self.connection.connect()

            self._running = True
            logger.info("[GATEWAY] Started successfully")
            return True
        except (TransportError, ConfigurationError) as e:
            logger.error("[GATEWAY] Broker connection failed: %s", e)
            return False

    def stop(self) -> None:
        """Detiene el gateway."""
        self._running = False
        self.connection.close()
        self.processor.stop(drain=True)
        self._redis.disconnect()
        logger.info("[GATEWAY] Stopped. %s", self.handler.stats)

    def reconnect(self) -> dict:
        """Reconexión manual al broker (operador)."""
        self.connection.reconnect()
        return self.connection.status()

    def issue(self, device_id: Optional[str], request_kind: str,
              params: Optional[dict] = None, user_id: str = "system") -> str:
        return self.publisher.issue(device_id, request_kind, params, user_id)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        """Estadísticas del gateway."""
        return {
            "running": self._running,
            "connection": self.connection.status(),
            "handler": self.handler.stats.to_dict(),
            "pipeline": self.processor.metrics,
            "router": self.router.stats,
            "validator": self.validator.stats,
            "state": self.state_engine.stats,
            "correlation": self.store.stats,
            "publisher": self.publisher.stats,
            "events": self.events.stats,
        }

    def health_check(self) -> HealthStatus:
        handler_stats = self.handler.stats
        return self._health.get_status(
            mqtt_connected=self.connection.is_connected,
            reconnect_exhausted=self.connection.reconnect_exhausted,
            processed=handler_stats.processed,
            failed=handler_stats.failed,
        )
