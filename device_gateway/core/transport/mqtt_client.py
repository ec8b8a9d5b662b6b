"""Conexión MQTT con la flota de dispositivos.

Solo transporte: cada mensaje entrante se entrega crudo (topic, bytes) al
sink configurado. Parseo y validación ocurren aguas abajo.

Reconexión acotada: periodo fijo entre intentos y un máximo de intentos
fallidos. Al agotarlo se detiene la reconexión automática y solo un
`reconnect()` explícito (operador) vuelve a intentarlo.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Set, Union
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.subscribeoptions import SubscribeOptions

from ..errors import ConfigurationError, TransportError
from ..monitoring.metrics import BROKER_CONNECTED, BROKER_RECONNECT_ATTEMPTS
from ..topics.registry import TopicRegistry

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("mqtt", "mqtts", "tcp", "ws", "wss")
_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ws": 80, "wss": 443}

MessageSink = Callable[[str, bytes], None]


@dataclass(frozen=True)
class BrokerSettings:
    """Configuración de la conexión al broker."""

    url: str = "mqtt://localhost:1883"
    username: Optional[str] = None
    password: Optional[str] = None
    client_prefix: str = "device-gateway"
    keepalive: int = 60
    connect_timeout_ms: int = 4000
    reconnect_period_ms: int = 2000
    max_reconnect_attempts: int = 5
    qos: int = 1
    ws_path: str = "/mqtt"

    @classmethod
    def from_env(cls) -> "BrokerSettings":
        return cls(
            url=os.getenv("MQTT_BROKER_URL", "mqtt://localhost:1883"),
            username=os.getenv("MQTT_USERNAME") or None,
            password=os.getenv("MQTT_PASSWORD") or None,
            client_prefix=os.getenv("MQTT_CLIENT_PREFIX", "device-gateway"),
            keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
            connect_timeout_ms=int(os.getenv("MQTT_CONNECT_TIMEOUT", "4000")),
            reconnect_period_ms=int(os.getenv("MQTT_RECONNECT_PERIOD", "2000")),
            max_reconnect_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "5")),
            qos=int(os.getenv("MQTT_QOS", "1")),
        )

    @property
    def scheme(self) -> str:
        return urlparse(self.url).scheme.lower()

    @property
    def host(self) -> Optional[str]:
        return urlparse(self.url).hostname

    @property
    def port(self) -> int:
        parsed = urlparse(self.url)
        return parsed.port or _DEFAULT_PORTS.get(parsed.scheme.lower(), 1883)

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in ("ws", "wss") else "tcp"

    @property
    def use_tls(self) -> bool:
        return self.scheme in ("mqtts", "wss")

    @property
    def safe_url(self) -> str:
        parsed = urlparse(self.url)
        return f"{parsed.scheme}://{parsed.hostname}:{self.port}"

    def validate(self) -> List[str]:
        """Lista de problemas de configuración (vacía si es válida)."""
        problems = []
        try:
            parsed = urlparse(self.url)
            port = parsed.port
        except ValueError:
            problems.append("port must be between 1 and 65535")
            parsed, port = None, None

        if parsed is not None:
            if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
                problems.append(
                    f"protocol must be one of {', '.join(SUPPORTED_SCHEMES)}"
                )
            if not parsed.hostname:
                problems.append("host is required")
            if port is not None and not 1 <= port <= 65535:
                problems.append("port must be between 1 and 65535")
        if self.keepalive < 1:
            problems.append("keepalive must be >= 1 second")
        if self.connect_timeout_ms < 1000:
            problems.append("connect timeout must be >= 1000 ms")
        if self.reconnect_period_ms < 1000:
            problems.append("reconnect period must be >= 1000 ms")
        if self.max_reconnect_attempts < 1:
            problems.append("max reconnect attempts must be >= 1")
        if self.qos not in (0, 1):
            problems.append("qos must be 0 or 1")
        return problems


class BrokerConnection:
    """Conexión única al broker, compartida por referencia.

    Responsabilidades:
    - Connect/close con client id generado, credenciales y keepalive
    - Subscribe/unsubscribe idempotentes, publish
    - Re-suscribir los topics activos del registro al conectar
    - Marcar las suscripciones como inactivas al cerrar o caer
    """

    def __init__(
        self,
        settings: Optional[BrokerSettings] = None,
        topic_registry: Optional[TopicRegistry] = None,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ):
        self._settings = settings or BrokerSettings.from_env()
        self._registry = topic_registry
        self._client_factory = client_factory

        self._client: Optional[mqtt.Client] = None
        self._client_id: Optional[str] = None
        self._message_sink: Optional[MessageSink] = None

        self._lock = threading.Lock()
        self._connected = False
        self._connected_event = threading.Event()
        self._last_connect_rc: Optional[int] = None
        self._closing = False
        self._exhausted = False
        self._reconnect_attempts = 0
        self._connect_count = 0
        self._subscriptions: Set[str] = set()

    # ------------------------------------------------------------------
    # Propiedades
    # ------------------------------------------------------------------

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    @property
    def broker_url(self) -> str:
        return self._settings.safe_url

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def reconnect_exhausted(self) -> bool:
        return self._exhausted

    def set_message_sink(self, sink: MessageSink) -> None:
        """Destino de los mensajes crudos (topic, payload)."""
        self._message_sink = sink

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def connect(self, url: Optional[str] = None, **options) -> None:
        """Abre la sesión y espera al CONNACK.

        Args:
            url: URL del broker (sustituye a la configurada)
            **options: Campos de BrokerSettings a sobrescribir

        Raises:
            ConfigurationError: configuración inválida
            TransportError: broker inalcanzable, timeout o conexión rechazada
        """
        if url:
            options["url"] = url
        if options:
            self._settings = replace(self._settings, **options)

        problems = self._settings.validate()
        if problems:
            logger.error("[MQTT] Invalid broker configuration: %s", problems)
            raise ConfigurationError(problems)

        self._teardown_client()
        client = self._build_client()

        with self._lock:
            self._closing = False
            self._exhausted = False
            self._reconnect_attempts = 0
            self._last_connect_rc = None
            self._connected_event.clear()

        logger.info("[MQTT] Connecting to %s as %s", self.broker_url, self._client_id)
        try:
            client.connect(
                self._settings.host,
                self._settings.port,
                keepalive=self._settings.keepalive,
            )
        except (OSError, ValueError) as e:
            self._client = None
            raise TransportError(f"broker unreachable at {self.broker_url}: {e}") from e

        client.loop_start()

        timeout = self._settings.connect_timeout_ms / 1000.0
        if not self._connected_event.wait(timeout):
            self._stop_client(client)
            raise TransportError(f"connection timeout after {timeout:.1f}s")

        if not self._connected:
            rc = self._last_connect_rc
            self._stop_client(client)
            raise TransportError(f"connection refused by broker (rc={rc})")

    def reconnect(self) -> None:
        """Reconexión manual (operador). Reinicia el contador de intentos."""
        logger.info("[MQTT] Manual reconnect requested")
        self.connect()

    def close(self) -> None:
        """Cierra la sesión. Las filas de topics se conservan como inactivas."""
        with self._lock:
            self._closing = True
        self._mark_disconnected()
        if self._client is not None:
            self._stop_client(self._client)
        logger.info("[MQTT] Connection closed")

    # ------------------------------------------------------------------
    # Operaciones
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, qos: Optional[int] = None) -> None:
        """Suscribe (idempotente).

        Raises:
            TransportError: sin conexión o el cliente rechazó la suscripción
        """
        client = self._require_client()
        with self._lock:
            if topic in self._subscriptions:
                return

        qos = self._settings.qos if qos is None else qos
        # noLocal: no recibir nuestros propios requests en topics compartidos
        result, _mid = client.subscribe(topic, options=SubscribeOptions(qos=qos, noLocal=True))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"subscribe {topic} failed (rc={result})")

        with self._lock:
            self._subscriptions.add(topic)
        if self._registry is not None:
            self._registry.mark_subscribed(topic, True)
        logger.info("[MQTT] Subscribed to %s", topic)

    def unsubscribe(self, topic: str) -> None:
        """Cancela la suscripción (idempotente)."""
        client = self._require_client()
        with self._lock:
            if topic not in self._subscriptions:
                return

        result, _mid = client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"unsubscribe {topic} failed (rc={result})")

        with self._lock:
            self._subscriptions.discard(topic)
        if self._registry is not None:
            self._registry.mark_subscribed(topic, False)
        logger.info("[MQTT] Unsubscribed from %s", topic)

    def publish(
        self,
        topic: str,
        payload: Union[str, bytes],
        qos: Optional[int] = None,
        retain: bool = False,
    ) -> None:
        """Publica un mensaje.

        Raises:
            TransportError: sin conexión o publish rechazado
        """
        client = self._require_client()
        qos = self._settings.qos if qos is None else qos
        try:
            info = client.publish(topic, payload, qos=qos, retain=retain)
        except ValueError as e:
            raise TransportError(f"publish to {topic} rejected: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"publish to {topic} failed (rc={info.rc})")

    def status(self) -> dict:
        with self._lock:
            subscriptions = sorted(self._subscriptions)
            attempts = self._reconnect_attempts
        return {
            "connected": self._connected,
            "client_id": self._client_id,
            "broker_url": self.broker_url,
            "reconnect_attempts": attempts,
            "max_reconnect_attempts": self._settings.max_reconnect_attempts,
            "reconnect_exhausted": self._exhausted,
            "connect_count": self._connect_count,
            "subscriptions": subscriptions,
        }

    # ------------------------------------------------------------------
    # Callbacks de paho (thread de red)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_value(reason_code)
        self._last_connect_rc = rc
        if rc != 0:
            logger.error("[MQTT] Connection refused: rc=%s", reason_code)
            self._connected_event.set()
            self._register_failed_attempt()
            return

        with self._lock:
            self._connected = True
            self._reconnect_attempts = 0
            self._connect_count += 1
            self._subscriptions.clear()
        BROKER_CONNECTED.set(1)
        logger.info("[MQTT] Connected to broker %s", self.broker_url)

        self._resubscribe()
        self._connected_event.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._mark_disconnected()
        if self._closing:
            return
        logger.warning("[MQTT] Disconnected unexpectedly (rc=%s), reconnecting every %dms",
                       reason_code, self._settings.reconnect_period_ms)

    def _on_connect_fail(self, client, userdata):
        logger.warning("[MQTT] Reconnect attempt failed")
        self._register_failed_attempt()

    def _on_message(self, client, userdata, msg):
        """Entrega el mensaje crudo al sink."""
        if self._message_sink is None:
            return
        try:
            self._message_sink(msg.topic, msg.payload)
        except Exception:
            logger.exception("[MQTT] Message sink failed for topic=%s", msg.topic)

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    def _build_client(self) -> mqtt.Client:
        self._client_id = f"{self._settings.client_prefix}-{os.getpid()}-{int(time.time() * 1000)}"
        client = self._client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
            transport=self._settings.transport,
        )
        if self._settings.username:
            client.username_pw_set(self._settings.username, self._settings.password)
        if self._settings.use_tls:
            client.tls_set()
        if self._settings.transport == "websockets":
            client.ws_set_options(path=self._settings.ws_path)

        period = max(1, self._settings.reconnect_period_ms // 1000)
        client.reconnect_delay_set(min_delay=period, max_delay=period)
        client.connect_timeout = self._settings.connect_timeout_ms / 1000.0

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail
        client.on_message = self._on_message
        self._client = client
        return client

    def _require_client(self) -> mqtt.Client:
        client = self._client
        if client is None or not self._connected:
            raise TransportError("MQTT client not connected")
        return client

    def _resubscribe(self) -> None:
        if self._registry is None:
            return
        try:
            self._registry.ensure_discovery_listener()
            records = self._registry.pending_subscriptions()
        except Exception:
            logger.exception("[MQTT] Could not load topic subscriptions")
            return

        for record in records:
            try:
                self.subscribe(record.topic)
            except TransportError as e:
                logger.warning("[MQTT] Resubscribe %s failed: %s", record.topic, e)
        logger.info("[MQTT] Re-asserted %d subscriptions", len(records))

    def _register_failed_attempt(self) -> None:
        with self._lock:
            if self._closing or self._exhausted:
                return
            self._reconnect_attempts += 1
            attempts = self._reconnect_attempts
            exhausted = attempts >= self._settings.max_reconnect_attempts
            if exhausted:
                self._exhausted = True
        BROKER_RECONNECT_ATTEMPTS.inc()
        logger.warning(
            "[MQTT] Reconnect attempt %d/%d failed",
            attempts, self._settings.max_reconnect_attempts,
        )
        if exhausted:
            logger.error(
                "[MQTT] Max reconnect attempts reached, automatic reconnection stopped; "
                "manual reconnect required"
            )
            if self._client is not None:
                self._stop_client(self._client)

    def _mark_disconnected(self) -> None:
        was_connected = self._connected
        with self._lock:
            self._connected = False
            self._subscriptions.clear()
        BROKER_CONNECTED.set(0)
        if was_connected and self._registry is not None:
            try:
                self._registry.mark_all_inactive()
            except Exception:
                logger.exception("[MQTT] Could not mark subscriptions inactive")

    def _stop_client(self, client: mqtt.Client) -> None:
        try:
            client.disconnect()
        except Exception as e:
            logger.warning("[MQTT] Disconnect error: %s", e)
        try:
            client.loop_stop()
        except Exception as e:
            logger.warning("[MQTT] Loop stop error: %s", e)

    def _teardown_client(self) -> None:
        if self._client is None:
            return
        with self._lock:
            self._closing = True
        self._mark_disconnected()
        self._stop_client(self._client)
        self._client = None


def _rc_value(reason_code) -> int:
    """ReasonCode de paho (v5) o int (v3)."""
    return int(getattr(reason_code, "value", reason_code))
