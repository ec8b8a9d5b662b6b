"""Fixtures compartidas.

- SQLite en memoria (StaticPool) con el esquema aplicado
- Redis en memoria con reloj controlable (TTL)
- Cliente paho simulado que registra subscribe/publish
- Gateway completo cableado con los dobles anteriores
"""

import fnmatch
import sqlite3
import threading
import time
import uuid
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import orjson
import paho.mqtt.client as mqtt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from device_gateway.core.domain.enums import MessageKind, RequestCode, ResponseCode
from device_gateway.core.redis.correlation import CorrelationStore, PendingRequest
from device_gateway.core.resilience.retry import RetryConfig
from device_gateway.core.transport.async_processor import PipelineConfig
from device_gateway.core.transport.mqtt_client import BrokerSettings
from device_gateway.gateway import DeviceGateway
from device_gateway.infrastructure.persistence.schema import ensure_schema

# SQLite guarda datetimes como texto ISO (el adaptador por defecto está deprecado)
sqlite3.register_adapter(datetime, lambda d: d.isoformat(" "))


# =============================================================================
# DOBLES
# =============================================================================

class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRedis:
    """Subconjunto de redis.Redis usado por el gateway, con TTL simulado."""

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._data: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock.now:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def set(self, key, value, ex=None, nx=False):
        with self._lock:
            self._purge(key)
            if nx and key in self._data:
                return None
            self._data[key] = value
            if ex is not None:
                self._expiry[key] = self._clock.now + ex
            else:
                self._expiry.pop(key, None)
            return True

    def get(self, key):
        with self._lock:
            self._purge(key)
            return self._data.get(key)

    def delete(self, *keys):
        removed = 0
        with self._lock:
            for key in keys:
                self._purge(key)
                if key in self._data:
                    del self._data[key]
                    self._expiry.pop(key, None)
                    removed += 1
        return removed

    def ttl(self, key):
        with self._lock:
            self._purge(key)
            if key not in self._data:
                return -2
            if key not in self._expiry:
                return -1
            return int(self._expiry[key] - self._clock.now)

    def scan_iter(self, match=None):
        with self._lock:
            for key in list(self._data):
                self._purge(key)
            keys = list(self._data)
        for key in keys:
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    def ping(self):
        return True

    def close(self):
        pass


class FakeMqttClient:
    """Cliente paho simulado. loop_start() dispara on_connect (si accept_connect)."""

    def __init__(self, **kwargs):
        self.init_kwargs = kwargs
        self.accept_connect = True
        self.connect_rc = 0
        self.connect_error: Optional[Exception] = None
        self.subscribe_rc = mqtt.MQTT_ERR_SUCCESS
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self.published: List[Dict[str, Any]] = []
        self.connect_calls: List[tuple] = []
        self.loop_started = False
        self.disconnect_calls = 0
        self.connect_timeout = None
        self.credentials = None
        self.reconnect_delay = None
        self.on_connect = None
        self.on_disconnect = None
        self.on_connect_fail = None
        self.on_message = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def tls_set(self):
        pass

    def ws_set_options(self, path="/mqtt"):
        pass

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self.reconnect_delay = (min_delay, max_delay)

    def connect(self, host, port=1883, keepalive=60):
        self.connect_calls.append((host, port, keepalive))
        if self.connect_error is not None:
            raise self.connect_error

    def loop_start(self):
        self.loop_started = True
        if self.accept_connect:
            self.on_connect(self, None, {}, self.connect_rc, None)

    def loop_stop(self):
        self.loop_started = False

    def disconnect(self):
        self.disconnect_calls += 1

    def subscribe(self, topic, qos=0, options=None, properties=None):
        if self.subscribe_rc == mqtt.MQTT_ERR_SUCCESS:
            self.subscribed.append(topic)
        return self.subscribe_rc, len(self.subscribed)

    def unsubscribe(self, topic, properties=None):
        self.unsubscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, len(self.unsubscribed)

    def publish(self, topic, payload=None, qos=0, retain=False, properties=None):
        if self.publish_rc == mqtt.MQTT_ERR_SUCCESS:
            self.published.append({"topic": topic, "payload": payload, "qos": qos, "retain": retain})
        return MagicMock(rc=self.publish_rc)

    # Helpers de test
    def deliver(self, topic: str, payload: bytes) -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self, rc: int = 7) -> None:
        self.on_disconnect(self, None, {}, rc, None)


class FakeClientFactory:
    def __init__(self):
        self.clients: List[FakeMqttClient] = []
        self.accept_connect = True
        self.connect_rc = 0
        self.connect_error: Optional[Exception] = None

    def __call__(self, **kwargs) -> FakeMqttClient:
        client = FakeMqttClient(**kwargs)
        client.accept_connect = self.accept_connect
        client.connect_rc = self.connect_rc
        client.connect_error = self.connect_error
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeMqttClient:
        return self.clients[-1]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> InMemoryRedis:
    return InMemoryRedis(clock)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(fake_redis) -> CorrelationStore:
    return CorrelationStore(fake_redis)


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def broker_settings() -> BrokerSettings:
    return BrokerSettings(
        url="mqtt://broker.test:1883",
        username="gateway",
        password="secret",
        connect_timeout_ms=1000,
        reconnect_period_ms=1000,
        max_reconnect_attempts=3,
    )


@pytest.fixture
def gateway(db_engine, fake_redis, broker_settings, client_factory) -> DeviceGateway:
    """Gateway cableado con dobles; ni workers ni conexión arrancados."""
    return DeviceGateway(
        db_engine=db_engine,
        redis_client=fake_redis,
        broker_settings=broker_settings,
        base_topic="devices",
        pipeline_config=PipelineConfig(queue_size=10, workers=1),
        retry_config=RetryConfig(max_attempts=2, base_delay=0, jitter=False),
        client_factory=client_factory,
    )


@pytest.fixture
def connected_gateway(gateway, client_factory) -> DeviceGateway:
    gateway.connection.connect()
    return gateway


@pytest.fixture
def events(gateway):
    return gateway.events.subscribe("test")


def now_ms() -> int:
    return int(time.time() * 1000)


@pytest.fixture
def make_response():
    """Construye payloads de respuesta válidos por tipo."""

    defaults = {
        MessageKind.DISCOVERY: lambda: {
            "responseCode": int(ResponseCode.DISCOVERY),
            "isBroadcast": False,
            "capabilities": ["temperature", "humidity"],
            "deviceHardware": "esp32-devkit",
            "topicPrefix": "devices",
            "connectionState": "online",
            "firmware": "1.0.0",
            "mac": "AA:BB:CC:DD:EE:FF",
            "ip": "10.0.0.12",
            "uptime": 1200,
            "location": {"room": "greenhouse", "floor": 1},
            "protocol": "mqtt",
            "broker": "mqtt://broker.test:1883",
        },
        MessageKind.ASSIGN: lambda: {
            "responseCode": int(ResponseCode.ASSIGN_DEVICE_FUNCTION),
            "functionality": ["temperature"],
            "status": "ACCEPTED",
        },
        MessageKind.CONFIG: lambda: {
            "responseCode": int(ResponseCode.SENSOR_CONFIGURATION_ACK),
            "ackStatus": "ACCEPTED",
            "details": "sampling interval set to 30s",
        },
        MessageKind.REBOOT: lambda: {
            "responseCode": int(ResponseCode.REBOOT_CONFIRMATION),
            "status": "SUCCESS",
        },
        MessageKind.FIRMWARE_UPGRADE: lambda: {
            "responseCode": int(ResponseCode.FIRMWARE_UPGRADE_STATUS),
            "status": "SUCCESS",
            "version": "1.1.0",
        },
        MessageKind.HEARTBEAT: lambda: {
            "responseCode": int(ResponseCode.HEARTBEAT),
            "connectionState": "online",
            "uptime": 5000,
            "wifiRssi": -52,
        },
        MessageKind.TELEMETRY: lambda: {
            "responseCode": int(ResponseCode.TELEMETRY_DATA),
            "metric": "temperature",
            "value": 23.5,
            "meta": {"unit": "C"},
        },
        MessageKind.HARDWARE_STATUS: lambda: {
            "responseCode": int(ResponseCode.HARDWARE_METRICS),
            "memoryUsage": 41.5,
            "cpuUsage": 12.0,
            "uptime": 5000,
            "internalTemp": 38.2,
            "wifiRssi": -60,
        },
    }

    def build(kind, device_id="sensor-1", request_id: Optional[str] = None, **overrides):
        payload = {
            "userId": "user-001",
            "responseId": f"res-{uuid.uuid4().hex[:10]}",
            "deviceId": device_id,
            "timestamp": now_ms(),
        }
        if request_id is not None:
            payload["requestId"] = request_id
        payload.update(defaults[MessageKind(kind)]())
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def register_pending(store):
    """Registra un request pendiente como lo haría OutboundPublisher."""

    def register(request_code, device_id: Optional[str] = "sensor-1", ttl: int = 60,
                 request_id: Optional[str] = None) -> str:
        request_id = request_id or uuid.uuid4().hex
        store.register(
            request_id,
            PendingRequest(
                user_id="user-001",
                request_id=request_id,
                request_code=int(request_code),
                device_id=device_id,
            ),
            ttl,
        )
        return request_id

    return register


@pytest.fixture
def send(gateway):
    """Entrega un payload al handler como si llegara del broker."""

    def _send(kind, payload, topic: Optional[str] = None):
        topic = topic or f"devices/{payload['deviceId']}/{MessageKind(kind).value}"
        return gateway.handler.handle(topic, orjson.dumps(payload))

    return _send


@pytest.fixture
def discover(send, make_response, register_pending):
    """Respuesta de un dispositivo a un discovery broadcast."""

    def _discover(device_id: str = "sensor-1", **overrides):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None)
        return send("discovery", make_response("discovery", device_id, request_id, **overrides))

    return _discover
