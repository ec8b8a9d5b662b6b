"""
Tests del motor de estados de dispositivos.

Escenarios:
1. Discovery crea el dispositivo en DISCOVERED con sus topics
2. Rediscovery actualiza inventario sin duplicar ni retroceder estado
3. Assignment: aceptado, rechazado, funcionalidad no soportada, transición inválida
4. Heartbeat promueve ASSIGNED → ACTIVE
5. Reboot / firmware: progreso no terminal, éxito terminal
6. Telemetry y hardware status append-only (idempotentes por responseId)
7. Fallo de BD: claim liberado, request sigue pendiente
8. Borrado lógico y restauración por rediscovery
9. Exactly-once: redelivery de broadcast, fallo de Redis tras el commit

Ejecutar: pytest tests/test_state_engine.py -v
"""

from unittest.mock import patch

import pytest
import redis
from sqlalchemy.exc import OperationalError

from device_gateway.core.domain.enums import ProvisionState, RequestCode
from device_gateway.core.errors import PersistenceError
from device_gateway.core.events import EventType
from device_gateway.core.topics.registry import DEVICE_USE_CASES


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def assign(send, make_response, register_pending):
    """Request de asignación + respuesta del dispositivo."""

    def _assign(device_id="sensor-1", **overrides):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION, device_id=device_id)
        event = send("assign", make_response("assign", device_id, request_id, **overrides))
        return event, request_id

    return _assign


@pytest.fixture
def apply(gateway):
    """validate + apply sin la captura de errores del handler."""

    def _apply(kind, payload):
        validated = gateway.validator.validate(kind, payload)
        return gateway.state_engine.apply(validated)

    return _apply


def _state(gateway, device_id="sensor-1"):
    return gateway.devices.get(device_id).provision_state


# =============================================================================
# DISCOVERY
# =============================================================================

class TestDiscovery:

    def test_creates_discovered_device(self, gateway, discover):
        event = discover("sensor-1")

        device = gateway.devices.get("sensor-1")
        assert event.event_type == EventType.DEVICE_DISCOVERED
        assert device.provision_state == ProvisionState.DISCOVERED
        assert device.capabilities == ["temperature", "humidity"]
        assert device.base_topic == "devices/sensor-1"
        assert device.location == {"room": "greenhouse", "floor": 1}
        assert event.payload["device"]["deviceId"] == "sensor-1"

    def test_creates_device_topics(self, gateway, discover):
        event = discover("sensor-1")

        records = gateway.topics.all_for_device("sensor-1")
        assert len(records) == len(DEVICE_USE_CASES)
        assert sorted(event.payload["topics"]) == sorted(r.topic for r in records)

    def test_subscribes_when_connected(self, connected_gateway, client_factory, discover):
        discover("sensor-1")

        client = client_factory.last
        assert "devices/sensor-1/telemetry" in client.subscribed
        assert all(r.is_subscribed for r in connected_gateway.topics.all_for_device("sensor-1"))

    def test_offline_defers_subscriptions(self, gateway, discover):
        discover("sensor-1")
        assert gateway.topics.all_subscribed() == []

    def test_broadcast_stays_pending(self, gateway, send, make_response, register_pending, store):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None)

        send("discovery", make_response("discovery", "sensor-1", request_id))
        send("discovery", make_response("discovery", "sensor-2", request_id))

        assert store.lookup(request_id) is not None
        assert gateway.devices.get("sensor-1") is not None
        assert gateway.devices.get("sensor-2") is not None

    def test_unicast_discovery_retired(self, gateway, send, make_response, register_pending, store):
        request_id = register_pending(RequestCode.DISCOVERY, device_id="sensor-1")
        send("discovery", make_response("discovery", "sensor-1", request_id))
        assert store.lookup(request_id) is None

    def test_rediscovery_updates_inventory(self, gateway, discover, assign):
        discover("sensor-1")
        assign("sensor-1")

        event = discover("sensor-1", firmware="2.0.0", capabilities=["temperature", "humidity", "co2"])

        device = gateway.devices.get("sensor-1")
        assert event.event_type == EventType.DEVICE_REDISCOVERED
        assert device.provision_state == ProvisionState.ASSIGNED
        assert device.firmware == "2.0.0"
        assert "co2" in device.capabilities
        assert len(gateway.topics.all_for_device("sensor-1")) == len(DEVICE_USE_CASES)


# =============================================================================
# ASSIGNMENT
# =============================================================================

class TestAssignment:

    def test_accepted(self, gateway, discover, assign, store):
        discover("sensor-1")

        event, request_id = assign("sensor-1", functionality=["temperature"])

        device = gateway.devices.get("sensor-1")
        assert event.event_type == EventType.DEVICE_ASSIGNED
        assert device.provision_state == ProvisionState.ASSIGNED
        assert device.assigned_functionality == ["temperature"]
        assert store.lookup(request_id) is None

    def test_unsupported_functionality(self, gateway, discover, assign, store):
        discover("sensor-1")

        event, request_id = assign("sensor-1", functionality=["temperature", "co2"])

        assert event.event_type == EventType.REQUEST_REJECTED
        assert event.error == "functionality not supported: co2"
        assert _state(gateway) == ProvisionState.DISCOVERED
        assert store.lookup(request_id) is None

    def test_rejected_by_device(self, gateway, discover, assign):
        discover("sensor-1")

        event, _ = assign("sensor-1", status="REJECTED")

        assert event.error == "assignment rejected"
        assert _state(gateway) == ProvisionState.DISCOVERED

    def test_unknown_device(self, assign):
        event, _ = assign("ghost")
        assert event.error == "device not found"

    def test_no_transition_back_from_active(self, gateway, discover, assign, send, make_response):
        discover("sensor-1")
        assign("sensor-1")
        send("heartbeat", make_response("heartbeat", "sensor-1"))

        event, _ = assign("sensor-1")

        assert event.error == "invalid transition active -> assigned"
        assert _state(gateway) == ProvisionState.ACTIVE

    def test_reassign_while_assigned(self, gateway, discover, assign):
        discover("sensor-1")
        assign("sensor-1", functionality=["temperature"])

        event, _ = assign("sensor-1", functionality=["humidity"])

        assert event.event_type == EventType.DEVICE_ASSIGNED
        assert gateway.devices.get("sensor-1").assigned_functionality == ["humidity"]

    def test_unexpected_response_code(self, gateway, discover, assign):
        discover("sensor-1")
        event, _ = assign("sensor-1", responseCode=299)
        assert event.error.startswith("unexpected response code 299")
        assert _state(gateway) == ProvisionState.DISCOVERED


# =============================================================================
# HEARTBEAT
# =============================================================================

class TestHeartbeat:

    def test_promotes_assigned_to_active(self, gateway, discover, assign, send, make_response):
        discover("sensor-1")
        assign("sensor-1")

        event = send("heartbeat", make_response("heartbeat", "sensor-1"))

        assert event.payload["promoted"] is True
        assert _state(gateway) == ProvisionState.ACTIVE

    def test_does_not_promote_discovered(self, gateway, discover, send, make_response):
        discover("sensor-1")

        event = send("heartbeat", make_response("heartbeat", "sensor-1", connectionState="offline"))

        device = gateway.devices.get("sensor-1")
        assert event.payload["promoted"] is False
        assert device.provision_state == ProvisionState.DISCOVERED
        assert device.connection_state.value == "offline"

    def test_unknown_device(self, send, make_response):
        event = send("heartbeat", make_response("heartbeat", "ghost"))
        assert event.error == "device not found"


# =============================================================================
# REBOOT / FIRMWARE / CONFIG
# =============================================================================

class TestLongRunningOperations:

    def test_reboot_progress_then_success(self, gateway, discover, send, make_response,
                                          register_pending, store):
        discover("sensor-1")
        request_id = register_pending(RequestCode.REBOOT_COMMAND)

        progress = send("reboot", make_response("reboot", "sensor-1", request_id, status="PROCESSING"))
        assert progress.event_type == EventType.REBOOT_PROGRESS
        assert store.lookup(request_id) is not None

        done = send("reboot", make_response("reboot", "sensor-1", request_id))
        assert done.event_type == EventType.REBOOT_COMPLETED
        assert gateway.devices.get("sensor-1").last_reboot is not None
        assert store.lookup(request_id) is None

    def test_reboot_failed(self, discover, send, make_response, register_pending):
        discover("sensor-1")
        request_id = register_pending(RequestCode.REBOOT_COMMAND)

        event = send("reboot", make_response("reboot", "sensor-1", request_id, status="FAILED"))
        assert event.error == "reboot failed"

    def test_firmware_progress_then_success(self, gateway, discover, send, make_response,
                                            register_pending, store):
        discover("sensor-1")
        request_id = register_pending(RequestCode.FIRMWARE_UPGRADE, ttl=900)

        progress = send("firmware-upgrade", make_response(
            "firmware-upgrade", "sensor-1", request_id, status="PROCESSING", progress=40,
        ))
        assert progress.event_type == EventType.FIRMWARE_PROGRESS
        assert progress.payload["progress"] == 40
        assert store.lookup(request_id) is not None

        send("firmware-upgrade", make_response("firmware-upgrade", "sensor-1", request_id, version="1.1.0"))

        device = gateway.devices.get("sensor-1")
        assert device.firmware == "1.1.0"
        assert device.last_upgrade is not None
        assert store.lookup(request_id) is None

    def test_config_ack(self, discover, send, make_response, register_pending):
        discover("sensor-1")
        accepted = register_pending(RequestCode.SENSOR_CONFIGURATION)
        rejected = register_pending(RequestCode.SENSOR_CONFIGURATION)

        ok = send("config", make_response("config", "sensor-1", accepted))
        ko = send("config", make_response(
            "config", "sensor-1", rejected, ackStatus="REJECTED", details="interval out of range",
        ))

        assert ok.event_type == EventType.CONFIG_APPLIED
        assert ko.error == "configuration rejected: interval out of range"


# =============================================================================
# MEDICIONES
# =============================================================================

class TestMeasurements:

    def test_telemetry_is_idempotent(self, gateway, send, make_response):
        payload = make_response("telemetry", "sensor-1", responseId="res-1")

        first = send("telemetry", payload)
        second = send("telemetry", payload)

        assert first.payload["duplicate"] is False
        assert second.payload["duplicate"] is True
        rows = gateway.devices.telemetry_for("sensor-1")
        assert len(rows) == 1
        assert rows[0]["value"] == 23.5
        assert rows[0]["meta"] == {"unit": "C"}

    def test_hardware_status_recorded(self, gateway, discover, send, make_response, register_pending):
        discover("sensor-1")
        request_id = register_pending(RequestCode.HARDWARE_METRICS)

        event = send("hardware-status", make_response("hardware-status", "sensor-1", request_id))

        assert event.event_type == EventType.HARDWARE_STATUS_RECORDED
        rows = gateway.devices.hardware_status_for("sensor-1")
        assert rows[0]["memoryUsage"] == 41.5


# =============================================================================
# FALLOS DE PERSISTENCIA
# =============================================================================

class TestPersistenceFailure:

    def test_claim_released_and_request_kept(self, gateway, apply, make_response,
                                             register_pending, store):
        request_id = register_pending(RequestCode.TELEMETRY_DATA)
        payload = make_response("telemetry", "sensor-1", request_id)
        error = OperationalError("INSERT INTO telemetry", {}, Exception("db down"))

        with patch.object(gateway.devices, "append_telemetry", side_effect=error) as mock_append:
            with pytest.raises(PersistenceError):
                apply("telemetry", payload)

        assert mock_append.call_count == 2
        assert store.lookup(request_id) is not None

        # Reintento de la misma respuesta una vez recuperada la BD
        event = apply("telemetry", payload)
        assert event.event_type == EventType.TELEMETRY_RECORDED
        assert store.lookup(request_id) is None

    def test_unexpected_error_releases_claim(self, gateway, apply, make_response,
                                             register_pending, store):
        request_id = register_pending(RequestCode.TELEMETRY_DATA)
        payload = make_response("telemetry", "sensor-1", request_id)

        with patch.object(gateway.devices, "append_telemetry", side_effect=RuntimeError("bug")):
            with pytest.raises(RuntimeError):
                apply("telemetry", payload)

        assert gateway.state_engine.stats["failed"] == 1
        assert store.lookup(request_id) is not None
        assert store.claim(request_id, "sensor-1") is True


# =============================================================================
# EXACTLY-ONCE
# =============================================================================

def _fail_once(func, error):
    state = {"failed": False}

    def wrapper(*args, **kwargs):
        if not state["failed"]:
            state["failed"] = True
            raise error
        return func(*args, **kwargs)

    return wrapper


class TestExactlyOnce:

    def test_broadcast_redelivery_applied_once(self, gateway, send, make_response,
                                               register_pending, events, store):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None, ttl=300)
        payload = make_response("discovery", "sensor-1", request_id)

        first = send("discovery", payload)
        second = send("discovery", payload)

        assert first.event_type == EventType.DEVICE_DISCOVERED
        assert second is None
        assert [e.event_type for e in events.drain()] == [EventType.DEVICE_DISCOVERED]
        assert gateway.handler.stats.rejected == 1
        assert store.lookup(request_id) is not None

    def test_broadcast_redelivery_after_claim_ttl(self, gateway, send, make_response,
                                                  register_pending, events, clock):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None, ttl=300)
        payload = make_response("discovery", "sensor-1", request_id)

        send("discovery", payload)
        clock.advance(120)

        assert send("discovery", payload) is None
        assert len(events.drain()) == 1

    def test_broadcast_other_devices_still_answer(self, gateway, send, make_response,
                                                   register_pending):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None)

        send("discovery", make_response("discovery", "sensor-1", request_id))
        event = send("discovery", make_response("discovery", "sensor-2", request_id))

        assert event.event_type == EventType.DEVICE_DISCOVERED

    def test_retire_failure_keeps_committed_state(self, gateway, send, make_response,
                                                  register_pending, store, fake_redis, events):
        request_id = register_pending(RequestCode.DISCOVERY, device_id="sensor-1")
        flaky = _fail_once(fake_redis.delete, redis.ConnectionError("redis down"))

        with patch.object(fake_redis, "delete", side_effect=flaky):
            event = send("discovery", make_response("discovery", "sensor-1", request_id))

        assert event.event_type == EventType.DEVICE_DISCOVERED
        assert gateway.devices.get("sensor-1") is not None
        assert [e.event_type for e in events.drain()] == [EventType.DEVICE_DISCOVERED]
        assert gateway.handler.stats.processed == 1
        assert gateway.handler.stats.failed == 0
        # El request no se cerró, pero el claim quedó libre
        assert store.lookup(request_id) is not None
        assert store.claim(request_id, "sensor-1") is True


# =============================================================================
# BORRADO LÓGICO
# =============================================================================

class TestSoftDelete:

    def test_soft_delete_and_restore(self, gateway, discover, send, make_response):
        discover("sensor-1")

        assert gateway.state_engine.soft_delete("sensor-1") is True
        assert gateway.state_engine.soft_delete("sensor-1") is False
        assert gateway.devices.get("sensor-1").is_deleted
        assert all(not r.is_active for r in gateway.topics.all_for_device("sensor-1"))

        heartbeat = send("heartbeat", make_response("heartbeat", "sensor-1"))
        assert heartbeat.error == "device not found"

        event = discover("sensor-1")
        assert event.payload["restored"] is True
        assert not gateway.devices.get("sensor-1").is_deleted
        assert all(r.is_active for r in gateway.topics.all_for_device("sensor-1"))

    def test_events_published(self, gateway, events, discover):
        discover("sensor-1")
        event = events.get()
        assert event.event_type == EventType.DEVICE_DISCOVERED
        assert event.device_id == "sensor-1"
