"""
Tests del validador de respuestas.

Tests:
1. Estructura: todos los campos inválidos se reportan juntos
2. Correlación: request desconocido, expirado, otro dispositivo, otro tipo
3. Respuestas duplicadas (claim en vuelo)
4. Tráfico periódico sin requestId (heartbeat, telemetry)

Ejecutar: pytest tests/test_response_validator.py -v
"""

import time

import pytest

from device_gateway.core.domain.enums import AckStatus, MessageKind, RequestCode
from device_gateway.core.errors import CorrelationError, PayloadValidationError
from device_gateway.core.validation import ResponseValidator


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def validator(store):
    return ResponseValidator(store)


def _fields(exc_info):
    return {e["field"] for e in exc_info.value.errors}


# =============================================================================
# ESTRUCTURA
# =============================================================================

class TestStructure:

    def test_valid_assign(self, validator, make_response, register_pending):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION)
        payload = make_response("assign", "sensor-1", request_id)

        result = validator.validate("assign", payload, topic="devices/sensor-1/assign")

        assert result.kind == MessageKind.ASSIGN
        assert result.message.status == AckStatus.ACCEPTED
        assert result.pending.request_id == request_id
        assert result.user_id == "user-001"
        assert result.topic == "devices/sensor-1/assign"

    def test_all_invalid_fields_reported(self, validator, make_response):
        payload = make_response("discovery", "sensor-1", "req-1", capabilities=["laser"])
        del payload["mac"]
        del payload["ip"]
        payload["timestamp"] = int(time.time() * 1000) - 10 * 60 * 1000

        with pytest.raises(PayloadValidationError) as exc_info:
            validator.validate("discovery", payload)

        fields = _fields(exc_info)
        assert {"mac", "ip", "timestamp"} <= fields
        assert any(f.startswith("capabilities") for f in fields)
        assert exc_info.value.kind == "discovery"

    def test_future_timestamp_rejected(self, validator, make_response):
        payload = make_response("heartbeat", timestamp=int(time.time() * 1000) + 60_000)
        with pytest.raises(PayloadValidationError) as exc_info:
            validator.validate("heartbeat", payload)
        assert _fields(exc_info) == {"timestamp"}

    def test_correlated_kind_requires_request_id(self, validator, make_response):
        payload = make_response("assign", "sensor-1")
        with pytest.raises(PayloadValidationError) as exc_info:
            validator.validate("assign", payload)
        assert "requestId" in _fields(exc_info)

    def test_telemetry_value_must_be_finite(self, validator, make_response):
        payload = make_response("telemetry", value=float("inf"))
        with pytest.raises(PayloadValidationError):
            validator.validate("telemetry", payload)

    def test_hardware_usage_range(self, validator, make_response):
        payload = make_response("hardware-status", "sensor-1", "req-1", memoryUsage=120, cpuUsage=-1)
        with pytest.raises(PayloadValidationError) as exc_info:
            validator.validate("hardware-status", payload)
        assert {"memoryUsage", "cpuUsage"} <= _fields(exc_info)

    def test_status_case_insensitive(self, validator, make_response, register_pending):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION)
        payload = make_response("assign", "sensor-1", request_id, status="accepted")
        assert validator.validate("assign", payload).message.status == AckStatus.ACCEPTED

    def test_non_object_payload(self, validator):
        with pytest.raises(PayloadValidationError):
            validator.validate("telemetry", ["not", "an", "object"])

    def test_unsupported_kind(self, validator, make_response):
        with pytest.raises(PayloadValidationError) as exc_info:
            validator.validate("unknown", make_response("heartbeat"))
        assert exc_info.value.errors[0]["type"] == "unsupported_kind"


# =============================================================================
# CORRELACIÓN
# =============================================================================

class TestCorrelation:

    def test_no_pending_request(self, validator, make_response):
        payload = make_response("assign", "sensor-1", "forged-id")

        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", payload)

        assert exc_info.value.reason == CorrelationError.NO_PENDING_REQUEST
        assert str(exc_info.value) == "No pending request found"

    def test_expired_is_same_as_unknown(self, validator, make_response, register_pending, clock):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION, ttl=30)
        clock.advance(31)

        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", make_response("assign", "sensor-1", request_id))
        assert exc_info.value.reason == CorrelationError.NO_PENDING_REQUEST

    def test_device_mismatch_rejected(self, validator, make_response, register_pending, store):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION, device_id="sensor-1")

        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", make_response("assign", "sensor-2", request_id))

        assert exc_info.value.reason == CorrelationError.DEVICE_MISMATCH
        # El request sigue esperando al dispositivo correcto
        assert store.lookup(request_id) is not None

    def test_request_kind_mismatch(self, validator, make_response, register_pending):
        request_id = register_pending(RequestCode.REBOOT_COMMAND)

        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", make_response("assign", "sensor-1", request_id))
        assert exc_info.value.reason == CorrelationError.REQUEST_KIND_MISMATCH

    def test_duplicate_in_flight(self, validator, make_response, register_pending):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION)
        payload = make_response("assign", "sensor-1", request_id)

        validator.validate("assign", payload)
        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", payload)
        assert exc_info.value.reason == CorrelationError.IN_FLIGHT

    def test_broadcast_answered_by_many(self, validator, make_response, register_pending):
        request_id = register_pending(RequestCode.DISCOVERY, device_id=None)

        first = validator.validate("discovery", make_response("discovery", "sensor-1", request_id))
        second = validator.validate("discovery", make_response("discovery", "sensor-2", request_id))

        assert first.is_broadcast and second.is_broadcast
        assert {first.device_id, second.device_id} == {"sensor-1", "sensor-2"}

    def test_topic_of_another_device_rejected(self, validator, make_response,
                                              register_pending, store):
        request_id = register_pending(RequestCode.ASSIGN_DEVICE_FUNCTION, device_id="sensor-1")
        payload = make_response("assign", "sensor-1", request_id)

        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("assign", payload, topic="devices/sensor-2/assign")

        assert exc_info.value.reason == CorrelationError.TOPIC_MISMATCH
        # Sin claim: la respuesta legítima sigue pudiendo procesarse
        assert validator.validate("assign", payload, topic="devices/sensor-1/assign").pending

    def test_unsolicited_heartbeat_on_foreign_topic(self, validator, make_response):
        with pytest.raises(CorrelationError) as exc_info:
            validator.validate("heartbeat", make_response("heartbeat", "sensor-1"),
                               topic="devices/sensor-2/heartbeat")
        assert exc_info.value.reason == CorrelationError.TOPIC_MISMATCH

    def test_periodic_heartbeat_without_request(self, validator, make_response):
        result = validator.validate("heartbeat", make_response("heartbeat"))
        assert result.pending is None
        assert result.request_id is None
        assert result.user_id == "user-001"

    def test_stats(self, validator, make_response):
        validator.validate("heartbeat", make_response("heartbeat"))
        with pytest.raises(CorrelationError):
            validator.validate("config", make_response("config", "sensor-1", "nope"))
        with pytest.raises(PayloadValidationError):
            validator.validate("config", {})

        assert validator.stats == {"valid": 1, "invalid": 1, "uncorrelated": 1}
