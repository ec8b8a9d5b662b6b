"""Enumeraciones del dominio de dispositivos."""

from __future__ import annotations

from enum import Enum, IntEnum


class _CaseInsensitiveEnum(str, Enum):
    """Enum de strings que acepta el valor sin importar mayúsculas.

    El firmware envía tanto "ACCEPTED" como "accepted".
    """

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value.lower() == lowered:
                    return member
        return None


class ProvisionState(_CaseInsensitiveEnum):
    """Etapa de aprovisionamiento del dispositivo."""

    DISCOVERED = "discovered"   # Respondió a discovery
    UNASSIGNED = "unassigned"   # Sin funcionalidad asignada
    ASSIGNED = "assigned"       # Funcionalidad aceptada por el dispositivo
    ACTIVE = "active"           # Enviando datos válidos
    ERROR = "error"


class ConnectionState(_CaseInsensitiveEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class DeviceCapability(_CaseInsensitiveEnum):
    """Tipos de medición/actuación soportados."""

    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    PRESSURE = "pressure"
    LIGHT = "light"
    MOTION = "motion"
    CO2 = "co2"
    AMMONIA = "ammonia"
    GPS = "gps"
    RELAY = "relay"


class AckStatus(_CaseInsensitiveEnum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class OperationStatus(_CaseInsensitiveEnum):
    """Estado reportado para reboot y firmware upgrade."""

    SUCCESS = "SUCCESS"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"


class MessageKind(str, Enum):
    """Etiqueta de tipo de mensaje producida por el router."""

    DISCOVERY = "discovery"
    ASSIGN = "assign"
    CONFIG = "config"
    REBOOT = "reboot"
    FIRMWARE_UPGRADE = "firmware-upgrade"
    HEARTBEAT = "heartbeat"
    TELEMETRY = "telemetry"
    HARDWARE_STATUS = "hardware-status"
    UNKNOWN = "unknown"


class TopicUseCase(str, Enum):
    """Sufijo de topic por caso de uso."""

    DISCOVERY = "discovery"
    TELEMETRY = "telemetry"
    HEARTBEAT = "heartbeat"
    ASSIGN = "assign"
    CONFIG = "config"
    REBOOT = "reboot"
    FIRMWARE_UPGRADE = "firmware-upgrade"
    HARDWARE_STATUS = "hardware-status"
    BROADCAST = "broadcast"


class RequestCode(IntEnum):
    DISCOVERY = 100
    ASSIGN_DEVICE_FUNCTION = 101
    SENSOR_CONFIGURATION = 102
    FIRMWARE_UPGRADE = 103
    REBOOT_COMMAND = 104
    HARDWARE_METRICS = 105
    TELEMETRY_DATA = 106
    HEARTBEAT = 107


class ResponseCode(IntEnum):
    DISCOVERY = 200
    ASSIGN_DEVICE_FUNCTION = 201
    SENSOR_CONFIGURATION_ACK = 202
    FIRMWARE_UPGRADE_STATUS = 204
    REBOOT_CONFIRMATION = 205
    HARDWARE_METRICS = 206
    HEARTBEAT = 209
    TELEMETRY_DATA = 211


class TTLClass(str, Enum):
    """Ventana de espera de la respuesta según el tipo de request."""

    SHORT = "short"
    DEFAULT = "default"
    FIRMWARE = "firmware"
