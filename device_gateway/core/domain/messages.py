"""Esquemas de las respuestas que publican los dispositivos.

Todos los payloads son objetos JSON UTF-8 con claves camelCase:

{
    "userId": "user-001",
    "responseId": "res-20251104-0002",
    "responseCode": 200,
    "requestId": "5d0c6a7e...",
    "deviceId": "sensor-1",
    "timestamp": 1762379573804,
    ...campos propios del tipo
}
"""

from __future__ import annotations

import math
import time
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    AckStatus,
    ConnectionState,
    DeviceCapability,
    MessageKind,
    OperationStatus,
)

# Ventana aceptada para el timestamp del dispositivo (epoch ms)
MAX_TIMESTAMP_LAG_MS = 5 * 60 * 1000
MAX_TIMESTAMP_LEAD_MS = 30 * 1000


class DeviceResponse(BaseModel):
    """Campos comunes a toda respuesta de dispositivo."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    response_id: str = Field(..., alias="responseId", min_length=1)
    response_code: int = Field(..., alias="responseCode")
    request_id: Optional[str] = Field(default=None, alias="requestId", min_length=1)
    device_id: str = Field(..., alias="deviceId", min_length=1)
    timestamp: int

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: int) -> int:
        now_ms = int(time.time() * 1000)
        if v > now_ms + MAX_TIMESTAMP_LEAD_MS:
            raise ValueError("Timestamp too far in future (>30 s)")
        if v < now_ms - MAX_TIMESTAMP_LAG_MS:
            raise ValueError("Timestamp too old (>5 min)")
        return v


class CorrelatedResponse(DeviceResponse):
    """Respuesta que siempre contesta a un request emitido por el backend."""

    request_id: str = Field(..., alias="requestId", min_length=1)


class DiscoveryResponse(CorrelatedResponse):
    is_broadcast: bool = Field(default=False, alias="isBroadcast")
    capabilities: List[DeviceCapability]
    device_hardware: str = Field(..., alias="deviceHardware", min_length=1)
    topic_prefix: Optional[str] = Field(default=None, alias="topicPrefix")
    connection_state: ConnectionState = Field(
        default=ConnectionState.ONLINE, alias="connectionState"
    )
    firmware: str = Field(..., min_length=1)
    mac: str = Field(..., min_length=1)
    ip: str = Field(..., min_length=1)
    uptime: Optional[int] = Field(default=None, ge=0)
    location: Dict[str, Any] = Field(default_factory=dict)
    protocol: str = "mqtt"
    broker: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = Field(default=None, alias="additionalInfo")


class AssignmentAck(CorrelatedResponse):
    functionality: List[DeviceCapability] = Field(..., min_length=1)
    status: AckStatus


class ConfigAck(CorrelatedResponse):
    ack_status: AckStatus = Field(..., alias="ackStatus")
    details: Optional[str] = None


class RebootAck(CorrelatedResponse):
    status: OperationStatus


class FirmwareUpgradeAck(CorrelatedResponse):
    status: OperationStatus
    version: Optional[str] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)


class HeartbeatResponse(DeviceResponse):
    connection_state: ConnectionState = Field(..., alias="connectionState")
    uptime: Optional[int] = Field(default=None, ge=0)
    wifi_rssi: Optional[float] = Field(default=None, alias="wifiRssi", le=0)


class TelemetryResponse(DeviceResponse):
    metric: DeviceCapability
    value: float
    meta: Optional[Dict[str, Any]] = None

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("Value must be a finite number")
        return v


class HardwareStatusResponse(CorrelatedResponse):
    memory_usage: float = Field(..., alias="memoryUsage", ge=0, le=100)
    cpu_usage: float = Field(..., alias="cpuUsage", ge=0, le=100)
    uptime: int = Field(..., ge=0)
    internal_temp: Optional[float] = Field(default=None, alias="internalTemp")
    wifi_rssi: Optional[float] = Field(default=None, alias="wifiRssi", le=0)


RESPONSE_SCHEMAS: Dict[MessageKind, Type[DeviceResponse]] = {
    MessageKind.DISCOVERY: DiscoveryResponse,
    MessageKind.ASSIGN: AssignmentAck,
    MessageKind.CONFIG: ConfigAck,
    MessageKind.REBOOT: RebootAck,
    MessageKind.FIRMWARE_UPGRADE: FirmwareUpgradeAck,
    MessageKind.HEARTBEAT: HeartbeatResponse,
    MessageKind.TELEMETRY: TelemetryResponse,
    MessageKind.HARDWARE_STATUS: HardwareStatusResponse,
}
