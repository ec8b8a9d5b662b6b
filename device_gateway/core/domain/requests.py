"""Requests salientes hacia los dispositivos.

Los parámetros de cada tipo se validan antes de registrar nada en la
correlación: un request inválido nunca llega al broker.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from .enums import DeviceCapability, MessageKind


class RequestParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class DiscoveryParams(RequestParams):
    pass


class AssignParams(RequestParams):
    functionality: List[DeviceCapability] = Field(..., min_length=1)


class ConfigParams(RequestParams):
    config: Dict[str, Any] = Field(..., min_length=1)
    config_version: Optional[str] = Field(default=None, alias="configVersion")


class RebootParams(RequestParams):
    delay_seconds: int = Field(default=0, alias="delaySeconds", ge=0, le=3600)


class FirmwareUpgradeParams(RequestParams):
    version: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    checksum: Optional[str] = None


class HeartbeatParams(RequestParams):
    pass


class TelemetryParams(RequestParams):
    metrics: Optional[List[DeviceCapability]] = None


class HardwareStatusParams(RequestParams):
    pass


PARAMS_MODELS: Dict[MessageKind, Type[RequestParams]] = {
    MessageKind.DISCOVERY: DiscoveryParams,
    MessageKind.ASSIGN: AssignParams,
    MessageKind.CONFIG: ConfigParams,
    MessageKind.REBOOT: RebootParams,
    MessageKind.FIRMWARE_UPGRADE: FirmwareUpgradeParams,
    MessageKind.HEARTBEAT: HeartbeatParams,
    MessageKind.TELEMETRY: TelemetryParams,
    MessageKind.HARDWARE_STATUS: HardwareStatusParams,
}


class DeviceRequest(BaseModel):
    """Envelope común de todo request publicado."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    request_id: str = Field(..., alias="requestId")
    request_code: int = Field(..., alias="requestCode")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    is_broadcast: bool = Field(default=False, alias="isBroadcast")
    timestamp: int

    def to_wire(self, params: RequestParams) -> Dict[str, Any]:
        """Payload JSON-serializable con claves camelCase."""
        body = self.model_dump(by_alias=True, mode="json")
        body.update(params.model_dump(by_alias=True, mode="json", exclude_none=True))
        return body
