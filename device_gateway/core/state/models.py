"""Modelos de estado de aprovisionamiento del dispositivo."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

import orjson

from ..domain.enums import ConnectionState, ProvisionState
from ..timeutils import as_datetime


@dataclass
class Device:
    """Fila de la tabla devices."""

    device_id: str
    capabilities: List[str]
    assigned_functionality: List[str]
    provision_state: ProvisionState
    connection_state: Optional[ConnectionState]
    base_topic: str
    device_hardware: Optional[str] = None
    firmware: Optional[str] = None
    mac: Optional[str] = None
    ip: Optional[str] = None
    protocol: Optional[str] = None
    broker: Optional[str] = None
    location: Dict[str, Any] = field(default_factory=dict)
    is_deleted: bool = False
    last_reboot: Optional[datetime] = None
    last_upgrade: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Device":
        return cls(
            device_id=row.device_id,
            capabilities=orjson.loads(row.capabilities or "[]"),
            assigned_functionality=orjson.loads(row.assigned_functionality or "[]"),
            provision_state=ProvisionState(row.provision_state),
            connection_state=ConnectionState(row.connection_state) if row.connection_state else None,
            base_topic=row.base_topic,
            device_hardware=row.device_hardware,
            firmware=row.firmware,
            mac=row.mac,
            ip=row.ip,
            protocol=row.protocol,
            broker=row.broker,
            location=orjson.loads(row.location or "{}"),
            is_deleted=bool(row.is_deleted),
            last_reboot=as_datetime(row.last_reboot),
            last_upgrade=as_datetime(row.last_upgrade),
            created_at=as_datetime(row.created_at),
            updated_at=as_datetime(row.updated_at),
        )

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "capabilities": self.capabilities,
            "assignedFunctionality": self.assigned_functionality,
            "provisionState": self.provision_state.value,
            "connectionState": self.connection_state.value if self.connection_state else None,
            "baseTopic": self.base_topic,
            "deviceHardware": self.device_hardware,
            "firmware": self.firmware,
            "mac": self.mac,
            "ip": self.ip,
            "protocol": self.protocol,
            "broker": self.broker,
            "location": self.location,
            "isDeleted": self.is_deleted,
            "lastReboot": self.last_reboot.isoformat() if self.last_reboot else None,
            "lastUpgrade": self.last_upgrade.isoformat() if self.last_upgrade else None,
        }


# Transiciones válidas de la máquina de estados.
# El estado solo avanza DISCOVERED → ASSIGNED → ACTIVE.
VALID_TRANSITIONS: Dict[ProvisionState, FrozenSet[ProvisionState]] = {
    ProvisionState.DISCOVERED: frozenset({ProvisionState.ASSIGNED}),
    ProvisionState.UNASSIGNED: frozenset({ProvisionState.ASSIGNED}),
    ProvisionState.ASSIGNED: frozenset({ProvisionState.ACTIVE}),
    ProvisionState.ACTIVE: frozenset(),
    ProvisionState.ERROR: frozenset(),
}


def is_valid_transition(from_state: ProvisionState, to_state: ProvisionState) -> bool:
    """Verifica si una transición de estado es válida."""
    if from_state == to_state:
        return True
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def sources_for(to_state: ProvisionState) -> FrozenSet[ProvisionState]:
    """Estados desde los que se puede llegar a `to_state` (incluido él mismo)."""
    return frozenset(s for s in ProvisionState if is_valid_transition(s, to_state))
