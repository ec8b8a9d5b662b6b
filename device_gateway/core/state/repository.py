"""Repositorio de dispositivos y mediciones - acceso a BD.

Cada operación es una única escritura idempotente:
- Alta con INSERT ... ON CONFLICT DO NOTHING (rowcount dice si se creó)
- Transiciones con UPDATE ... WHERE provision_state IN (...) (lock optimista)
- Mediciones append-only con clave responseId
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import orjson
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from ..domain.enums import ConnectionState, ProvisionState
from ..domain.messages import DiscoveryResponse
from ..timeutils import utcnow
from .models import Device

_DEVICE_COLUMNS = """
    device_id, capabilities, assigned_functionality, device_hardware, firmware,
    mac, ip, protocol, broker, location, base_topic, provision_state,
    connection_state, is_deleted, last_reboot, last_upgrade, created_at, updated_at
"""


def _dumps(value: Any) -> str:
    # Columnas JSON como TEXT (portable SQLite / PostgreSQL)
    return orjson.dumps(value).decode("utf-8")


def _inventory_params(msg: DiscoveryResponse) -> Dict[str, Any]:
    return {
        "capabilities": _dumps([c.value for c in msg.capabilities]),
        "device_hardware": msg.device_hardware,
        "firmware": msg.firmware,
        "mac": msg.mac,
        "ip": msg.ip,
        "protocol": msg.protocol,
        "broker": msg.broker,
        "location": _dumps(msg.location),
        "connection_state": msg.connection_state.value,
    }


def _state_values(states: Iterable[ProvisionState]) -> List[str]:
    return sorted(ProvisionState(s).value for s in states)


class DeviceRepository:
    """Acceso a BD para devices, telemetry y hardware_status."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def get(self, device_id: str) -> Optional[Device]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE device_id = :device_id"),
                {"device_id": device_id},
            ).fetchone()
        return Device.from_row(row) if row else None

    def list_devices(self, include_deleted: bool = False) -> List[Device]:
        where = "" if include_deleted else "WHERE is_deleted = FALSE"
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {_DEVICE_COLUMNS} FROM devices {where} ORDER BY device_id")
            ).fetchall()
        return [Device.from_row(r) for r in rows]

    def create_discovered(self, msg: DiscoveryResponse, base_topic: str) -> bool:
        """Alta en DISCOVERED. False si el dispositivo ya existía."""
        now = utcnow()
        params = _inventory_params(msg)
        params.update({
            "device_id": msg.device_id,
            "base_topic": base_topic,
            "state": ProvisionState.DISCOVERED.value,
            "now": now,
        })
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    INSERT INTO devices (
                        device_id, capabilities, assigned_functionality, device_hardware,
                        firmware, mac, ip, protocol, broker, location, base_topic,
                        provision_state, connection_state, is_deleted, created_at, updated_at
                    ) VALUES (
                        :device_id, :capabilities, '[]', :device_hardware,
                        :firmware, :mac, :ip, :protocol, :broker, :location, :base_topic,
                        :state, :connection_state, FALSE, :now, :now
                    )
                    ON CONFLICT (device_id) DO NOTHING
                """),
                params,
            )
        return result.rowcount == 1

    def refresh_inventory(self, msg: DiscoveryResponse, base_topic: str) -> bool:
        """Actualiza inventario de un dispositivo conocido y lo restaura si estaba borrado.

        Returns:
            True si el dispositivo estaba soft-deleted
        """
        params = _inventory_params(msg)
        params.update({"device_id": msg.device_id, "base_topic": base_topic, "now": utcnow()})
        with self._engine.begin() as conn:
            was_deleted = conn.execute(
                text("SELECT is_deleted FROM devices WHERE device_id = :device_id"),
                {"device_id": msg.device_id},
            ).scalar()
            conn.execute(
                text("""
                    UPDATE devices SET
                        capabilities = :capabilities, device_hardware = :device_hardware,
                        firmware = :firmware, mac = :mac, ip = :ip, protocol = :protocol,
                        broker = :broker, location = :location, base_topic = :base_topic,
                        connection_state = :connection_state, is_deleted = FALSE,
                        updated_at = :now
                    WHERE device_id = :device_id
                """),
                params,
            )
        return bool(was_deleted)

    def assign(
        self,
        device_id: str,
        functionality: List[str],
        from_states: Iterable[ProvisionState],
    ) -> int:
        """DISCOVERED/UNASSIGNED/ASSIGNED → ASSIGNED. Devuelve filas afectadas."""
        stmt = text("""
            UPDATE devices SET
                assigned_functionality = :functionality,
                provision_state = :state,
                updated_at = :now
            WHERE device_id = :device_id
            AND is_deleted = FALSE
            AND provision_state IN :from_states
        """).bindparams(bindparam("from_states", expanding=True))
        with self._engine.begin() as conn:
            result = conn.execute(
                stmt,
                {
                    "functionality": _dumps(functionality),
                    "state": ProvisionState.ASSIGNED.value,
                    "now": utcnow(),
                    "device_id": device_id,
                    "from_states": _state_values(from_states),
                },
            )
        return result.rowcount

    def record_heartbeat(
        self,
        device_id: str,
        connection_state: ConnectionState,
        promote_from: Iterable[ProvisionState],
    ) -> int:
        """Actualiza connectionState y promueve a ACTIVE si el estado lo permite.

        Returns:
            Filas promovidas a ACTIVE (0 o 1)
        """
        now = utcnow()
        promote = text("""
            UPDATE devices SET provision_state = :active, updated_at = :now
            WHERE device_id = :device_id
            AND is_deleted = FALSE
            AND provision_state IN :from_states
        """).bindparams(bindparam("from_states", expanding=True))
        with self._engine.begin() as conn:
            conn.execute(
                text("""
                    UPDATE devices SET connection_state = :connection_state, updated_at = :now
                    WHERE device_id = :device_id
                """),
                {"connection_state": connection_state.value, "now": now, "device_id": device_id},
            )
            result = conn.execute(
                promote,
                {
                    "active": ProvisionState.ACTIVE.value,
                    "now": now,
                    "device_id": device_id,
                    "from_states": _state_values(promote_from),
                },
            )
        return result.rowcount

    def set_last_reboot(self, device_id: str, at: datetime) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE devices SET last_reboot = :at, updated_at = :now
                    WHERE device_id = :device_id
                """),
                {"at": at, "now": utcnow(), "device_id": device_id},
            )
        return result.rowcount

    def set_last_upgrade(self, device_id: str, at: datetime, firmware: Optional[str] = None) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE devices SET
                        last_upgrade = :at,
                        firmware = COALESCE(:firmware, firmware),
                        updated_at = :now
                    WHERE device_id = :device_id
                """),
                {"at": at, "firmware": firmware, "now": utcnow(), "device_id": device_id},
            )
        return result.rowcount

    def soft_delete(self, device_id: str) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE devices SET is_deleted = TRUE, updated_at = :now
                    WHERE device_id = :device_id AND is_deleted = FALSE
                """),
                {"now": utcnow(), "device_id": device_id},
            )
        return result.rowcount

    def append_telemetry(
        self,
        response_id: str,
        device_id: str,
        metric: str,
        value: float,
        meta: Optional[Dict[str, Any]],
        recorded_at: datetime,
    ) -> bool:
        """Inserta la medición. False si ese responseId ya estaba guardado."""
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    INSERT INTO telemetry (
                        response_id, device_id, metric, value, meta, recorded_at, created_at
                    ) VALUES (
                        :response_id, :device_id, :metric, :value, :meta, :recorded_at, :now
                    )
                    ON CONFLICT (response_id) DO NOTHING
                """),
                {
                    "response_id": response_id,
                    "device_id": device_id,
                    "metric": metric,
                    "value": value,
                    "meta": _dumps(meta) if meta is not None else None,
                    "recorded_at": recorded_at,
                    "now": utcnow(),
                },
            )
        return result.rowcount == 1

    def append_hardware_status(
        self,
        response_id: str,
        device_id: str,
        memory_usage: float,
        cpu_usage: float,
        uptime: int,
        internal_temp: Optional[float],
        wifi_rssi: Optional[float],
        recorded_at: datetime,
    ) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    INSERT INTO hardware_status (
                        response_id, device_id, memory_usage, cpu_usage, uptime,
                        internal_temp, wifi_rssi, recorded_at, created_at
                    ) VALUES (
                        :response_id, :device_id, :memory_usage, :cpu_usage, :uptime,
                        :internal_temp, :wifi_rssi, :recorded_at, :now
                    )
                    ON CONFLICT (response_id) DO NOTHING
                """),
                {
                    "response_id": response_id,
                    "device_id": device_id,
                    "memory_usage": memory_usage,
                    "cpu_usage": cpu_usage,
                    "uptime": uptime,
                    "internal_temp": internal_temp,
                    "wifi_rssi": wifi_rssi,
                    "recorded_at": recorded_at,
                    "now": utcnow(),
                },
            )
        return result.rowcount == 1

    def telemetry_for(self, device_id: str) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("""
                    SELECT response_id, metric, value, meta, recorded_at
                    FROM telemetry WHERE device_id = :device_id
                    ORDER BY recorded_at
                """),
                {"device_id": device_id},
            ).fetchall()
        return [
            {
                "responseId": r.response_id,
                "metric": r.metric,
                "value": float(r.value),
                "meta": orjson.loads(r.meta) if r.meta else None,
                "recordedAt": str(r.recorded_at),
            }
            for r in rows
        ]

    def hardware_status_for(self, device_id: str) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("""
                    SELECT response_id, memory_usage, cpu_usage, uptime,
                           internal_temp, wifi_rssi, recorded_at
                    FROM hardware_status WHERE device_id = :device_id
                    ORDER BY recorded_at
                """),
                {"device_id": device_id},
            ).fetchall()
        return [
            {
                "responseId": r.response_id,
                "memoryUsage": float(r.memory_usage),
                "cpuUsage": float(r.cpu_usage),
                "uptime": int(r.uptime),
                "internalTemp": r.internal_temp,
                "wifiRssi": r.wifi_rssi,
                "recordedAt": str(r.recorded_at),
            }
            for r in rows
        ]
