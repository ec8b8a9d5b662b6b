"""Repositorio de topics - acceso a BD."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ..domain.enums import TopicUseCase
from ..timeutils import as_datetime, utcnow

_COLUMNS = """
    id, broker_url, device_id, topic, use_case,
    is_active, is_subscribed, created_at, updated_at
"""


@dataclass
class TopicRecord:
    """Fila de la tabla topics."""

    id: str
    broker_url: str
    device_id: str
    topic: str
    use_case: TopicUseCase
    is_active: bool
    is_subscribed: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "TopicRecord":
        return cls(
            id=row.id,
            broker_url=row.broker_url,
            device_id=row.device_id,
            topic=row.topic,
            use_case=TopicUseCase(row.use_case),
            is_active=bool(row.is_active),
            is_subscribed=bool(row.is_subscribed),
            created_at=as_datetime(row.created_at),
            updated_at=as_datetime(row.updated_at),
        )

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "topic": self.topic,
            "useCase": self.use_case.value,
            "isActive": self.is_active,
            "isSubscribed": self.is_subscribed,
        }


class TopicRepository:
    """Acceso a BD para la tabla topics.

    La unicidad (broker_url, topic) la garantiza la BD: la creación es un
    INSERT ... ON CONFLICT DO NOTHING seguido de lectura, seguro ante
    llamadas concurrentes.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def upsert(
        self,
        broker_url: str,
        device_id: str,
        topic: str,
        use_case: TopicUseCase,
    ) -> TopicRecord:
        now = utcnow()
        with self._engine.begin() as conn:
            conn.execute(
                text("""
                    INSERT INTO topics (
                        id, broker_url, device_id, topic, use_case,
                        is_active, is_subscribed, created_at, updated_at
                    ) VALUES (
                        :id, :broker_url, :device_id, :topic, :use_case,
                        TRUE, FALSE, :now, :now
                    )
                    ON CONFLICT (broker_url, topic) DO NOTHING
                """),
                {
                    "id": str(uuid.uuid4()),
                    "broker_url": broker_url,
                    "device_id": device_id,
                    "topic": topic,
                    "use_case": use_case.value,
                    "now": now,
                },
            )
            # Re-creación tras soft delete: la fila existe pero inactiva
            conn.execute(
                text("""
                    UPDATE topics SET is_active = TRUE, updated_at = :now
                    WHERE broker_url = :broker_url AND topic = :topic
                    AND is_active = FALSE
                """),
                {"broker_url": broker_url, "topic": topic, "now": now},
            )
            row = conn.execute(
                text(f"SELECT {_COLUMNS} FROM topics WHERE broker_url = :broker_url AND topic = :topic"),
                {"broker_url": broker_url, "topic": topic},
            ).fetchone()
        return TopicRecord.from_row(row)

    def find(self, broker_url: str, topic: str) -> Optional[TopicRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_COLUMNS} FROM topics WHERE broker_url = :broker_url AND topic = :topic"),
                {"broker_url": broker_url, "topic": topic},
            ).fetchone()
        return TopicRecord.from_row(row) if row else None

    def for_device(self, broker_url: str, device_id: str) -> List[TopicRecord]:
        return self._select(
            "WHERE broker_url = :broker_url AND device_id = :device_id",
            {"broker_url": broker_url, "device_id": device_id},
        )

    def subscribed(self, broker_url: str) -> List[TopicRecord]:
        return self._select(
            "WHERE broker_url = :broker_url AND is_subscribed = TRUE",
            {"broker_url": broker_url},
        )

    def active(self, broker_url: str) -> List[TopicRecord]:
        return self._select(
            "WHERE broker_url = :broker_url AND is_active = TRUE",
            {"broker_url": broker_url},
        )

    def set_subscribed(self, broker_url: str, topic: str, subscribed: bool) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE topics SET is_subscribed = :flag, updated_at = :now
                    WHERE broker_url = :broker_url AND topic = :topic
                """),
                {"flag": subscribed, "now": utcnow(), "broker_url": broker_url, "topic": topic},
            )
        return result.rowcount

    def clear_subscriptions(self, broker_url: str) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE topics SET is_subscribed = FALSE, updated_at = :now
                    WHERE broker_url = :broker_url AND is_subscribed = TRUE
                """),
                {"now": utcnow(), "broker_url": broker_url},
            )
        return result.rowcount

    def deactivate_device(self, broker_url: str, device_id: str) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE topics SET is_active = FALSE, is_subscribed = FALSE, updated_at = :now
                    WHERE broker_url = :broker_url AND device_id = :device_id
                """),
                {"now": utcnow(), "broker_url": broker_url, "device_id": device_id},
            )
        return result.rowcount

    def _select(self, where: str, params: dict) -> List[TopicRecord]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {_COLUMNS} FROM topics {where} ORDER BY topic"),
                params,
            ).fetchall()
        return [TopicRecord.from_row(r) for r in rows]
