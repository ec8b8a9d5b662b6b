"""Health checks del sistema."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..redis.connection import RedisConnection

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Estado de salud del sistema."""
    healthy: bool
    mqtt_connected: bool
    db_connected: bool
    redis_connected: bool
    reconnect_exhausted: bool
    messages_processed: int
    messages_failed: int

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "mqtt_connected": self.mqtt_connected,
            "db_connected": self.db_connected,
            "redis_connected": self.redis_connected,
            "reconnect_exhausted": self.reconnect_exhausted,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
        }


class HealthChecker:
    """Verifica el estado de salud del sistema."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        redis_conn: Optional[RedisConnection] = None,
    ):
        self._engine = engine
        self._redis = redis_conn

    def check_database(self) -> bool:
        """Verifica conexión a BD."""
        if not self._engine:
            return False

        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("[HEALTH] Database check failed: %s", e)
            return False

    def check_redis(self) -> bool:
        """Verifica conexión a Redis (PING)."""
        if not self._redis:
            return False
        return self._redis.ping()

    def get_status(
        self,
        mqtt_connected: bool,
        reconnect_exhausted: bool,
        processed: int,
        failed: int,
    ) -> HealthStatus:
        """Obtiene estado de salud completo."""
        db_ok = self.check_database()
        redis_ok = self.check_redis()

        return HealthStatus(
            # Sin Redis no hay correlación: el gateway no puede aceptar respuestas
            healthy=mqtt_connected and db_ok and redis_ok,
            mqtt_connected=mqtt_connected,
            db_connected=db_ok,
            redis_connected=redis_ok,
            reconnect_exhausted=reconnect_exhausted,
            messages_processed=processed,
            messages_failed=failed,
        )
