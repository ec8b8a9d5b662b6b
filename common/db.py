from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings, get_settings


logger = logging.getLogger(__name__)


def _safe_url(url: str) -> str:
    # Nunca loguear credenciales
    return url.split("@")[-1]


def get_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()

    logger.info("[DB] Crear engine url=%s", _safe_url(settings.database_url))

    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_recycle=300,
        future=True,
    )

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return engine
