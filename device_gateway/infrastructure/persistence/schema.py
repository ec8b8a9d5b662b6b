"""Creación idempotente del esquema relacional."""

from __future__ import annotations

import logging
import pathlib
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = pathlib.Path(__file__).parent / "migrations"


def _split_statements(sql_content: str) -> List[str]:
    lines = [
        line for line in sql_content.splitlines()
        if not line.strip().startswith("--")
    ]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def ensure_schema(engine: Engine) -> None:
    """Aplica las migraciones en orden. Seguro de llamar varias veces.

    Args:
        engine: Engine SQLAlchemy (PostgreSQL o SQLite)
    """
    sql_files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not sql_files:
        logger.warning("[DB] No migration files in %s - skipping schema creation", MIGRATIONS_DIR)
        return

    try:
        with engine.begin() as conn:
            for sql_file in sql_files:
                for statement in _split_statements(sql_file.read_text(encoding="utf-8")):
                    conn.execute(text(statement))
                logger.info("[DB] Applied migration %s", sql_file.name)
    except Exception as e:
        logger.exception("[DB] Schema creation failed: %s", e)
        raise
