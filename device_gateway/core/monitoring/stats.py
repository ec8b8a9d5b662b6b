"""Estadísticas de procesamiento."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Stats:
    """Estadísticas de procesamiento de mensajes entrantes."""

    received: int = 0
    processed: int = 0
    rejected: int = 0   # rechazo de dominio o de correlación
    invalid: int = 0    # JSON o esquema inválido
    ignored: int = 0    # topic sin ruta o eco de nuestros requests
    failed: int = 0     # persistencia o error inesperado
    last_message_at: float = 0
    started_at: datetime = field(default_factory=_now)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} processed={self.processed} "
            f"rejected={self.rejected} invalid={self.invalid} failed={self.failed}"
        )

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def to_dict(self) -> dict:
        """Convierte a diccionario."""
        with self._lock:
            return {
                "received": self.received,
                "processed": self.processed,
                "rejected": self.rejected,
                "invalid": self.invalid,
                "ignored": self.ignored,
                "failed": self.failed,
                "last_message_at": self.last_message_at,
                "started_at": self.started_at.isoformat(),
                "success_rate": self._success_rate(),
            }

    def _success_rate(self) -> float:
        """Calcula tasa de éxito."""
        total = self.processed + self.failed
        if total == 0:
            return 1.0
        return self.processed / total

    def reset(self):
        """Reinicia estadísticas."""
        with self._lock:
            self.received = 0
            self.processed = 0
            self.rejected = 0
            self.invalid = 0
            self.ignored = 0
            self.failed = 0
            self.last_message_at = 0
            self.started_at = _now()
