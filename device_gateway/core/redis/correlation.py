"""Correlación request/response con TTL en Redis.

Cada request saliente deja una entrada `pending:{requestId}` con
{userId, requestId, requestCode, deviceId}. La respuesta del dispositivo
la busca, la procesa y la retira. Si no llega respuesta, la entrada
expira sola por el TTL nativo de Redis: no hay proceso de limpieza.

Mientras una respuesta se procesa se toma un claim
`inflight:{requestId}:{deviceId}` (SET NX EX) para que una copia
duplicada de la misma respuesta no se aplique dos veces. Tras procesar
la respuesta el claim queda como "done": al retirar, durante el TTL del
claim; en un broadcast, mientras viva el request. Una redelivery QoS 1
no vuelve a aplicarse.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import orjson
import redis

from ..errors import PersistenceError
from ..monitoring.metrics import PENDING_REQUESTS

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """Metadata de un request a la espera de respuesta."""

    user_id: str
    request_id: str
    request_code: int
    device_id: Optional[str] = None  # None → discovery broadcast

    @property
    def is_broadcast(self) -> bool:
        return self.device_id is None

    def to_json(self) -> bytes:
        return orjson.dumps({
            "userId": self.user_id,
            "requestId": self.request_id,
            "requestCode": self.request_code,
            "deviceId": self.device_id,
        })

    @classmethod
    def from_json(cls, raw) -> "PendingRequest":
        data = orjson.loads(raw)
        return cls(
            user_id=data["userId"],
            request_id=data["requestId"],
            request_code=int(data["requestCode"]),
            device_id=data.get("deviceId"),
        )


class CorrelationStore:
    """Store de requests pendientes sobre Redis."""

    KEY_PREFIX = "pending:"
    CLAIM_PREFIX = "inflight:"
    DEFAULT_CLAIM_TTL = 60

    def __init__(self, redis_client: "redis.Redis", claim_ttl: int = DEFAULT_CLAIM_TTL):
        self._redis = redis_client
        self._claim_ttl = claim_ttl

        self._lock = threading.Lock()
        self._registered = 0
        self._hits = 0
        self._misses = 0
        self._retired = 0
        self._discarded = 0

    @classmethod
    def key_for(cls, request_id: str) -> str:
        return f"{cls.KEY_PREFIX}{request_id}"

    @classmethod
    def claim_key_for(cls, request_id: str, device_id: Optional[str]) -> str:
        return f"{cls.CLAIM_PREFIX}{request_id}:{device_id or '*'}"

    def register(self, request_id: str, metadata: PendingRequest, ttl: int) -> None:
        """Guarda la metadata con expiración. Re-registrar sobrescribe."""
        if ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")
        try:
            self._redis.set(self.key_for(request_id), metadata.to_json(), ex=int(ttl))
        except redis.RedisError as e:
            raise PersistenceError(f"correlation store unavailable: {e}") from e
        with self._lock:
            self._registered += 1
        PENDING_REQUESTS.labels(operation="registered").inc()
        logger.debug("[CORRELATION] registered request=%s ttl=%ds", request_id, ttl)

    def lookup(self, request_id: str) -> Optional[PendingRequest]:
        """Metadata del request, o None si expiró o nunca existió."""
        try:
            raw = self._redis.get(self.key_for(request_id))
        except redis.RedisError as e:
            raise PersistenceError(f"correlation store unavailable: {e}") from e

        if raw is None:
            with self._lock:
                self._misses += 1
            PENDING_REQUESTS.labels(operation="missed").inc()
            return None

        with self._lock:
            self._hits += 1
        return PendingRequest.from_json(raw)

    def claim(self, request_id: str, device_id: Optional[str]) -> bool:
        """True si este worker obtiene el derecho a procesar la respuesta."""
        try:
            acquired = self._redis.set(
                self.claim_key_for(request_id, device_id), "1",
                nx=True, ex=self._claim_ttl,
            )
        except redis.RedisError as e:
            raise PersistenceError(f"correlation store unavailable: {e}") from e
        return bool(acquired)

    def release(self, request_id: str, device_id: Optional[str]) -> None:
        """Suelta el claim para que la misma respuesta se pueda reintentar."""
        try:
            self._redis.delete(self.claim_key_for(request_id, device_id))
        except redis.RedisError as e:
            logger.warning("[CORRELATION] release failed request=%s: %s", request_id, e)

    def complete(self, request_id: str, device_id: Optional[str]) -> None:
        """Marca la respuesta de un dispositivo como procesada sin retirar el request.

        Para broadcasts: el request sigue abierto a otros dispositivos, pero
        el claim de este dispositivo vive al menos lo que quede del request.
        """
        try:
            remaining = self._redis.ttl(self.key_for(request_id))
            ttl = max(self._claim_ttl, int(remaining or 0))
            self._redis.set(self.claim_key_for(request_id, device_id), "done", ex=ttl)
        except redis.RedisError as e:
            raise PersistenceError(f"correlation store unavailable: {e}") from e
        logger.debug(
            "[CORRELATION] completed request=%s device=%s claim_ttl=%ds",
            request_id, device_id, ttl,
        )

    def retire(self, request_id: str, device_id: Optional[str] = None) -> bool:
        """Elimina la entrada tras procesar la respuesta.

        El claim queda marcado como procesado (no se borra): un worker que
        leyó la entrada justo antes del retiro no puede reclamarla después.

        Returns:
            True si la entrada existía
        """
        try:
            removed = self._redis.delete(self.key_for(request_id))
            self._redis.set(
                self.claim_key_for(request_id, device_id), "done", ex=self._claim_ttl,
            )
        except redis.RedisError as e:
            raise PersistenceError(f"correlation store unavailable: {e}") from e
        with self._lock:
            self._retired += 1
        PENDING_REQUESTS.labels(operation="retired").inc()
        return bool(removed)

    def discard(self, request_id: str) -> None:
        """Rollback de un registro cuyo publish falló."""
        try:
            self._redis.delete(self.key_for(request_id))
        except redis.RedisError as e:
            logger.error("[CORRELATION] rollback failed request=%s: %s", request_id, e)
            return
        with self._lock:
            self._discarded += 1
        PENDING_REQUESTS.labels(operation="discarded").inc()

    def pending_count(self) -> int:
        try:
            return sum(1 for _ in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*"))
        except redis.RedisError as e:
            logger.warning("[CORRELATION] scan failed: %s", e)
            return -1

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "registered": self._registered,
                "hits": self._hits,
                "misses": self._misses,
                "retired": self._retired,
                "discarded": self._discarded,
            }
