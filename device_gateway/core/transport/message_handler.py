"""Handler de mensajes MQTT: route → validate → apply.

Es el límite del pipeline: todo error de un mensaje se captura y se
loguea aquí, nunca sube al loop de ingesta.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import orjson

from ..errors import CorrelationError, GatewayError, PayloadValidationError, PersistenceError
from ..events import DomainEvent
from ..monitoring.metrics import INBOUND_MESSAGES, PROCESSING_LATENCY
from ..monitoring.stats import Stats
from ..routing.router import UNKNOWN, MessageRouter
from ..state.engine import DeviceStateEngine
from ..validation.response_validator import ResponseValidator

logger = logging.getLogger(__name__)


def parse_payload(payload: Any) -> Any:
    """Parsea el payload JSON (bytes o str)."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        payload = bytes(payload)
    return orjson.loads(payload)


def is_outbound_echo(data: Any) -> bool:
    """True si es uno de nuestros requests (tiene requestCode y no responseCode)."""
    return isinstance(data, dict) and "requestCode" in data and "responseCode" not in data


class MessageHandler:
    """Procesa un mensaje crudo completo."""

    def __init__(
        self,
        router: MessageRouter,
        validator: ResponseValidator,
        engine: DeviceStateEngine,
    ):
        self._router = router
        self._validator = validator
        self._engine = engine
        self._stats = Stats()

    @property
    def stats(self) -> Stats:
        return self._stats

    def handle(self, topic: str, payload: Any) -> Optional[DomainEvent]:
        """Procesa un mensaje. Nunca lanza.

        Returns:
            Evento emitido, o None si el mensaje se descartó
        """
        self._stats.increment("received")
        self._stats.last_message_at = time.time()
        start = time.perf_counter()
        kind = UNKNOWN
        outcome = "error"

        try:
            try:
                data = parse_payload(payload)
            except orjson.JSONDecodeError as e:
                outcome = "invalid_payload"
                self._stats.increment("invalid")
                logger.error("[HANDLER] Malformed JSON on topic=%s: %s", topic, e)
                return None

            if is_outbound_echo(data):
                outcome = "ignored"
                self._stats.increment("ignored")
                logger.debug("[HANDLER] Ignoring echo of outbound request on %s", topic)
                return None

            kind = self._router.route(topic, data)
            if kind == UNKNOWN:
                outcome = "ignored"
                self._stats.increment("ignored")
                return None

            validated = self._validator.validate(kind, data, topic=topic)
            event = self._engine.apply(validated)

            if event.is_error:
                outcome = "rejected"
                self._stats.increment("rejected")
            else:
                outcome = "processed"
                self._stats.increment("processed")
            return event

        except PayloadValidationError:
            # El validador ya logueó todos los campos
            outcome = "invalid_payload"
            self._stats.increment("invalid")
        except CorrelationError:
            outcome = "correlation_error"
            self._stats.increment("rejected")
        except PersistenceError as e:
            outcome = "persistence_error"
            self._stats.increment("failed")
            logger.error("[HANDLER] Not persisted, safe to retry: %s", e)
        except GatewayError as e:
            outcome = "error"
            self._stats.increment("failed")
            logger.error("[HANDLER] %s on topic=%s: %s", type(e).__name__, topic, e)
        except Exception as e:
            outcome = "error"
            self._stats.increment("failed")
            logger.exception("[HANDLER] Unexpected error on topic=%s: %s", topic, e)
        finally:
            INBOUND_MESSAGES.labels(kind=str(kind), outcome=outcome).inc()
            PROCESSING_LATENCY.observe(time.perf_counter() - start)
            received = self._stats.received
            if received % 100 == 0:
                logger.info("[HANDLER] %s", self._stats)

        return None
