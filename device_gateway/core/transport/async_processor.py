"""Cola de ingesta: desacopla el callback de paho del procesamiento.

El thread de red de paho solo encola (topic, payload) y vuelve; los
workers hacen route → validate → apply en paralelo. La cola acotada da
backpressure visible: si se llena, el mensaje se descarta y se cuenta.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Any, List, Tuple

from ..monitoring.metrics import INGEST_DROPPED
from .message_handler import MessageHandler

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 4


@dataclass(frozen=True)
class PipelineConfig:
    queue_size: int = DEFAULT_QUEUE_SIZE
    workers: int = DEFAULT_NUM_WORKERS

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            queue_size=int(os.getenv("INGEST_QUEUE_SIZE", str(DEFAULT_QUEUE_SIZE))),
            workers=int(os.getenv("INGEST_WORKERS", str(DEFAULT_NUM_WORKERS))),
        )


class AsyncMessageProcessor:
    """Queue + workers alrededor de MessageHandler."""

    def __init__(self, handler: MessageHandler, config: PipelineConfig = PipelineConfig()):
        self._handler = handler
        self._queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue(maxsize=config.queue_size)
        self._num_workers = max(1, config.workers)
        self._stop_event = threading.Event()

        # Metrics
        self._enqueued = 0
        self._dropped = 0
        self._processed = 0
        self._errors = 0
        self._lock = threading.Lock()

        self._workers: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start worker threads."""
        if self._workers:
            return
        self._stop_event.clear()
        for i in range(self._num_workers):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i,),
                daemon=True,
                name=f"ingest-worker-{i}",
            )
            t.start()
            self._workers.append(t)
        logger.info(
            "[PIPELINE] Started workers=%d queue_max=%d",
            self._num_workers, self._queue.maxsize,
        )

    def stop(self, drain: bool = True) -> None:
        """Stop workers. If drain=True, process remaining items first."""
        if drain and self._workers:
            self._queue.join()
        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=5.0)
        self._workers.clear()
        logger.info("[PIPELINE] Stopped. %s", self.metrics)

    def enqueue(self, topic: str, payload: Any) -> bool:
        """Encola un mensaje crudo. False si la cola está llena."""
        try:
            self._queue.put_nowait((topic, payload))
            with self._lock:
                self._enqueued += 1
            return True
        except queue.Full:
            with self._lock:
                self._dropped += 1
            INGEST_DROPPED.inc()
            logger.warning("[PIPELINE] Queue full, dropped message topic=%s", topic)
            return False

    def join(self) -> None:
        """Bloquea hasta procesar todo lo encolado."""
        self._queue.join()

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            try:
                topic, payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self._handler.handle(topic, payload)
                with self._lock:
                    self._processed += 1
            except Exception as e:
                with self._lock:
                    self._errors += 1
                logger.error("[PIPELINE] Worker %d error: %s", worker_id, e)
            finally:
                self._queue.task_done()

    @property
    def metrics(self) -> dict:
        with self._lock:
            return {
                "queue_depth": self._queue.qsize(),
                "queue_max": self._queue.maxsize,
                "workers": len(self._workers),
                "enqueued": self._enqueued,
                "dropped": self._dropped,
                "processed": self._processed,
                "errors": self._errors,
            }
