"""WebSocket bridge: reenvía eventos de dominio a clientes del navegador.

Cada conexión recibe su propio canal del EventBus. La entrega es
best-effort y sin acks: si el cliente es lento, su canal descarta los
eventos más antiguos.

Query params opcionales:
- device_id: solo eventos de ese dispositivo
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

import orjson
from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from ...core.events import EventBus, EventChannel

logger = logging.getLogger(__name__)

POLL_TIMEOUT_SECONDS = 0.5


async def _forward_events(websocket: WebSocket, channel: EventChannel, device_id: Optional[str]) -> None:
    while True:
        event = await run_in_threadpool(channel.get, POLL_TIMEOUT_SECONDS)
        if event is None:
            continue
        if device_id and event.device_id != device_id:
            continue
        await websocket.send_text(orjson.dumps(event.to_dict()).decode("utf-8"))


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message.get("type") == "websocket.disconnect":
            return


async def websocket_events(websocket: WebSocket, bus: EventBus) -> None:
    """Endpoint WebSocket de eventos del gateway.

    Protocolo:
    1. Server → {type: "connected", channel}
    2. Server → {event, deviceId, requestId, userId, payload, error, occurredAt} por evento
    """
    await websocket.accept()
    device_id = websocket.query_params.get("device_id")
    channel_name = f"ws-{uuid.uuid4().hex[:12]}"
    channel = bus.subscribe(channel_name)
    logger.info("[WS] Client connected channel=%s device_filter=%s", channel_name, device_id)

    sender = receiver = None
    try:
        await websocket.send_json({"type": "connected", "channel": channel_name})
        sender = asyncio.create_task(_forward_events(websocket, channel, device_id))
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        done, _pending = await asyncio.wait(
            {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("[WS] Channel %s closed with error: %s", channel_name, exc)
    except WebSocketDisconnect:
        pass
    finally:
        for task in (sender, receiver):
            if task is not None and not task.done():
                task.cancel()
        bus.unsubscribe(channel_name)
        logger.info("[WS] Client disconnected channel=%s stats=%s", channel_name, channel.stats)
