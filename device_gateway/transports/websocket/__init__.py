"""WebSocket transport - bridge de eventos de dominio."""

from .handler import websocket_events

__all__ = ["websocket_events"]
