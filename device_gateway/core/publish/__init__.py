"""Publish - requests salientes hacia dispositivos."""

from .outbound import OutboundPublisher, PendingTTLConfig

__all__ = ["OutboundPublisher", "PendingTTLConfig"]
