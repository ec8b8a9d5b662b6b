"""Métricas Prometheus del gateway."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

INBOUND_MESSAGES = Counter(
    "gateway_inbound_messages_total",
    "Inbound device messages by routed kind and outcome",
    ["kind", "outcome"],  # processed, invalid_payload, correlation_error, rejected, persistence_error, error, ignored
)

INGEST_DROPPED = Counter(
    "gateway_ingest_dropped_total",
    "Inbound messages dropped because the ingestion queue was full",
)

PROCESSING_LATENCY = Histogram(
    "gateway_message_processing_seconds",
    "Route + validate + apply latency per inbound message",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

OUTBOUND_REQUESTS = Counter(
    "gateway_outbound_requests_total",
    "Outbound device requests by kind and outcome",
    ["kind", "outcome"],  # published, invalid, rejected, transport_error
)

BROKER_CONNECTED = Gauge(
    "gateway_broker_connected",
    "Broker connection status (1=connected, 0=disconnected)",
)

BROKER_RECONNECT_ATTEMPTS = Counter(
    "gateway_broker_reconnect_attempts_total",
    "Automatic reconnect attempts after an unexpected disconnect",
)

PENDING_REQUESTS = Counter(
    "gateway_pending_requests_total",
    "Correlation store operations",
    ["operation"],  # registered, retired, discarded, missed
)
