"""Routing - clasificación de topics entrantes."""

from .router import DEFAULT_ROUTES, MessageRouter, Route, UNKNOWN, order_routes, route_topic

__all__ = ["DEFAULT_ROUTES", "MessageRouter", "Route", "UNKNOWN", "order_routes", "route_topic"]
