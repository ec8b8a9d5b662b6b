"""Persistencia relacional del gateway."""

from .schema import ensure_schema

__all__ = ["ensure_schema"]
