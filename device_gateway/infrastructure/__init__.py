"""Infraestructura (persistencia)."""
