"""Transports - bordes hacia clientes externos."""
