"""Validation - esquemas de respuesta y correlación."""

from .response_validator import ResponseValidator, ValidatedResponse, format_validation_errors

__all__ = ["ResponseValidator", "ValidatedResponse", "format_validation_errors"]
