"""Domain layer - enums, catálogo de tipos y esquemas de payload."""

from .enums import (
    AckStatus,
    ConnectionState,
    DeviceCapability,
    MessageKind,
    OperationStatus,
    ProvisionState,
    RequestCode,
    ResponseCode,
    TopicUseCase,
    TTLClass,
)
from .catalog import KindProfile, PROFILES, profile_for

__all__ = [
    "AckStatus",
    "ConnectionState",
    "DeviceCapability",
    "MessageKind",
    "OperationStatus",
    "ProvisionState",
    "RequestCode",
    "ResponseCode",
    "TopicUseCase",
    "TTLClass",
    "KindProfile",
    "PROFILES",
    "profile_for",
]
