"""Catálogo de tipos de mensaje.

Una sola tabla relaciona cada tipo con su topic, sus códigos de request y
response, la ventana de TTL y si la respuesta debe correlacionarse.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .enums import MessageKind, RequestCode, ResponseCode, TopicUseCase, TTLClass


@dataclass(frozen=True)
class KindProfile:
    kind: MessageKind
    use_case: TopicUseCase
    request_code: RequestCode
    response_code: ResponseCode
    ttl_class: TTLClass
    # Heartbeat y telemetry también llegan sin request previo (tráfico periódico).
    correlation_required: bool = True


PROFILES: Dict[MessageKind, KindProfile] = {
    p.kind: p
    for p in (
        KindProfile(
            MessageKind.DISCOVERY, TopicUseCase.DISCOVERY,
            RequestCode.DISCOVERY, ResponseCode.DISCOVERY, TTLClass.DEFAULT,
        ),
        KindProfile(
            MessageKind.ASSIGN, TopicUseCase.ASSIGN,
            RequestCode.ASSIGN_DEVICE_FUNCTION, ResponseCode.ASSIGN_DEVICE_FUNCTION,
            TTLClass.SHORT,
        ),
        KindProfile(
            MessageKind.CONFIG, TopicUseCase.CONFIG,
            RequestCode.SENSOR_CONFIGURATION, ResponseCode.SENSOR_CONFIGURATION_ACK,
            TTLClass.SHORT,
        ),
        KindProfile(
            MessageKind.REBOOT, TopicUseCase.REBOOT,
            RequestCode.REBOOT_COMMAND, ResponseCode.REBOOT_CONFIRMATION,
            TTLClass.DEFAULT,
        ),
        KindProfile(
            MessageKind.FIRMWARE_UPGRADE, TopicUseCase.FIRMWARE_UPGRADE,
            RequestCode.FIRMWARE_UPGRADE, ResponseCode.FIRMWARE_UPGRADE_STATUS,
            TTLClass.FIRMWARE,
        ),
        KindProfile(
            MessageKind.HEARTBEAT, TopicUseCase.HEARTBEAT,
            RequestCode.HEARTBEAT, ResponseCode.HEARTBEAT, TTLClass.SHORT,
            correlation_required=False,
        ),
        KindProfile(
            MessageKind.TELEMETRY, TopicUseCase.TELEMETRY,
            RequestCode.TELEMETRY_DATA, ResponseCode.TELEMETRY_DATA, TTLClass.DEFAULT,
            correlation_required=False,
        ),
        KindProfile(
            MessageKind.HARDWARE_STATUS, TopicUseCase.HARDWARE_STATUS,
            RequestCode.HARDWARE_METRICS, ResponseCode.HARDWARE_METRICS,
            TTLClass.DEFAULT,
        ),
    )
}


def profile_for(kind: MessageKind) -> KindProfile:
    """Perfil de un tipo de mensaje. KeyError si el tipo no es gestionable."""
    return PROFILES[MessageKind(kind)]


def kind_for_request_code(code: int) -> MessageKind:
    for profile in PROFILES.values():
        if int(profile.request_code) == int(code):
            return profile.kind
    return MessageKind.UNKNOWN
