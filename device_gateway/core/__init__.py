"""Core module - Comunicación asíncrona con dispositivos.

Estructura:
- transport/   → Conexión al broker MQTT y cola de ingesta
- routing/     → Topic → tipo de mensaje
- redis/       → Correlación request/response con TTL
- validation/  → Esquemas de respuesta + correlación
- state/       → Máquina de estados de aprovisionamiento
- topics/      → Nombres de topics y suscripciones persistidas
- publish/     → Requests salientes hacia dispositivos
- monitoring/  → Métricas y observabilidad
"""
