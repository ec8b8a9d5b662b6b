"""Device gateway - núcleo de comunicación MQTT con la flota de dispositivos."""

__version__ = "0.1.0"
